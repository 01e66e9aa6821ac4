"""
The `termtune` command-line interface.
"""
