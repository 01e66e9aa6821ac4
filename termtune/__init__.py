"""
termtune: a terminal music client built around a concurrent
download-cache-playback pipeline.
"""

__version__ = "0.1.0"
