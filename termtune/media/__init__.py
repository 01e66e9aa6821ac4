"""
Media Layer.

This package is responsible for getting audio onto disk and out of the
speakers: source resolvers, audio outputs, and integrity validation.
"""

from .integrity import FileIntegrityChecker
from .output import AudioOutput, AudioStream, PcmClockOutput, create_output
from .resolver import FileResolver, HttpResolver, Resolver, ResolverRegistry
from .ytdlp_resolver import YtDlpResolver

__all__ = [
    "AudioOutput",
    "AudioStream",
    "FileIntegrityChecker",
    "FileResolver",
    "HttpResolver",
    "PcmClockOutput",
    "Resolver",
    "ResolverRegistry",
    "YtDlpResolver",
    "create_output",
]
