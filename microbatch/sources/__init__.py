"""
Sources package for the microbatch streaming engine.

Re-exports the source interface and the concrete sources so downstream code
can import from `microbatch.sources` directly.
"""

from microbatch.sources.abstract import AbstractSource, PollResult, Source
from microbatch.sources.files import FileEntry, FileSource
from microbatch.sources.memory import MemorySource

__all__ = [
    # Abstracts
    "AbstractSource",
    "PollResult",
    "Source",
    # Concrete sources
    "FileEntry",
    "FileSource",
    "MemorySource",
]
