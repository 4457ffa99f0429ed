"""Session file sources."""

from tokenledger.sources.files import (
    FileEnumerator,
    FileProvider,
    LocalSessionFiles,
    MemorySessionCache,
    SessionCache,
)

__all__ = [
    "FileEnumerator",
    "FileProvider",
    "LocalSessionFiles",
    "MemorySessionCache",
    "SessionCache",
]
