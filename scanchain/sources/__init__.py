from scanchain.sources.memory import InMemoryFileSource
from scanchain.sources.types import (
    FOLDER_MIME_TYPE,
    RemoteFileRecord,
    RemoteFileSource,
    ScanFilters,
    SourcePage,
)

__all__ = [
    "FOLDER_MIME_TYPE",
    "InMemoryFileSource",
    "RemoteFileRecord",
    "RemoteFileSource",
    "ScanFilters",
    "SourcePage",
]
