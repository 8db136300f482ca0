from .config import LibraryConfig
from .errors import ClientError, FatalIndexingError, MediaLibError, NotFound, TranscodeError
from .runtime import Runtime

__version__ = "0.1.0"

__all__ = [
    "ClientError",
    "FatalIndexingError",
    "LibraryConfig",
    "MediaLibError",
    "NotFound",
    "Runtime",
    "TranscodeError",
]
