"""Exception types shared across memobot."""


class MemobotError(Exception):
    """Base class for memobot errors."""


class ConfigurationError(MemobotError):
    """Raised when a component is constructed with unusable settings."""


class StorageError(MemobotError):
    """Raised when the database is used before it is initialized."""


class EmbeddingError(MemobotError):
    """Raised when an embedding cannot be produced."""

    def __init__(self, message: str, model: str = "") -> None:
        self.model = model
        super().__init__(message)


class MediaError(MemobotError):
    """Raised when an attachment cannot be downloaded or converted to text."""
