"""Exceptions raised by the Firestore to MongoDB migration tools."""

from typing import Optional


class MigrationError(Exception):
    """Base exception for migration errors."""
    pass


class ConfigurationError(MigrationError):
    """Missing or unparseable credentials or connection settings."""
    pass


class SourceUnavailableError(MigrationError):
    """Firestore could not be reached or read at startup."""
    pass


class TargetUnavailableError(MigrationError):
    """MongoDB could not be reached at startup."""
    pass


class RecordValidationError(MigrationError):
    """A source record has no derivable natural key."""

    def __init__(self, collection_name: str, document_id: str, reason: str = "no natural key"):
        self.collection_name = collection_name
        self.document_id = document_id
        self.reason = reason
        super().__init__(f"{collection_name}/{document_id}: {reason}")


class TransientIOError(MigrationError):
    """Network or timeout failure talking to either store."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


class PartialBatchFailure(MigrationError):
    """Some operations in an otherwise committed bulk write failed."""

    def __init__(self, collection_name: str, result):
        self.collection_name = collection_name
        self.result = result
        super().__init__(
            f"{len(result.failed_keys)} of the writes to {collection_name} failed"
        )
