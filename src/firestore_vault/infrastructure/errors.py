"""
Exception hierarchy for backup, restore, migration and clear runs.

Exception Hierarchy:
    VaultError (base)
    ├── StoreConnectionError
    ├── MissingArtifactError
    ├── OwnerFieldMissingError
    ├── PartialCommitError
    └── StepFailedError
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class VaultError(Exception):
    """
    Base exception for all tooling errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (paths, counts, step names)
        original_exception: The original exception that was caught (if any)
        report: Partial run report at the point of failure (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)
        self.report: Optional[Any] = None

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        base_msg = self.message
        if self.original_exception:
            base_msg += f" (caused by {type(self.original_exception).__name__}: {self.original_exception})"
        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and reports."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


class StoreConnectionError(VaultError):
    """Raised when the Firebase app or Firestore client cannot be initialized."""
    pass


class MissingArtifactError(VaultError):
    """
    Raised when an expected backup unit, directory or file is absent.

    Context should include:
        - path: the path that was expected to exist
    """

    def __init__(self, path, message: Optional[str] = None):
        super().__init__(message or f"Backup artifact not found: {path}",
                         context={"path": str(path)})
        self.path = str(path)


class OwnerFieldMissingError(VaultError):
    """
    A migrated document has no value in the field that names its owner.

    Recorded per document by the migrator; never raised out of a run.
    """

    def __init__(self, collection: str, document_id: str, owner_field: str):
        super().__init__(
            f"{collection}/{document_id} has no '{owner_field}' field",
            context={"collection": collection, "document_id": document_id,
                     "owner_field": owner_field})
        self.collection = collection
        self.document_id = document_id
        self.owner_field = owner_field


class PartialCommitError(VaultError):
    """
    A batch commit failed; no later commit of the run was issued.

    Context should include:
        - index: input position of the first operation of the failed commit
        - commit_number: 1-based number of the failed commit
        - path: document path of that operation
    """

    def __init__(self, index: int, commit_number: int, path: str,
                 original_exception: Optional[BaseException] = None):
        super().__init__(
            f"Commit {commit_number} failed at operation {index} ({path})",
            context={"index": index, "commit_number": commit_number, "path": path},
            original_exception=original_exception)
        self.index = index
        self.commit_number = commit_number
        self.path = path


class StepFailedError(VaultError):
    """An orchestrated backup or restore step failed."""

    def __init__(self, step: str, original_exception: BaseException):
        super().__init__(f"Step '{step}' failed",
                         context={"step": step},
                         original_exception=original_exception)
        self.step = step


__all__ = [
    'VaultError',
    'StoreConnectionError',
    'MissingArtifactError',
    'OwnerFieldMissingError',
    'PartialCommitError',
    'StepFailedError',
]
