"""Error taxonomy shared by the store, the collaborators and the pipeline.

Every pipeline error carries:
- `category`: one of the `ErrorCategory` values (drives retry / fatality decisions)
- `kind`: a short collaborator-specific tag (e.g. `network`, `rate_limited`)

Callers branch on `category` / `kind` / `retryable` instead of parsing messages.
"""

from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    TRANSIENT_REMOTE = "transient_remote"
    PERMANENT_REMOTE = "permanent_remote"
    LOCAL_RESOURCE = "local_resource"
    DATA_INTEGRITY = "data_integrity"


class PipelineError(Exception):
    """Base class for categorized pipeline errors."""

    category: ErrorCategory = ErrorCategory.PERMANENT_REMOTE
    kind: str = "unexpected"

    @property
    def retryable(self) -> bool:
        return self.category is ErrorCategory.TRANSIENT_REMOTE

    @property
    def fatal(self) -> bool:
        return self.category is ErrorCategory.LOCAL_RESOURCE


class _CollaboratorError(PipelineError):
    """Collaborator error whose category is derived from its `kind`."""

    KINDS: dict[str, ErrorCategory] = {}

    def __init__(self, kind: str, message: str = "") -> None:
        if kind not in self.KINDS:
            raise ValueError(f"Unknown {type(self).__name__} kind: {kind!r}")
        self.kind = kind
        self.category = self.KINDS[kind]
        self.message = message or kind
        super().__init__(f"{kind}: {self.message}")


class FetchError(_CollaboratorError):
    """Feed document could not be retrieved or parsed."""

    KINDS = {
        "timeout": ErrorCategory.TRANSIENT_REMOTE,
        "network": ErrorCategory.TRANSIENT_REMOTE,
        "not_found": ErrorCategory.PERMANENT_REMOTE,
        "malformed": ErrorCategory.PERMANENT_REMOTE,
    }


class AcquireError(_CollaboratorError):
    """Raw content could not be transferred to local storage."""

    KINDS = {
        "network": ErrorCategory.TRANSIENT_REMOTE,
        "storage_full": ErrorCategory.LOCAL_RESOURCE,
        "unsupported_format": ErrorCategory.PERMANENT_REMOTE,
    }


class DeriveError(_CollaboratorError):
    """Transcription engine failed. Never retried automatically."""

    KINDS = {
        "engine_unavailable": ErrorCategory.PERMANENT_REMOTE,
        "bad_input": ErrorCategory.PERMANENT_REMOTE,
    }


class SummarizeError(_CollaboratorError):
    """Summarization call failed."""

    KINDS = {
        "auth": ErrorCategory.PERMANENT_REMOTE,
        "rate_limited": ErrorCategory.TRANSIENT_REMOTE,
        "context_too_large": ErrorCategory.PERMANENT_REMOTE,
        "upstream": ErrorCategory.TRANSIENT_REMOTE,
    }


class StoreError(PipelineError):
    """The item store is unreachable or a statement failed."""

    category = ErrorCategory.LOCAL_RESOURCE
    kind = "store_unavailable"


class StorageError(PipelineError):
    """Local disk write failed (e.g. no space left)."""

    category = ErrorCategory.LOCAL_RESOURCE
    kind = "storage_full"


class DataIntegrityError(PipelineError):
    """Inconsistent state detected (illegal transition, conflicting identity)."""

    category = ErrorCategory.DATA_INTEGRITY
    kind = "inconsistent_state"


class NotFoundError(PipelineError):
    """Requested feed / item does not exist."""

    category = ErrorCategory.DATA_INTEGRITY
    kind = "not_found"


class RunFatalError(Exception):
    """A run-level condition that aborts the whole run.

    Reported separately from per-item failures; carries the underlying cause when
    there is one.
    """

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class FeedBusyError(RunFatalError):
    """Another run currently holds the lock of a feed in scope."""
