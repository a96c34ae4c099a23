"""
Sync error hierarchy
"""
from typing import List, Optional, Tuple


class SyncError(Exception):
    """Base class for sync engine errors.

    ``http_status`` and ``error_code`` are what the API answers with.
    """
    http_status = 500
    error_code = 'SYNC_FAILED'

    @property
    def details(self) -> Optional[dict]:
        return None


class FetchError(SyncError):
    """A required remote read failed.

    Attributes:
        error: The typed RequestError returned by the concurrency controller
    """
    http_status = 502
    error_code = 'FETCH_FAILED'

    def __init__(self, message: str, error=None):
        super().__init__(message)
        self.error = error

    @property
    def status_code(self) -> Optional[int]:
        return self.error.status_code if self.error is not None else None

    @property
    def kind(self):
        return self.error.kind if self.error is not None else None

    @property
    def details(self) -> Optional[dict]:
        if self.error is None:
            return None
        return {'kind': self.error.kind.value, 'status_code': self.error.status_code}


class BlockTreeError(FetchError):
    """One or more descendant branches of a block tree could not be fetched.

    Sibling branches were still fetched; ``partial_tree`` holds what was
    retrieved and ``failures`` the ``(block_id, RequestError)`` pairs.
    """

    def __init__(self, root_id: str, failures: List[Tuple[str, object]], partial_tree=None):
        block_id, first = failures[0]
        super().__init__(
            f"Failed to fetch {len(failures)} branch(es) of block tree {root_id}; "
            f"first: block {block_id}: {first}",
            first
        )
        self.root_id = root_id
        self.failures = failures
        self.partial_tree = partial_tree or []


class ListingError(SyncError):
    """Listing the remote database failed; the run cannot proceed."""
    http_status = 502
    error_code = 'LISTING_FAILED'

    @property
    def details(self) -> Optional[dict]:
        cause = self.__cause__
        return cause.details if isinstance(cause, FetchError) else None


class SyncInProgressError(SyncError):
    """A valid run lock is already held for this scope."""
    http_status = 409
    error_code = 'SYNC_IN_PROGRESS'

    def __init__(self, database_id: str):
        super().__init__(f"Sync already in progress for database {database_id}")
        self.database_id = database_id


class LockLostError(SyncError):
    """The run lock expired and was taken over while the run was in progress."""
    http_status = 409
    error_code = 'LOCK_LOST'

    def __init__(self, database_id: str):
        super().__init__(f"Run lock for database {database_id} was lost; run aborted")
        self.database_id = database_id
