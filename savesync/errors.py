"""Error taxonomy for the save sync pipeline.

Automatic capture paths convert these into warning events; manual
operations (capture now, restore) let them propagate to the caller.
"""


class SaveSyncError(Exception):
    """Base class for all pipeline errors."""


class NotFoundError(SaveSyncError):
    """Entity, remote file or remote backup record does not exist."""


class PreconditionError(SaveSyncError):
    """Operation refused: process still running, nothing to restore, ..."""


class NoFilesFoundError(SaveSyncError):
    """A capture matched zero files under the watch root."""


class StorageIOError(SaveSyncError):
    """A local filesystem operation failed."""


class NetworkError(SaveSyncError):
    """A call to the remote store failed."""


class RestoreRollbackError(SaveSyncError):
    """A restore failed and putting the safety copy back failed too."""

    def __init__(self, original: BaseException, rollback_error: BaseException):
        super().__init__(
            f"Restore failed ({original}) and rollback failed ({rollback_error})"
        )
        self.original = original
        self.rollback_error = rollback_error
