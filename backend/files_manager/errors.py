"""Error taxonomy shared by the upload path and the workers.

ValidationError  - bad request input; rejected synchronously, never enqueued.
TransientError   - storage/queue unavailable or a record not visible yet;
                   the caller retries (uploads) or the queue redelivers (jobs).
PermanentError   - retrying cannot help (record gone, owner mismatch,
                   malformed payload); the job is acknowledged and dropped.
"""


class FilesManagerError(Exception):
    """Base class for all application errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(FilesManagerError):
    pass


class TransientError(FilesManagerError):
    pass


class PermanentError(FilesManagerError):
    pass
