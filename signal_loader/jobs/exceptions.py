"""Error taxonomy for the loader engine"""


class LoaderError(Exception):
    """Base exception for loader operations"""
    pass


class ValidationError(LoaderError):
    """Malformed job configuration or bad placeholder usage; never retried automatically"""
    pass


class InvalidArgument(ValidationError, ValueError):
    """A required argument is missing or malformed"""
    pass


class JobNotFoundError(LoaderError, LookupError):
    """No job with the requested code"""

    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Job not found: {code}")


class SourceError(LoaderError):
    """Base class for failures talking to an external source database"""

    def __init__(self, source_ref: str, reason: str):
        self.source_ref = source_ref
        self.reason = reason
        super().__init__(f"Source '{source_ref}': {reason}")


class SourceConnectionError(SourceError):
    """Could not connect to the source database"""
    pass


class SourceQueryError(SourceError):
    """The source accepted the connection but the query failed"""
    pass


class TransformationError(LoaderError):
    """A result row could not be mapped to the canonical signal shape"""

    def __init__(self, message: str, row_index: int = None):
        self.row_index = row_index
        super().__init__(message)


class DuplicateDataError(LoaderError):
    """FAIL_ON_DUPLICATE found stored signals inside the new window"""

    def __init__(self, job_code: str, existing: int, from_epoch: int, to_epoch: int):
        self.job_code = job_code
        self.existing = existing
        super().__init__(
            f"Found {existing} existing records for {job_code} in range [{from_epoch}, {to_epoch})"
        )


class IngestionError(LoaderError):
    """The downstream signal sink rejected a batch"""
    pass


class ExecutionTimeoutError(LoaderError):
    """A run took longer than the configured execution timeout"""

    def __init__(self, job_code: str, elapsed: float, timeout: int):
        self.elapsed = elapsed
        self.timeout = timeout
        super().__init__(
            f"Run of {job_code} took {elapsed:.1f}s, exceeding the {timeout}s execution timeout"
        )


class BackfillNotFoundError(LoaderError, LookupError):
    """No backfill with the requested id"""

    def __init__(self, backfill_id: int):
        self.backfill_id = backfill_id
        super().__init__(f"Backfill not found: {backfill_id}")


class BackfillStateError(LoaderError):
    """The backfill is not PENDING, so it can no longer be run or cancelled"""

    def __init__(self, backfill_id: int, status: str):
        self.backfill_id = backfill_id
        self.status = status
        super().__init__(f"Backfill {backfill_id} is {status}, expected PENDING")
