from __future__ import annotations


class BaselineEngineError(RuntimeError):
    retryable = False


class MalformedInputError(BaselineEngineError):
    """A row (or the batch descriptor) is missing a required field or has an unknown value."""

    def __init__(self, reason: str, field: str | None = None, row_index: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.field = field
        self.row_index = row_index


class UnknownHostError(BaselineEngineError):
    def __init__(self, reason: str, host: str | None = None, row_index: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.host = host
        self.row_index = row_index


class DuplicateImportError(BaselineEngineError):
    """The source file was already applied. Callers treat this as success."""

    def __init__(self, report_id: int, source_identity: str) -> None:
        super().__init__(f"Source {source_identity} already applied as report {report_id}")
        self.report_id = report_id
        self.source_identity = source_identity


class ConcurrentLockTimeoutError(BaselineEngineError):
    retryable = True

    def __init__(self, system_id: int, timeout: float) -> None:
        super().__init__(f"Timed out after {timeout}s waiting for lock on system {system_id}")
        self.system_id = system_id
        self.timeout = timeout


class TransactionConflictError(BaselineEngineError):
    retryable = True


class BatchCancelledError(BaselineEngineError):
    pass


class ResetNotConfirmedError(BaselineEngineError):
    pass
