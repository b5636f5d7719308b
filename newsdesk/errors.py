from enum import StrEnum


class ErrorKind(StrEnum):
    TIMEOUT = "timeout"
    CONNECTION_FAILED = "connection_failed"
    HTTP_STATUS = "http_status"
    STRUCTURE_NOT_FOUND = "structure_not_found"
    INVALID_CANDIDATE = "invalid_candidate"
    WRITE_FAILED = "write_failed"
    CONSTRAINT_VIOLATION = "constraint_violation"
    NOT_FOUND = "not_found"
    UNEXPECTED = "unexpected"


class PipelineError(Exception):
    kind: ErrorKind = ErrorKind.UNEXPECTED

    def __init__(self, message: str, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind

    @property
    def reason(self) -> str:
        return f"{self.kind}: {self}"


class FetchError(PipelineError):
    kind = ErrorKind.CONNECTION_FAILED

    def __init__(
        self, message: str, kind: ErrorKind | None = None, status_code: int | None = None
    ) -> None:
        super().__init__(message, kind)
        self.status_code = status_code

    @classmethod
    def timeout(cls, url: str) -> "FetchError":
        return cls(f"timed out fetching {url}", ErrorKind.TIMEOUT)

    @classmethod
    def http_status(cls, url: str, status_code: int) -> "FetchError":
        return cls(f"HTTP {status_code} from {url}", ErrorKind.HTTP_STATUS, status_code)


class ExtractionError(PipelineError):
    kind = ErrorKind.STRUCTURE_NOT_FOUND


class NormalizationError(PipelineError):
    kind = ErrorKind.INVALID_CANDIDATE


class StoreError(PipelineError):
    kind = ErrorKind.WRITE_FAILED


class SourceNotFoundError(PipelineError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, source_id: str) -> None:
        super().__init__(f"unknown source: {source_id}")
        self.source_id = source_id
