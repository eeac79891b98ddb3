from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class ExternalServiceError(Exception):
    """Failure raised by a collaborator adapter (scraper, LLM).

    Adapters must raise one of the two concrete subclasses; the pipelines
    never inspect message text to decide whether to retry.
    """

    error_class = "permanent"

    def __init__(self, message: str, *, code: str = "EXTERNAL_ERROR", detail: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.detail = detail or message


class TransientExternalError(ExternalServiceError):
    error_class = "transient"


class PermanentExternalError(ExternalServiceError):
    error_class = "permanent"
