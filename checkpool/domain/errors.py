from __future__ import annotations


class DomainError(Exception):
    error_code = "internal_error"


class DomainValidationError(DomainError):
    error_code = "validation_error"


class DomainInvariantError(DomainError):
    pass


class DomainConflictError(DomainInvariantError):
    def __init__(self, message: str, *, error_code: str = "conflict") -> None:
        super().__init__(message)
        self.error_code = error_code


class DomainNotFoundError(DomainError):
    def __init__(self, message: str, *, error_code: str = "not_found") -> None:
        super().__init__(message)
        self.error_code = error_code


class DomainDependencyError(DomainError):
    error_code = "store_unavailable"


class DomainConfigurationError(DomainError):
    def __init__(self, message: str, *, error_code: str = "security_misconfigured") -> None:
        super().__init__(message)
        self.error_code = error_code


class SecurityRejection(DomainError):
    """Raised by a gateway check; carries the HTTP status and worker error code."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        error_code: str,
        title: str = "Unauthorized",
        retry_after: int | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.title = title
        self.retry_after = retry_after
