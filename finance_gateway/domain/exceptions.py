"""Domain-specific exceptions"""

from typing import Optional


class DomainException(Exception):
    """Base exception for domain layer"""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DomainException):
    """Malformed or missing input"""

    status_code = 400


class AuthError(DomainException):
    """Missing, invalid or expired credential"""

    status_code = 401


class NotFoundError(DomainException):
    """Requested resource does not exist or is not owned by the caller"""

    status_code = 404


class ExternalServiceError(DomainException):
    """Plaid or the classification endpoint failed"""

    status_code = 502

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(f"{code} - {message}" if code else message)
        self.code = code


class PersistenceError(DomainException):
    """Storage failure"""

    pass
