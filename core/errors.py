"""
Payment error kinds and their HTTP status mapping.

Every failure the payments core reports is a PaymentError tagged with an
ErrorKind; server.py turns it into a JSON response via HTTP_STATUS.
"""
from enum import Enum


class ErrorKind(Enum):
    VALIDATION = 'validation_error'
    UNAUTHORIZED = 'unauthorized'
    FORBIDDEN = 'forbidden'
    NOT_FOUND = 'not_found'
    CONFLICT = 'conflict'
    RATE_LIMITED = 'rate_limited'
    UNAVAILABLE = 'service_unavailable'
    INTERNAL = 'internal_error'


HTTP_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.UNAVAILABLE: 503,
    ErrorKind.INTERNAL: 500,
}

# Kinds whose message is replaced by a generic one at the HTTP boundary
_OPAQUE_KINDS = (ErrorKind.INTERNAL, ErrorKind.UNAVAILABLE)

_GENERIC_MESSAGES = {
    ErrorKind.INTERNAL: 'Internal server error',
    ErrorKind.UNAVAILABLE: 'Payment provider temporarily unavailable',
}


class PaymentError(Exception):
    """A failure with a kind, a machine-readable code and optional detail."""

    def __init__(self, kind: ErrorKind, message: str, code: str = None, detail: dict = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.code = code or kind.value.upper()
        self.detail = detail or {}

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.kind]

    @property
    def retry_after(self):
        return self.detail.get('retry_after')

    def to_dict(self) -> dict:
        """Response body. Opaque kinds never expose their message or detail."""
        if self.kind in _OPAQUE_KINDS:
            return {"error": _GENERIC_MESSAGES[self.kind], "code": self.code}
        body = {"error": self.message, "code": self.code}
        body.update(self.detail)
        return body

    def __repr__(self):
        return f"PaymentError({self.kind.name}, {self.code!r}, {self.message!r})"


# Shorthand constructors, one per kind

def validation_error(message, code='VALIDATION_ERROR', **detail):
    return PaymentError(ErrorKind.VALIDATION, message, code, detail)


def unauthorized(message='Authentication required', code='UNAUTHORIZED'):
    return PaymentError(ErrorKind.UNAUTHORIZED, message, code)


def forbidden(message, code='FORBIDDEN'):
    return PaymentError(ErrorKind.FORBIDDEN, message, code)


def not_found(message, code='NOT_FOUND'):
    return PaymentError(ErrorKind.NOT_FOUND, message, code)


def conflict(message, code='CONFLICT', **detail):
    return PaymentError(ErrorKind.CONFLICT, message, code, detail)


def rate_limited(retry_after: int, message='Too many requests'):
    return PaymentError(ErrorKind.RATE_LIMITED, message, 'RATE_LIMITED', {"retry_after": retry_after})


def unavailable(message, code='PROVIDER_UNAVAILABLE'):
    return PaymentError(ErrorKind.UNAVAILABLE, message, code)


def internal_error(message, code='INTERNAL_ERROR'):
    return PaymentError(ErrorKind.INTERNAL, message, code)
