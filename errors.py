"""
Error taxonomy for the store core.

Domain code raises these; main.py maps them to HTTP responses.
"""


class StoreError(Exception):
    status_code = 500
    kind = "error"

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail or self.__class__.__name__


class ValidationError(StoreError):
    """Malformed or out-of-range input. Nothing was written."""
    status_code = 400
    kind = "validation"


class AuthorizationError(StoreError):
    """The caller's role does not reach the required role."""
    status_code = 403
    kind = "authorization"


class NotFoundError(StoreError):
    status_code = 404
    kind = "not_found"


class InvalidTransition(StoreError):
    """A status write that is not an edge of the record's state machine."""
    status_code = 409
    kind = "invalid_transition"


class UpstreamError(StoreError):
    """Catalog, payment or persistence collaborator failure."""
    status_code = 502
    kind = "upstream"
