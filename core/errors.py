"""
core/errors.py — Error Taxonomy
================================
Exceptions raised by the UMID core. main.py maps each one to an HTTP status.

A bad or expired code is NOT here: it is an expected outcome and comes back
as a failed AccessResult (see modules/access.py).
"""


class UMIDError(Exception):
    """Base class for every error the core surfaces to callers."""

    status_code = 500
    code = "umid_error"

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.code)
        self.detail = detail or self.code


class NotFoundError(UMIDError):
    status_code = 404
    code = "not_found"


class ConflictError(UMIDError):
    status_code = 409
    code = "conflict"


class Unauthorized(UMIDError):
    status_code = 403
    code = "unauthorized"


class StoreUnavailable(UMIDError):
    status_code = 503
    code = "store_unavailable"
