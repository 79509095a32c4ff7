"""Error kinds raised by the explanation engine.

Every error carries the HTTP-equivalent ``status`` the web layer answers with,
so callers can tell a missing question from an exhausted quota without parsing
messages.
"""

from typing import Optional


class ExplanationError(Exception):
    """Base class for all engine errors."""

    status: int = 500
    code: str = "error"

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status

    def to_dict(self) -> dict:
        return {"status": "error", "code": self.code, "message": self.message}


class InvalidRequestError(ExplanationError):
    """Malformed coordinate or request parameters."""

    status = 400
    code = "invalid_request"


class NotFoundError(ExplanationError):
    """The exam part, section or question does not exist."""

    status = 404
    code = "not_found"


class ForbiddenError(ExplanationError):
    """A forced refresh was requested by a caller without privileges."""

    status = 403
    code = "forbidden"


class QuotaExhaustedError(ExplanationError):
    """The caller already spent the free generation for this key."""

    status = 429
    code = "quota_exhausted"


class UpstreamConfigError(ExplanationError):
    """No generative-model credential is configured."""

    status = 500
    code = "upstream_config"


class UpstreamCallError(ExplanationError):
    """The model call failed or returned nothing usable.

    ``kind`` is one of ``http``, ``transport``, ``empty`` or ``invalid_json``.
    """

    status = 502
    code = "upstream_call"

    def __init__(self, message: str, kind: str = "http", upstream_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.upstream_status = upstream_status

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["kind"] = self.kind
        return data
