"""Broker error taxonomy.

Each error carries the HTTP status and a machine-readable kind; the REST
layer renders them as {"error": <text>, "kind": <kind>}.
"""

from __future__ import annotations


class BrokerError(Exception):
    status_code = 500
    kind = "server_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"error": self.message, "kind": self.kind}


class ValidationError(BrokerError):
    """Missing or malformed input."""

    status_code = 400
    kind = "validation_error"


class Unauthorized(BrokerError):
    """Missing or invalid credentials."""

    status_code = 401
    kind = "unauthorized"


class Forbidden(BrokerError):
    """Authenticated, but not entitled to act."""

    status_code = 403
    kind = "forbidden"


class NotFound(BrokerError):
    status_code = 404
    kind = "not_found"


ERRORS_BY_KIND: dict[str, type[BrokerError]] = {
    cls.kind: cls for cls in (ValidationError, Unauthorized, Forbidden, NotFound)
}
