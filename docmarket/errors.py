"""Error taxonomy shared by the ledger services and the HTTP layer.

Every error carries a stable ``code`` so client UIs can tell the failure
kinds apart, and the HTTP status it maps to.
"""
from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class MarketplaceError(Exception):
    """Base class for failures surfaced to API callers."""

    status_code = 400
    code = "MARKETPLACE_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": False, "error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(MarketplaceError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(MarketplaceError):
    status_code = 404
    code = "NOT_FOUND"


class ForbiddenError(MarketplaceError):
    status_code = 403
    code = "FORBIDDEN"


class ConflictError(MarketplaceError):
    status_code = 409
    code = "CONFLICT"


class EntitlementExistsError(ConflictError):
    """A COMPLETED entitlement already exists for the (buyer, document) pair."""

    code = "ALREADY_PURCHASED"

    def __init__(self, buyer_id: str, document_id: str) -> None:
        super().__init__(
            "Document already purchased",
            details={"buyer_id": buyer_id, "document_id": document_id},
        )
        self.buyer_id = buyer_id
        self.document_id = document_id


class LimitExceededError(MarketplaceError):
    status_code = 403
    code = "DOWNLOAD_LIMIT_EXCEEDED"


class InvalidStateError(MarketplaceError):
    status_code = 409
    code = "INVALID_STATE"


class UpstreamFailureError(MarketplaceError):
    status_code = 502
    code = "UPSTREAM_FAILURE"


class AccountLedgerError(RuntimeError):
    """Raised when a balance or counter update could not be applied."""


async def _marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(MarketplaceError, _marketplace_error_handler)


__all__ = [
    "AccountLedgerError",
    "ConflictError",
    "EntitlementExistsError",
    "ForbiddenError",
    "InvalidStateError",
    "LimitExceededError",
    "MarketplaceError",
    "NotFoundError",
    "UpstreamFailureError",
    "ValidationError",
    "register_error_handlers",
]
