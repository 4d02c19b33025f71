"""Domain errors raised by the billing reconciliation flows."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class BillingError(Exception):
    """Represents an actionable billing failure surfaced to API callers."""

    code: str
    message: str
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self, headers: Optional[Mapping[str, str]] = None) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(
            status_code=self.status_code,
            detail=dict(self.payload),
            headers=dict(headers) if headers else None,
        )


@dataclass
class AuthenticationError(BillingError):
    code: str = "unauthorized"
    message: str = "Unauthorized"
    status_code: int = status.HTTP_401_UNAUTHORIZED


@dataclass
class WebhookSignatureError(AuthenticationError):
    code: str = "invalid_signature"
    message: str = "Webhook signature verification failed"
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass
class ValidationError(BillingError):
    code: str = "invalid_request"
    message: str = "Invalid request"
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass
class ForbiddenError(BillingError):
    code: str = "forbidden"
    message: str = "Forbidden"
    status_code: int = status.HTTP_403_FORBIDDEN


@dataclass
class NotFoundError(BillingError):
    code: str = "not_found"
    message: str = "Not found"
    status_code: int = status.HTTP_404_NOT_FOUND


@dataclass
class UpstreamError(BillingError):
    """Billing provider failure; the provider message is passed through."""

    code: str = "provider_error"
    message: str = "Billing provider request failed"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
