"""Middleware package for the quota service."""

from offerquota.app.middleware.auth import require_service_token
from offerquota.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "require_service_token",
    "RequestIdMiddleware",
    "get_request_id",
]
