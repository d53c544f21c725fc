"""Error kinds raised along the proxy request path."""

from __future__ import annotations

from fastapi import status


class ProxyError(Exception):
    """An error rendered to the client as a plain-text response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, detail: str, status_code: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code


class AuthError(ProxyError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(ProxyError):
    status_code = status.HTTP_404_NOT_FOUND


class BadRequest(ProxyError):
    status_code = status.HTTP_400_BAD_REQUEST


class OriginError(ProxyError):
    """The origin could not be reached, or its body stream broke."""

    status_code = status.HTTP_502_BAD_GATEWAY


class CacheLookupError(Exception):
    """A cache tier failed to answer. Callers treat this as a miss."""


class PersistError(Exception):
    """Writing an object to the object cache failed."""
