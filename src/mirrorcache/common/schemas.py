"""Shared data models for cached objects and request state."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel


DEFAULT_CONTENT_TYPE = "text/plain"


class AccessScope(str, Enum):
    """What a presented credential may do. Write implies read."""

    NONE = "none"
    READ = "read"
    WRITE = "write"

    @property
    def can_read(self) -> bool:
        return self in (AccessScope.READ, AccessScope.WRITE)

    @property
    def can_write(self) -> bool:
        return self is AccessScope.WRITE


class HttpMetadata(BaseModel):
    """HTTP headers captured from the origin and replayed on every hit."""

    content_type: str = DEFAULT_CONTENT_TYPE
    cache_control: Optional[str] = None
    content_disposition: Optional[str] = None
    content_encoding: Optional[str] = None
    content_language: Optional[str] = None


class CustomMetadata(BaseModel):
    """Operator bookkeeping stored next to each object; never used for lookups."""

    original_url: str
    url_hash: str
    request_path: str


class StoredObject(BaseModel):
    key: str
    body: bytes
    size: int
    http_metadata: HttpMetadata
    custom_metadata: Optional[CustomMetadata] = None


class EdgeEntry(BaseModel):
    """A complete response as kept by the edge cache."""

    status: int
    headers: list[tuple[str, str]]
    body: bytes

    @property
    def size(self) -> int:
        return len(self.body)


@dataclass
class RequestContext:
    """Per-request state. Owned by exactly one in-flight request."""

    edge_key: str
    credential: Optional[str]
    url: Optional[str]
    extra_params: Optional[str] = None
    scope: AccessScope = AccessScope.NONE
    target_url: Optional[str] = None
    request_path: str = ""
    cache_key: Optional[str] = None
