"""Credential gate for the proxy's read and write allow-lists."""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Iterable
from typing import Optional

from .schemas import AccessScope


def is_member(credential: str, keys: Iterable[str]) -> bool:
    """Constant-time membership test; every key is compared even after a match."""
    candidate = credential.encode("utf-8")
    found = False
    for key in keys:
        if hmac.compare_digest(candidate, key.encode("utf-8")):
            found = True
    return found


def credential_fingerprint(credential: str) -> str:
    """Short, non-reversible tag for a credential, safe to log."""
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()[:12]


class CredentialGate:
    """Resolves a presented api key to an AccessScope.

    Every write key is also accepted as a read key; read keys never grant write.
    """

    def __init__(self, read_keys: Iterable[str], write_keys: Iterable[str]) -> None:
        self._write_keys = frozenset(key for key in write_keys if key)
        self._read_keys = frozenset(key for key in read_keys if key) | self._write_keys

    def scope_for(self, credential: Optional[str]) -> AccessScope:
        if not credential:
            return AccessScope.NONE
        if is_member(credential, self._write_keys):
            return AccessScope.WRITE
        if is_member(credential, self._read_keys):
            return AccessScope.READ
        return AccessScope.NONE

    @property
    def configured(self) -> bool:
        return bool(self._read_keys)
