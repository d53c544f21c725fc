from __future__ import annotations

from types import SimpleNamespace

import pytest
from fastapi import HTTPException

from mirrorcache.common.http_security import require_metrics_access
from mirrorcache.common.schemas import AccessScope
from mirrorcache.common.security import CredentialGate, credential_fingerprint, is_member


def test_gate_resolves_scopes():
    gate = CredentialGate(read_keys=["r1", "r2"], write_keys=["w1"])

    assert gate.scope_for("r1") is AccessScope.READ
    assert gate.scope_for("w1") is AccessScope.WRITE
    assert gate.scope_for("nope") is AccessScope.NONE
    assert gate.scope_for(None) is AccessScope.NONE
    assert gate.scope_for("") is AccessScope.NONE


def test_write_keys_imply_read():
    gate = CredentialGate(read_keys=[], write_keys=["w1"])

    scope = gate.scope_for("w1")
    assert scope.can_read and scope.can_write
    assert gate.configured


def test_read_keys_never_grant_write():
    scope = CredentialGate(read_keys=["r1"], write_keys=[]).scope_for("r1")
    assert scope.can_read and not scope.can_write


def test_empty_gate_rejects_everything():
    gate = CredentialGate(read_keys=[""], write_keys=[])

    assert not gate.configured
    assert gate.scope_for("") is AccessScope.NONE
    assert gate.scope_for("anything") is AccessScope.NONE


def test_is_member_matches_exactly():
    assert is_member("abc", ["x", "abc"])
    assert not is_member("ab", ["abc"])
    assert not is_member("abc", [])


def test_credential_fingerprint_does_not_leak_key():
    fingerprint = credential_fingerprint("super-secret")
    assert len(fingerprint) == 12
    assert "secret" not in fingerprint


def _request(host: str | None, authorization: str | None = None):
    headers = {"authorization": authorization} if authorization else {}
    client = SimpleNamespace(host=host) if host is not None else None
    return SimpleNamespace(client=client, headers=headers)


def test_metrics_token_required_when_configured():
    require_metrics_access(_request("10.0.0.1", "Bearer tok"), "tok")
    with pytest.raises(HTTPException) as excinfo:
        require_metrics_access(_request("127.0.0.1", "Bearer wrong"), "tok")
    assert excinfo.value.status_code == 401


def test_metrics_loopback_only_without_token():
    require_metrics_access(_request("127.0.0.1"), None)
    require_metrics_access(_request("::1"), None)
    for host in ("10.0.0.5", "proxy.internal", "localhost", "", None):
        with pytest.raises(HTTPException) as excinfo:
            require_metrics_access(_request(host), None)
        assert excinfo.value.status_code == 403


def test_metrics_token_rejects_missing_and_non_ascii_headers():
    for header in (None, "Bearer tök"):
        with pytest.raises(HTTPException) as excinfo:
            require_metrics_access(_request("127.0.0.1", header), "tok")
        assert excinfo.value.status_code == 401
