from __future__ import annotations

import os
from pathlib import Path

import pytest

from execstream.auth import TokenAuthenticator
from execstream.errors import InitializationError


def test_initialize_generates_token_file(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "head.token"
    auth = TokenAuthenticator(path)
    auth.initialize()

    assert path.exists()
    content = path.read_text(encoding="utf-8")
    assert content.endswith("\n")
    assert content.strip() == auth.token
    # 32 bytes of entropy, url-safe base64 without padding
    assert len(auth.token or "") >= 43
    assert all(ch.isalnum() or ch in "-_" for ch in auth.token or "")
    # no temp files left behind
    assert [p.name for p in path.parent.iterdir()] == ["head.token"]


@pytest.mark.skipif(os.name == "nt", reason="POSIX permissions only")
def test_token_file_is_owner_only(tmp_path: Path) -> None:
    old_umask = os.umask(0o022)
    try:
        path = tmp_path / "head.token"
        TokenAuthenticator(path).initialize()
    finally:
        os.umask(old_umask)

    mode = int(path.stat().st_mode) & 0o777
    assert (mode & 0o077) == 0, f"expected no group/other perms, got mode={oct(mode)}"


def test_initialize_reuses_existing_token(tmp_path: Path) -> None:
    path = tmp_path / "head.token"
    path.write_text("  existing-secret \n", encoding="utf-8")

    auth = TokenAuthenticator(path)
    auth.initialize()
    auth.initialize()

    assert auth.token == "existing-secret"
    assert path.read_text(encoding="utf-8") == "  existing-secret \n"


def test_token_is_stable_across_instances(tmp_path: Path) -> None:
    path = tmp_path / "head.token"
    first = TokenAuthenticator(path)
    first.initialize()
    second = TokenAuthenticator(path)
    second.initialize()

    assert first.token == second.token


def test_validate_token(tmp_path: Path) -> None:
    auth = TokenAuthenticator(tmp_path / "head.token")
    assert auth.validate_token("anything") is False  # not initialized

    auth.initialize()
    token = auth.token or ""

    assert auth.validate_token(token) is True
    assert auth.validate_token(None) is False
    assert auth.validate_token("") is False
    assert auth.validate_token(token + " ") is False
    assert auth.validate_token(" " + token) is False
    assert auth.validate_token(token[:-1]) is False
    assert auth.validate_token(token.upper() if token != token.upper() else token.lower()) is False
    assert auth.validate_token("ñ" + token) is False


def test_unreadable_token_location_is_fatal(tmp_path: Path) -> None:
    path = tmp_path / "head.token"
    path.mkdir()

    with pytest.raises(InitializationError) as exc:
        TokenAuthenticator(path).initialize()
    assert exc.value.code == "INITIALIZATION_FAILED"


def test_empty_token_file_is_fatal(tmp_path: Path) -> None:
    path = tmp_path / "head.token"
    path.write_text("\n", encoding="utf-8")

    with pytest.raises(InitializationError):
        TokenAuthenticator(path).initialize()
