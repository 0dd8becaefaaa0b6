"""Placing .netrc and .hgrc credentials in the home directory."""

from __future__ import annotations

import os
import sys
from pathlib import Path


def netrc_filename() -> str:
    return "_netrc" if sys.platform == "win32" else ".netrc"


def transform_auth_file_name(name: str) -> str:
    """Map any spelling of a netrc file to the platform's netrc name."""
    if name.lstrip("._") == "netrc":
        return netrc_filename()
    return name


def _write_private(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)


def initialize_auth_file(path: str, home: str | os.PathLike | None = None) -> Path | None:
    """Copy the auth file at *path* into the home directory, replacing any there."""
    if not path:
        return None
    data = Path(os.path.normpath(path)).read_bytes()
    target = Path(home) if home is not None else Path.home()
    dest = target / transform_auth_file_name(os.path.basename(path))
    _write_private(dest, data)
    return dest


def netrc_from_token(token: str, home: str | os.PathLike | None = None) -> Path:
    """Write a netrc file granting github.com access with *token*."""
    target = Path(home) if home is not None else Path.home()
    dest = target / netrc_filename()
    _write_private(dest, f"machine github.com login {token}\n".encode())
    return dest