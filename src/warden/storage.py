"""Local storage hardening helpers."""

from __future__ import annotations

import os
import secrets
from pathlib import Path


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def load_or_create_secret(path: Path, env_var: str | None = None) -> bytes:
    """Return a secret from the environment, or from a 0600 key file created on first use."""
    if env_var:
        env_value = os.getenv(env_var)
        if env_value:
            return env_value.encode()
    ensure_private_dir(path.parent)
    if path.exists() and path.stat().st_size > 0:
        return path.read_bytes().strip()
    key = secrets.token_hex(32).encode()
    path.write_bytes(key)
    ensure_private_file(path)
    return key
