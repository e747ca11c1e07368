"""Local storage hardening helpers."""

from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Optional


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def load_or_create_key(path: Path, env_var: Optional[str] = None) -> bytes:
    """Load an HMAC key from env or disk, generating one on first use."""
    if env_var:
        env_key = os.getenv(env_var)
        if env_key:
            return env_key.encode()
    ensure_private_dir(path.parent)
    if path.exists() and path.stat().st_size > 0:
        return path.read_bytes().strip()
    key = secrets.token_hex(32).encode()
    path.write_bytes(key)
    ensure_private_file(path)
    return key
