"""Runtime configuration for the vault program."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from .derivation import DEFAULT_PROGRAM_ID, normalize_hex32
from .errors import InvalidInstruction
from .instructions import DEFAULT_CHAIN_ID


def _default_home() -> Path:
    return Path.home() / ".payvault"


@dataclass
class PayVaultConfig:
    home: Path = field(default_factory=_default_home)
    program_id: str = DEFAULT_PROGRAM_ID
    chain_id: int = DEFAULT_CHAIN_ID

    def __post_init__(self):
        self.home = Path(self.home)
        self.program_id = normalize_hex32(self.program_id, "program_id")
        if self.chain_id <= 0:
            raise InvalidInstruction(f"chain_id must be positive, got {self.chain_id}")

    @property
    def records_dir(self) -> Path:
        return self.home / "records"

    @property
    def gateway_dir(self) -> Path:
        return self.home / "gateway"

    @property
    def audit_path(self) -> Path:
        return self.home / "audit.jsonl"

    @property
    def audit_key_path(self) -> Path:
        return self.home / ".payvault-secrets" / "audit_hmac.key"

    @classmethod
    def from_env(cls) -> PayVaultConfig:
        """Build config from PAYVAULT_HOME, PAYVAULT_PROGRAM_ID and PAYVAULT_CHAIN_ID."""
        home = os.getenv("PAYVAULT_HOME")
        chain_id = os.getenv("PAYVAULT_CHAIN_ID")
        try:
            return cls(
                home=Path(home).expanduser() if home else _default_home(),
                program_id=os.getenv("PAYVAULT_PROGRAM_ID") or DEFAULT_PROGRAM_ID,
                chain_id=int(chain_id) if chain_id else DEFAULT_CHAIN_ID,
            )
        except ValueError as e:
            raise InvalidInstruction(f"Invalid PAYVAULT_CHAIN_ID: {chain_id}") from e
