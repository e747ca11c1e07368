"""
Vault and permission records with their fixed-width encodings.

PaymentVault:     [owner:32][asset:32][discriminator:1]
AgentPermission:  [owner:32][agent:32][budget:8][spent:8][discriminator:1]

Integers are little-endian u64; identities are 20-byte addresses left-padded
into 32-byte slots.
"""

from __future__ import annotations

import struct
from dataclasses import asdict, dataclass

from .amounts import checked_sub, require_u64
from .derivation import address_to_bytes32, bytes32_to_address, normalize_address


_VAULT_LAYOUT = struct.Struct("<32s32sB")
_PERMISSION_LAYOUT = struct.Struct("<32s32sQQB")


@dataclass(frozen=True)
class PaymentVault:
    """Master record for an owner's custody account."""

    owner: str
    asset: str
    discriminator: int

    SIZE = _VAULT_LAYOUT.size

    def __post_init__(self):
        object.__setattr__(self, "owner", normalize_address(self.owner))
        object.__setattr__(self, "asset", normalize_address(self.asset))

    def to_bytes(self) -> bytes:
        return _VAULT_LAYOUT.pack(
            address_to_bytes32(self.owner),
            address_to_bytes32(self.asset),
            self.discriminator,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> PaymentVault:
        if len(data) != cls.SIZE:
            raise ValueError(f"PaymentVault record must be {cls.SIZE} bytes, got {len(data)}")
        owner, asset, discriminator = _VAULT_LAYOUT.unpack(data)
        return cls(
            owner=bytes32_to_address(owner),
            asset=bytes32_to_address(asset),
            discriminator=discriminator,
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class AgentPermission:
    """Per-agent budget scoped to one owner."""

    owner: str
    agent: str
    budget: int
    spent: int
    discriminator: int

    SIZE = _PERMISSION_LAYOUT.size

    def __post_init__(self):
        object.__setattr__(self, "owner", normalize_address(self.owner))
        object.__setattr__(self, "agent", normalize_address(self.agent))
        require_u64(self.budget, "budget")
        require_u64(self.spent, "spent")

    @property
    def remaining(self) -> int:
        """Unspent budget; raises MathOverflow when budget was cut below spent."""
        return checked_sub(self.budget, self.spent)

    def to_bytes(self) -> bytes:
        return _PERMISSION_LAYOUT.pack(
            address_to_bytes32(self.owner),
            address_to_bytes32(self.agent),
            self.budget,
            self.spent,
            self.discriminator,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> AgentPermission:
        if len(data) != cls.SIZE:
            raise ValueError(f"AgentPermission record must be {cls.SIZE} bytes, got {len(data)}")
        owner, agent, budget, spent, discriminator = _PERMISSION_LAYOUT.unpack(data)
        return cls(
            owner=bytes32_to_address(owner),
            agent=bytes32_to_address(agent),
            budget=budget,
            spent=spent,
            discriminator=discriminator,
        )

    def to_dict(self) -> dict:
        return asdict(self)
