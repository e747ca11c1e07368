"""
Deterministic record addressing.

Vault and permission records live at addresses derived from a fixed tag plus
identity seeds, so any party can recompute where a record lives without a
directory lookup. A derived address is valid only when its digest is not the
x-coordinate of a secp256k1 point: no private key can sign for it, so only the
program can exercise its authority. The discriminator is the first value,
counting down from 255, that yields such an off-curve digest.
"""

from __future__ import annotations

import re
from typing import Any, Sequence

from eth_utils import keccak

from .errors import InvalidInstruction, Unauthorized


SECP256K1_P = 2**256 - 2**32 - 977
DERIVATION_MARKER = b"PayVaultDerivedAddress"
DEFAULT_PROGRAM_ID = "0x" + keccak(text="payvault.program.v1").hex()
ZERO_ADDRESS = "0x" + "0" * 40
ZERO_ACCOUNT = "0x" + "0" * 64

VAULT_TAG = "vault"
PERMISSION_TAG = "permission"
CUSTODY_TAG = "custody"
ACCOUNT_TAG = "account"

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_HEX32_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")


def normalize_address(address: str) -> str:
    """Normalize EVM addresses to lower-case hex."""
    if not isinstance(address, str):
        raise InvalidInstruction(f"Invalid address: {address!r}")
    candidate = address.strip()
    if candidate.startswith("0X"):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise InvalidInstruction(f"Invalid address: {address}")
    return candidate.lower()


def normalize_hex32(value: Any, field_name: str = "value") -> str:
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 32:
            raise InvalidInstruction(f"{field_name} must be 32 bytes")
        return "0x" + bytes(value).hex()
    if not isinstance(value, str) or not _HEX32_RE.match(value.strip()):
        raise InvalidInstruction(f"{field_name} must be 32 bytes (0x + 64 hex chars)")
    return value.strip().lower()


def address_to_bytes32(address: str) -> bytes:
    """Left-pad a 20-byte address into a 32-byte slot."""
    return b"\x00" * 12 + bytes.fromhex(normalize_address(address)[2:])


def bytes32_to_address(raw: bytes) -> str:
    if len(raw) != 32 or any(raw[:12]):
        raise ValueError("Slot does not hold a left-padded 20-byte address")
    return "0x" + raw[12:].hex()


def _seed_bytes(seed: str) -> bytes:
    if _ADDRESS_RE.match(seed.strip()):
        return address_to_bytes32(seed)
    return bytes.fromhex(normalize_hex32(seed, "seed")[2:])


def is_on_curve(candidate: bytes) -> bool:
    """True if candidate, read as an integer, is a secp256k1 x-coordinate."""
    x = int.from_bytes(candidate, "big")
    if x >= SECP256K1_P:
        return False
    y2 = (pow(x, 3, SECP256K1_P) + 7) % SECP256K1_P
    return pow(y2, (SECP256K1_P - 1) // 2, SECP256K1_P) != SECP256K1_P - 1


def _candidate(program_id: str, tag: str, seeds: Sequence[str], discriminator: int) -> bytes:
    material = b"".join(_seed_bytes(s) for s in seeds)
    material += tag.encode() + bytes([discriminator])
    material += bytes.fromhex(normalize_hex32(program_id, "program_id")[2:])
    return keccak(material + DERIVATION_MARKER)


def create_address(
    program_id: str,
    tag: str,
    seeds: Sequence[str],
    discriminator: int,
) -> str:
    """Compute the address for one discriminator, rejecting on-curve results."""
    if not 0 <= discriminator <= 255:
        raise Unauthorized(f"Discriminator out of range: {discriminator}")
    digest = _candidate(program_id, tag, seeds, discriminator)
    if is_on_curve(digest):
        raise Unauthorized(
            f"Discriminator {discriminator} does not yield a valid {tag} address"
        )
    return "0x" + digest.hex()


def derive_address(program_id: str, tag: str, *seeds: str) -> tuple[str, int]:
    """Find the canonical (address, discriminator) for tag and seeds."""
    for discriminator in range(255, -1, -1):
        digest = _candidate(program_id, tag, seeds, discriminator)
        if not is_on_curve(digest):
            return "0x" + digest.hex(), discriminator
    raise Unauthorized(f"No valid {tag} address for seeds")


def verify_address(
    address: str,
    program_id: str,
    tag: str,
    seeds: Sequence[str],
    discriminator: int,
) -> None:
    """Recompute an address and compare it to the one presented."""
    expected, canonical = derive_address(program_id, tag, *seeds)
    if discriminator != canonical:
        raise Unauthorized(
            f"Stored discriminator {discriminator} is not canonical ({canonical}) for {tag}"
        )
    if normalize_hex32(address, f"{tag} address") != expected:
        raise Unauthorized(f"Address mismatch for {tag}: expected {expected}")


def vault_address(program_id: str, owner: str) -> tuple[str, int]:
    return derive_address(program_id, VAULT_TAG, owner)


def permission_address(program_id: str, owner: str, agent: str) -> tuple[str, int]:
    return derive_address(program_id, PERMISSION_TAG, owner, agent)


def custody_address(program_id: str, vault: str, asset: str) -> str:
    return derive_address(program_id, CUSTODY_TAG, vault, asset)[0]


def associated_account(program_id: str, holder: str, asset: str) -> str:
    """Address of the holder's external account for an asset."""
    return derive_address(program_id, ACCOUNT_TAG, holder, asset)[0]
