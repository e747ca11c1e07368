"""
Vault signing capability.

The vault record, not any private key, is the authority over its custody
account. A SigningCapability is the in-process token for that authority: the
registry mints it after re-deriving the vault address, and the gateway only
honours it for the one custody account it was minted for.
"""

from __future__ import annotations


_ISSUE_TOKEN = object()


class SigningCapability:
    """Capability object scoped to one vault's custody account."""

    __slots__ = ("_vault_address", "_owner", "_custody", "_discriminator")

    def __init__(
        self,
        vault_address: str,
        owner: str,
        custody: str,
        discriminator: int,
        *,
        _token: object = None,
    ):
        if _token is not _ISSUE_TOKEN:
            raise TypeError("SigningCapability can only be issued by the vault registry")
        self._vault_address = vault_address
        self._owner = owner
        self._custody = custody
        self._discriminator = discriminator

    @property
    def address(self) -> str:
        return self._vault_address

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def custody(self) -> str:
        return self._custody

    @property
    def discriminator(self) -> int:
        return self._discriminator

    def __repr__(self) -> str:
        return f"SigningCapability(vault={self._vault_address}, custody={self._custody})"


def issue_capability(
    vault_address: str,
    owner: str,
    custody: str,
    discriminator: int,
) -> SigningCapability:
    return SigningCapability(
        vault_address,
        owner,
        custody,
        discriminator,
        _token=_ISSUE_TOKEN,
    )
