"""
Vault registry: opens and closes an owner's vault and custody account.

The vault record is the only authority over its custody account. The registry
is the only place a SigningCapability is minted, and it re-derives the vault
address from the stored discriminator every time it does so.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Optional

from .capability import SigningCapability, issue_capability
from .derivation import (
    DEFAULT_PROGRAM_ID,
    VAULT_TAG,
    ZERO_ACCOUNT,
    ZERO_ADDRESS,
    associated_account,
    create_address,
    custody_address,
    normalize_address,
    vault_address,
    verify_address,
)
from .errors import (
    AlreadyInitialized,
    InvalidInstruction,
    NotFound,
    Unauthorized,
    UnauthorizedCapability,
)
from .gateway import TransferGateway
from .instructions import (
    DEFAULT_CHAIN_ID,
    INITIALIZE_VAULT,
    WITHDRAW_AND_CLOSE,
    SignedInstruction,
    require_signer,
)
from .records import PaymentVault
from .store import RecordStore, RecordTxn

logger = logging.getLogger(__name__)


@dataclass
class InitializeResult:
    owner: str
    asset: str
    vault: str
    custody: str
    discriminator: int
    deposited: int
    transfer_id: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class WithdrawResult:
    owner: str
    vault: str
    custody: str
    withdrawn: int
    destination: Optional[str]
    refund_recipient: str
    transfer_id: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class VaultRegistry:
    """Creates and destroys PaymentVault records and their custody accounts."""

    def __init__(
        self,
        store: RecordStore,
        gateway: TransferGateway,
        program_id: str = DEFAULT_PROGRAM_ID,
        chain_id: int = DEFAULT_CHAIN_ID,
    ):
        self.store = store
        self.gateway = gateway
        self.program_id = program_id
        self.chain_id = chain_id

    def find_vault(self, txn: RecordTxn, owner: str) -> Optional[tuple[str, PaymentVault]]:
        """Look up the owner's vault at its derived address."""
        owner = normalize_address(owner)
        address, _ = vault_address(self.program_id, owner)
        vault = txn.get_vault(address)
        if vault is None:
            return None
        if vault.owner != owner:
            raise Unauthorized(f"Vault at {address} is not owned by {owner}")
        return address, vault

    def load_vault(self, txn: RecordTxn, owner: str) -> tuple[str, PaymentVault]:
        found = self.find_vault(txn, owner)
        if found is None:
            raise NotFound(f"No vault for owner {owner}")
        return found

    def _signing_capability(self, address: str, vault: PaymentVault) -> SigningCapability:
        try:
            derived = create_address(self.program_id, VAULT_TAG, [vault.owner], vault.discriminator)
            verify_address(derived, self.program_id, VAULT_TAG, [vault.owner], vault.discriminator)
        except Unauthorized as e:
            raise UnauthorizedCapability(f"Vault signing rejected: {e}") from e
        if derived != address:
            raise UnauthorizedCapability(f"Vault signing rejected: {address} != {derived}")
        return issue_capability(
            derived,
            vault.owner,
            custody_address(self.program_id, derived, vault.asset),
            vault.discriminator,
        )

    def _withdrawal_destination(self, account: str, vault: PaymentVault) -> str:
        destination = (
            account
            if account != ZERO_ACCOUNT
            else associated_account(self.program_id, vault.owner, vault.asset)
        )
        dest_account = self.gateway.get_account(destination)
        if dest_account is None:
            raise NotFound(f"Withdrawal account not found: {destination}")
        if dest_account.authority != vault.owner:
            raise Unauthorized(f"Withdrawal account {destination} is not owned by {vault.owner}")
        return destination

    def initialize_vault(self, signed: SignedInstruction) -> InitializeResult:
        """Create the owner's vault and custody account, optionally funding it."""
        ix = signed.instruction
        if ix.asset == ZERO_ADDRESS:
            raise InvalidInstruction("initialize_vault requires an asset")

        with self.store.transaction() as txn:
            signer = require_signer(signed, INITIALIZE_VAULT, ix.owner, self.program_id, self.chain_id)
            txn.consume_nonce(signer, ix.nonce, ix.name)

            address, discriminator = vault_address(self.program_id, ix.owner)
            if txn.get_vault(address) is not None:
                raise AlreadyInitialized(ix.owner)

            vault = PaymentVault(owner=ix.owner, asset=ix.asset, discriminator=discriminator)
            txn.put_vault(address, vault)
            capability = self._signing_capability(address, vault)

            custody = capability.custody
            self.gateway.open_account(custody, vault.asset, address)
            txn.on_rollback(
                f"close custody account {custody}",
                lambda: self.gateway.close_account(custody, capability),
            )

            transfer_id = None
            if ix.amount > 0:
                source = (
                    ix.account
                    if ix.account != ZERO_ACCOUNT
                    else associated_account(self.program_id, ix.owner, vault.asset)
                )
                transfer_id = self.gateway.transfer(source, custody, ix.amount, ix.owner)
                txn.on_rollback(
                    f"reverse deposit {transfer_id}",
                    lambda: self.gateway.reverse_transfer(transfer_id, ix.owner),
                )

        logger.info(
            "Vault initialized: %s (owner: %s, asset: %s, deposit: %d)",
            address,
            vault.owner,
            vault.asset,
            ix.amount,
        )
        return InitializeResult(
            owner=vault.owner,
            asset=vault.asset,
            vault=address,
            custody=custody,
            discriminator=discriminator,
            deposited=ix.amount,
            transfer_id=transfer_id,
        )

    def withdraw_and_close(self, signed: SignedInstruction) -> WithdrawResult:
        """Return the full custody balance to the owner and close the vault."""
        ix = signed.instruction

        with self.store.transaction() as txn:
            signer = require_signer(signed, WITHDRAW_AND_CLOSE, ix.owner, self.program_id, self.chain_id)
            txn.consume_nonce(signer, ix.nonce, ix.name)

            address, vault = self.load_vault(txn, ix.owner)
            capability = self._signing_capability(address, vault)
            custody = capability.custody
            amount = self.gateway.balance_of(custody)
            destination = None
            transfer_id = None
            if amount == 0:
                logger.info("No balance to withdraw from %s, closing", custody)
            else:
                destination = self._withdrawal_destination(ix.account, vault)
                transfer_id = self.gateway.transfer(custody, destination, amount, capability)
                txn.on_rollback(
                    f"reverse withdrawal {transfer_id}",
                    lambda: self.gateway.reverse_transfer(transfer_id, capability),
                )

            self.gateway.close_account(custody, capability)
            txn.on_rollback(
                f"reopen custody account {custody}",
                lambda: self.gateway.open_account(custody, vault.asset, address),
            )
            txn.delete_vault(address)

        logger.info(
            "Vault closed: %s (owner: %s, withdrawn: %d)",
            address,
            vault.owner,
            amount,
        )
        return WithdrawResult(
            owner=vault.owner,
            vault=address,
            custody=custody,
            withdrawn=amount,
            destination=destination,
            refund_recipient=vault.owner,
            transfer_id=transfer_id,
        )
