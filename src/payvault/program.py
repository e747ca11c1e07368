"""
PayVault program facade.

Wires the registry, permission ledger and spend authorizer to one record store
and gateway, and records every operation outcome in the audit trail.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, TypeVar

from .audit import AuditTrail, EventType
from .config import PayVaultConfig
from .derivation import (
    DEFAULT_PROGRAM_ID,
    associated_account,
    custody_address,
    normalize_address,
)
from .errors import BudgetExceeded, NotFound, PayVaultError
from .gateway import LocalTransferGateway, TransferGateway
from .instructions import (
    AUTHORIZE_AGENT,
    DEFAULT_CHAIN_ID,
    INITIALIZE_VAULT,
    REVOKE_AGENT,
    SPEND_FROM_VAULT,
    WITHDRAW_AND_CLOSE,
    SignedInstruction,
    build_instruction,
    sign_instruction,
)
from .permissions import AuthorizeResult, PermissionLedger, RevokeResult
from .records import AgentPermission, PaymentVault
from .registry import InitializeResult, VaultRegistry, WithdrawResult
from .spend import SpendAuthorizer, SpendResult
from .store import RecordStore

logger = logging.getLogger(__name__)

R = TypeVar("R")

_SUCCESS_EVENTS = {
    INITIALIZE_VAULT: EventType.VAULT_INITIALIZED,
    AUTHORIZE_AGENT: EventType.AGENT_AUTHORIZED,
    REVOKE_AGENT: EventType.AGENT_REVOKED,
    SPEND_FROM_VAULT: EventType.SPEND_COMPLETED,
    WITHDRAW_AND_CLOSE: EventType.VAULT_CLOSED,
}


class PayVault:
    """Entry point for the five vault operations and read-only views."""

    def __init__(
        self,
        store: RecordStore,
        gateway: TransferGateway,
        audit: Optional[AuditTrail] = None,
        program_id: str = DEFAULT_PROGRAM_ID,
        chain_id: int = DEFAULT_CHAIN_ID,
    ):
        self.store = store
        self.gateway = gateway
        self.audit = audit
        self.program_id = program_id
        self.chain_id = chain_id
        self.registry = VaultRegistry(store, gateway, program_id, chain_id)
        self.permissions = PermissionLedger(self.registry)
        self.spender = SpendAuthorizer(self.registry, self.permissions)

    @classmethod
    def from_config(cls, config: Optional[PayVaultConfig] = None) -> PayVault:
        """Build a program backed by local SQLite state under config.home."""
        config = config or PayVaultConfig.from_env()
        return cls(
            store=RecordStore(config.records_dir),
            gateway=LocalTransferGateway(config.gateway_dir),
            audit=AuditTrail(path=config.audit_path, key_path=config.audit_key_path),
            program_id=config.program_id,
            chain_id=config.chain_id,
        )

    # ── Operations ────────────────────────────────────────────────

    def initialize_vault(self, signed: SignedInstruction) -> InitializeResult:
        return self._execute(signed, INITIALIZE_VAULT, self.registry.initialize_vault)

    def authorize_agent(self, signed: SignedInstruction) -> AuthorizeResult:
        return self._execute(signed, AUTHORIZE_AGENT, self.permissions.authorize_agent)

    def revoke_agent(self, signed: SignedInstruction) -> RevokeResult:
        return self._execute(signed, REVOKE_AGENT, self.permissions.revoke_agent)

    def spend_from_vault(self, signed: SignedInstruction) -> SpendResult:
        return self._execute(signed, SPEND_FROM_VAULT, self.spender.spend_from_vault)

    def withdraw_and_close(self, signed: SignedInstruction) -> WithdrawResult:
        return self._execute(signed, WITHDRAW_AND_CLOSE, self.registry.withdraw_and_close)

    def _execute(
        self,
        signed: SignedInstruction,
        name: str,
        operation: Callable[[SignedInstruction], R],
    ) -> R:
        ix = signed.instruction
        agent = ix.agent if name in {AUTHORIZE_AGENT, REVOKE_AGENT, SPEND_FROM_VAULT} else None
        try:
            result = operation(signed)
        except PayVaultError as e:
            logger.warning("%s rejected for owner %s: %s", name, ix.owner, e)
            denied = name == SPEND_FROM_VAULT and isinstance(e, BudgetExceeded)
            self._audit(
                EventType.SPEND_DENIED if denied else EventType.OPERATION_FAILED,
                owner=ix.owner,
                agent=agent,
                amount=ix.amount or None,
                success=False,
                reason=str(e),
                details={"instruction": name, "error": type(e).__name__},
            )
            raise

        if self.audit is not None:
            self.audit.record(_SUCCESS_EVENTS[name], result)  # type: ignore[arg-type]
        return result

    def _audit(self, event_type: EventType, **fields: Any) -> None:
        if self.audit is not None:
            self.audit.log(event_type, **fields)

    # ── Client helpers ────────────────────────────────────────────

    def sign(self, private_key: str, name: str, **fields: Any) -> SignedInstruction:
        """Build and sign an instruction bound to this program and chain."""
        instruction = build_instruction(name, **fields)
        return sign_instruction(private_key, instruction, self.program_id, self.chain_id)

    def associated_account(self, holder: str, asset: str) -> str:
        return associated_account(self.program_id, normalize_address(holder), normalize_address(asset))

    def open_associated_account(self, holder: str, asset: str) -> str:
        """Open the holder's gateway account for asset if it does not exist yet."""
        address = self.associated_account(holder, asset)
        if self.gateway.get_account(address) is None:
            self.gateway.open_account(address, asset, normalize_address(holder))
        return address

    # ── Views ─────────────────────────────────────────────────────

    def get_vault(self, owner: str) -> Optional[PaymentVault]:
        with self.store.reader() as txn:
            found = self.registry.find_vault(txn, owner)
        return found[1] if found else None

    def get_permission(self, owner: str, agent: str) -> Optional[AgentPermission]:
        with self.store.reader() as txn:
            found = self.permissions.find_permission(txn, owner, agent)
        return found[1] if found else None

    def list_permissions(self, owner: str) -> list[AgentPermission]:
        """All permissions recorded for owner, including orphaned ones."""
        with self.store.reader() as txn:
            return [p for _, p in txn.list_permissions(normalize_address(owner))]

    def remaining(self, owner: str, agent: str) -> int:
        permission = self.get_permission(owner, agent)
        if permission is None:
            raise NotFound(f"No permission for agent {agent} under owner {owner}")
        return permission.remaining

    def custody_account(self, owner: str) -> str:
        with self.store.reader() as txn:
            vault_addr, vault = self.registry.load_vault(txn, owner)
        return custody_address(self.program_id, vault_addr, vault.asset)

    def custody_balance(self, owner: str) -> int:
        return self.gateway.balance_of(self.custody_account(owner))
