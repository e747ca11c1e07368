"""
Metered spending from a vault.

Flow:
1. Verify the agent signed the spend instruction
2. Load the owner's vault and the (owner, agent) permission
3. Check remaining budget with checked u64 arithmetic
4. Record the new ``spent`` value
5. Transfer from custody to the treasury under the vault capability

Steps 4 and 5 commit together: a gateway rejection rolls back the
``spent`` increment, and a failed commit reverses the transfer.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import asdict, dataclass

from .amounts import checked_add, checked_sub
from .derivation import ZERO_ACCOUNT
from .errors import BudgetExceeded, InvalidInstruction
from .instructions import SPEND_FROM_VAULT, SignedInstruction, require_signer
from .permissions import PermissionLedger
from .registry import VaultRegistry

logger = logging.getLogger(__name__)


@dataclass
class SpendResult:
    owner: str
    agent: str
    amount: int
    budget: int
    spent: int
    remaining: int
    treasury: str
    transfer_id: str

    def to_dict(self) -> dict:
        return asdict(self)


class SpendAuthorizer:
    """Validates spend requests against permissions and moves funds."""

    def __init__(self, registry: VaultRegistry, permissions: PermissionLedger):
        self.registry = registry
        self.permissions = permissions
        self.store = registry.store
        self.gateway = registry.gateway
        self.program_id = registry.program_id
        self.chain_id = registry.chain_id

    def spend_from_vault(self, signed: SignedInstruction) -> SpendResult:
        ix = signed.instruction
        if ix.account == ZERO_ACCOUNT:
            raise InvalidInstruction("spend_from_vault requires a treasury account")

        with self.store.transaction() as txn:
            signer = require_signer(signed, SPEND_FROM_VAULT, ix.agent, self.program_id, self.chain_id)
            txn.consume_nonce(signer, ix.nonce, ix.name)

            vault_addr, vault = self.registry.load_vault(txn, ix.owner)
            perm_addr, permission = self.permissions.load_permission(txn, ix.owner, ix.agent)

            remaining = checked_sub(permission.budget, permission.spent)
            if ix.amount > remaining:
                raise BudgetExceeded(ix.amount, remaining)

            updated = dataclasses.replace(
                permission,
                spent=checked_add(permission.spent, ix.amount),
            )
            txn.put_permission(perm_addr, updated)

            capability = self.registry._signing_capability(vault_addr, vault)
            if ix.account == capability.custody:
                raise InvalidInstruction("Treasury cannot be the vault's own custody account")
            transfer_id = self.gateway.transfer(capability.custody, ix.account, ix.amount, capability)
            txn.on_rollback(
                f"reverse spend {transfer_id}",
                lambda: self.gateway.reverse_transfer(transfer_id, capability),
            )

        logger.info(
            "Spend completed: %d by %s from vault %s (spent: %d of %d)",
            ix.amount,
            updated.agent,
            vault_addr,
            updated.spent,
            updated.budget,
        )
        return SpendResult(
            owner=updated.owner,
            agent=updated.agent,
            amount=ix.amount,
            budget=updated.budget,
            spent=updated.spent,
            remaining=updated.budget - updated.spent,
            treasury=ix.account,
            transfer_id=transfer_id,
        )
