"""
Permission ledger: per-agent budgets scoped to (owner, agent).

``authorize_agent`` is an upsert that keeps consumption history: budget is
always overwritten, ``spent`` starts at zero only when the record is new.
Revoking is the only way to clear ``spent`` for an agent.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import asdict, dataclass
from typing import Optional

from .derivation import PERMISSION_TAG, ZERO_ADDRESS, normalize_address, permission_address, verify_address
from .errors import InvalidInstruction, NotFound, Unauthorized
from .instructions import AUTHORIZE_AGENT, REVOKE_AGENT, SignedInstruction, require_signer
from .records import AgentPermission
from .registry import VaultRegistry
from .store import RecordTxn

logger = logging.getLogger(__name__)


@dataclass
class AuthorizeResult:
    owner: str
    agent: str
    permission: str
    budget: int
    spent: int
    created: bool

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RevokeResult:
    owner: str
    agent: str
    permission: str
    budget: int
    spent: int
    refund_recipient: str

    def to_dict(self) -> dict:
        return asdict(self)


class PermissionLedger:
    """Creates, updates and destroys AgentPermission records."""

    def __init__(self, registry: VaultRegistry):
        self.registry = registry
        self.store = registry.store
        self.program_id = registry.program_id
        self.chain_id = registry.chain_id

    def find_permission(
        self,
        txn: RecordTxn,
        owner: str,
        agent: str,
    ) -> Optional[tuple[str, AgentPermission]]:
        """Look up the (owner, agent) permission and check its bindings."""
        owner = normalize_address(owner)
        agent = normalize_address(agent)
        address, _ = permission_address(self.program_id, owner, agent)
        permission = txn.get_permission(address)
        if permission is None:
            return None
        if permission.owner != owner or permission.agent != agent:
            raise Unauthorized(f"Permission at {address} is not bound to ({owner}, {agent})")
        verify_address(
            address,
            self.program_id,
            PERMISSION_TAG,
            [permission.owner, permission.agent],
            permission.discriminator,
        )
        return address, permission

    def load_permission(self, txn: RecordTxn, owner: str, agent: str) -> tuple[str, AgentPermission]:
        found = self.find_permission(txn, owner, agent)
        if found is None:
            raise NotFound(f"No permission for agent {agent} under owner {owner}")
        return found

    def authorize_agent(self, signed: SignedInstruction) -> AuthorizeResult:
        """Grant or revise an agent's budget; spent is preserved on revision."""
        ix = signed.instruction
        if ix.agent == ZERO_ADDRESS:
            raise InvalidInstruction("authorize_agent requires an agent")

        with self.store.transaction() as txn:
            signer = require_signer(signed, AUTHORIZE_AGENT, ix.owner, self.program_id, self.chain_id)
            txn.consume_nonce(signer, ix.nonce, ix.name)
            if self.registry.find_vault(txn, ix.owner) is None:
                raise Unauthorized(f"Owner {ix.owner} has no vault")

            found = self.find_permission(txn, ix.owner, ix.agent)
            created = found is None
            if found is None:
                address, discriminator = permission_address(self.program_id, ix.owner, ix.agent)
                permission = AgentPermission(
                    owner=ix.owner,
                    agent=ix.agent,
                    budget=ix.amount,
                    spent=0,
                    discriminator=discriminator,
                )
            else:
                address, existing = found
                permission = dataclasses.replace(existing, budget=ix.amount)
            txn.put_permission(address, permission)

        logger.info(
            "Agent %s: %s (owner: %s, budget: %d, spent: %d)",
            "authorized" if created else "budget revised",
            permission.agent,
            permission.owner,
            permission.budget,
            permission.spent,
        )
        return AuthorizeResult(
            owner=permission.owner,
            agent=permission.agent,
            permission=address,
            budget=permission.budget,
            spent=permission.spent,
            created=created,
        )

    def revoke_agent(self, signed: SignedInstruction) -> RevokeResult:
        """Destroy an agent's permission record."""
        ix = signed.instruction

        with self.store.transaction() as txn:
            signer = require_signer(signed, REVOKE_AGENT, ix.owner, self.program_id, self.chain_id)
            txn.consume_nonce(signer, ix.nonce, ix.name)
            if self.registry.find_vault(txn, ix.owner) is None:
                raise Unauthorized(f"Owner {ix.owner} has no vault")

            address, permission = self.load_permission(txn, ix.owner, ix.agent)
            txn.delete_permission(address)

        logger.info(
            "Agent revoked: %s (owner: %s, spent: %d of %d)",
            permission.agent,
            permission.owner,
            permission.spent,
            permission.budget,
        )
        return RevokeResult(
            owner=permission.owner,
            agent=permission.agent,
            permission=address,
            budget=permission.budget,
            spent=permission.spent,
            refund_recipient=permission.owner,
        )
