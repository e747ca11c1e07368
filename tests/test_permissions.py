"""Tests for agent permission management."""

import pytest
from eth_account import Account

from payvault.derivation import permission_address
from payvault.errors import InvalidInstruction, NotFound, Unauthorized
from payvault.instructions import AUTHORIZE_AGENT


@pytest.fixture
def vault(harness):
    harness.fund_owner(1000)
    harness.init(1000)
    return harness


class TestAuthorizeAgent:
    def test_creates_permission(self, vault):
        result = vault.authorize(300)
        assert result.created
        assert result.permission == permission_address(
            vault.program.program_id, vault.owner.address, vault.agent.address
        )[0]

        perm = vault.program.get_permission(vault.owner.address, vault.agent.address)
        assert (perm.budget, perm.spent) == (300, 0)
        assert vault.program.remaining(vault.owner.address, vault.agent.address) == 300

    def test_revision_preserves_spent(self, vault):
        vault.authorize(300)
        vault.spend(120)
        result = vault.authorize(500)
        assert not result.created
        assert (result.budget, result.spent) == (500, 120)
        assert vault.program.remaining(vault.owner.address, vault.agent.address) == 380

    def test_repeat_authorization_is_idempotent(self, vault):
        first = vault.authorize(100)
        assert (first.created, first.budget, first.spent) == (True, 100, 0)
        second = vault.authorize(100)
        assert (second.created, second.budget, second.spent) == (False, 100, 0)
        perm = vault.program.get_permission(vault.owner.address, vault.agent.address)
        assert (perm.budget, perm.spent) == (100, 0)

    def test_no_vault(self, harness):
        with pytest.raises(Unauthorized):
            harness.authorize(300)

    def test_signer_must_be_owner(self, vault):
        with pytest.raises(Unauthorized):
            vault.authorize(300, key=vault.agent.key.hex())
        assert vault.program.get_permission(vault.owner.address, vault.agent.address) is None

    def test_requires_agent(self, vault):
        signed = vault.program.sign(
            vault.owner.key.hex(), AUTHORIZE_AGENT, owner=vault.owner.address, amount=5
        )
        with pytest.raises(InvalidInstruction):
            vault.program.authorize_agent(signed)

    def test_agents_are_independent(self, vault):
        second = Account.create()
        vault.authorize(300)
        vault.authorize(50, agent=second.address)
        listed = {p.agent: p.budget for p in vault.program.list_permissions(vault.owner.address)}
        assert listed == {vault.agent.address.lower(): 300, second.address.lower(): 50}


class TestRevokeAgent:
    def test_revoke_deletes_permission(self, vault):
        vault.authorize(300)
        vault.spend(100)
        result = vault.revoke()
        assert result.spent == 100
        assert result.refund_recipient == vault.owner.address.lower()
        assert vault.program.get_permission(vault.owner.address, vault.agent.address) is None

    def test_reauthorize_after_revoke_starts_fresh(self, vault):
        vault.authorize(300)
        vault.spend(100)
        vault.revoke()
        result = vault.authorize(300)
        assert result.created
        assert result.spent == 0

    def test_revoke_missing_permission(self, vault):
        with pytest.raises(NotFound):
            vault.revoke()

    def test_revoke_without_vault(self, harness):
        with pytest.raises(Unauthorized):
            harness.revoke()

    def test_revoke_by_agent_rejected(self, vault):
        vault.authorize(300)
        with pytest.raises(Unauthorized):
            vault.revoke(key=vault.agent.key.hex())

    def test_orphaned_permission_survives_close(self, vault):
        vault.authorize(300)
        vault.withdraw()
        assert vault.program.get_vault(vault.owner.address) is None
        orphaned = vault.program.list_permissions(vault.owner.address)
        assert [p.budget for p in orphaned] == [300]
