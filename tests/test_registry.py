"""Tests for vault initialization and closing."""

import dataclasses

import pytest
from eth_account import Account

from payvault.derivation import custody_address, vault_address
from payvault.errors import (
    AlreadyInitialized,
    AssetMismatch,
    InsufficientBalance,
    InvalidInstruction,
    NotFound,
    Unauthorized,
    UnauthorizedCapability,
)
from payvault.instructions import INITIALIZE_VAULT, WITHDRAW_AND_CLOSE


class TestInitializeVault:
    def test_creates_vault_and_funds_custody(self, harness):
        harness.fund_owner(1000)
        result = harness.init(1000)

        program = harness.program
        vault = program.get_vault(harness.owner.address)
        assert vault.owner == harness.owner.address.lower()
        assert vault.asset == harness.asset.lower()
        assert result.vault == vault_address(program.program_id, harness.owner.address)[0]
        assert result.custody == custody_address(program.program_id, result.vault, harness.asset)
        assert program.custody_balance(harness.owner.address) == 1000
        assert harness.gateway.balance_of(harness.owner_account) == 0

    def test_zero_deposit(self, harness):
        result = harness.init(0)
        assert result.transfer_id is None
        assert harness.program.custody_balance(harness.owner.address) == 0

    def test_second_init_fails(self, harness):
        harness.fund_owner(10)
        harness.init(10)
        with pytest.raises(AlreadyInitialized):
            harness.init(0)
        assert harness.program.custody_balance(harness.owner.address) == 10

    def test_signer_must_be_owner(self, harness):
        intruder = Account.create()
        with pytest.raises(Unauthorized):
            harness.init(0, key=intruder.key.hex())
        assert harness.program.get_vault(harness.owner.address) is None

    def test_requires_asset(self, harness):
        signed = harness.program.sign(
            harness.owner.key.hex(), INITIALIZE_VAULT, owner=harness.owner.address
        )
        with pytest.raises(InvalidInstruction):
            harness.program.initialize_vault(signed)

    def test_unfunded_deposit_rolls_back_everything(self, harness):
        harness.fund_owner(5)
        with pytest.raises(InsufficientBalance):
            harness.init(10)
        program = harness.program
        assert program.get_vault(harness.owner.address) is None
        vault, _ = vault_address(program.program_id, harness.owner.address)
        assert harness.gateway.get_account(custody_address(program.program_id, vault, harness.asset)) is None
        # a fresh attempt succeeds once the owner has funds
        harness.fund_owner(5)
        assert harness.init(10).deposited == 10

    def test_funding_source_asset_mismatch(self, harness):
        other_asset = Account.create().address
        source = harness.program.open_associated_account(harness.owner.address, other_asset)
        harness.gateway.deposit(source, 10)
        with pytest.raises(AssetMismatch):
            harness.init(10, account=source)
        assert harness.gateway.balance_of(source) == 10

    def test_replayed_instruction_rejected(self, harness):
        signed = harness.program.sign(
            harness.owner.key.hex(),
            INITIALIZE_VAULT,
            owner=harness.owner.address,
            asset=harness.asset,
        )
        harness.program.initialize_vault(signed)
        harness.withdraw()
        with pytest.raises(Unauthorized, match="replayed"):
            harness.program.initialize_vault(signed)


class TestWithdrawAndClose:
    def test_returns_full_balance(self, harness):
        harness.fund_owner(1000)
        harness.init(1000)
        result = harness.withdraw()

        assert result.withdrawn == 1000
        assert result.refund_recipient == harness.owner.address.lower()
        assert harness.gateway.balance_of(harness.owner_account) == 1000
        assert harness.program.get_vault(harness.owner.address) is None
        assert harness.gateway.get_account(result.custody) is None

    def test_empty_vault_closes_without_transfer(self, harness):
        harness.init(0)
        result = harness.withdraw()
        assert result.withdrawn == 0
        assert result.transfer_id is None
        assert harness.gateway.transfers() == []
        assert harness.gateway.get_account(result.custody) is None
        assert harness.program.get_vault(harness.owner.address) is None

    def test_empty_vault_closes_without_owner_account(self, program):
        owner = Account.create()
        key = owner.key.hex()
        asset = Account.create().address
        program.initialize_vault(
            program.sign(key, INITIALIZE_VAULT, owner=owner.address, asset=asset)
        )
        assert program.gateway.get_account(program.associated_account(owner.address, asset)) is None

        result = program.withdraw_and_close(
            program.sign(key, WITHDRAW_AND_CLOSE, owner=owner.address)
        )
        assert result.destination is None
        assert program.get_vault(owner.address) is None
        assert program.gateway.get_account(result.custody) is None

    def test_no_vault(self, harness):
        with pytest.raises(NotFound):
            harness.withdraw()

    def test_signer_must_be_owner(self, harness):
        harness.fund_owner(10)
        harness.init(10)
        with pytest.raises(Unauthorized):
            harness.withdraw(key=Account.create().key.hex())
        assert harness.program.custody_balance(harness.owner.address) == 10

    def test_destination_must_belong_to_owner(self, harness):
        harness.fund_owner(10)
        harness.init(10)
        with pytest.raises(Unauthorized):
            harness.withdraw(account=harness.treasury)
        assert harness.program.custody_balance(harness.owner.address) == 10

    def test_reinitialize_after_close(self, harness):
        harness.fund_owner(10)
        harness.init(10)
        harness.withdraw()
        result = harness.init(10)
        assert result.deposited == 10
        assert harness.program.custody_balance(harness.owner.address) == 10


class TestSigningCapability:
    @pytest.fixture
    def tampered(self, harness):
        harness.fund_owner(1000)
        harness.init(1000)
        harness.authorize(300)
        program = harness.program
        with program.store.transaction() as txn:
            address, vault = program.registry.load_vault(txn, harness.owner.address)
            txn.put_vault(
                address,
                dataclasses.replace(vault, discriminator=(vault.discriminator - 1) % 256),
            )
        return harness

    def test_spend_rejected(self, tampered):
        with pytest.raises(UnauthorizedCapability):
            tampered.spend(100)
        perm = tampered.program.get_permission(tampered.owner.address, tampered.agent.address)
        assert perm.spent == 0
        assert tampered.gateway.balance_of(tampered.treasury) == 0

    def test_withdraw_rejected(self, tampered):
        with pytest.raises(UnauthorizedCapability):
            tampered.withdraw()
        assert tampered.program.get_vault(tampered.owner.address) is not None
        assert tampered.gateway.balance_of(tampered.owner_account) == 0

    def test_custody_untouched(self, tampered):
        for attempt in (lambda: tampered.spend(100), tampered.withdraw):
            with pytest.raises(UnauthorizedCapability):
                attempt()
        custody = custody_address(
            tampered.program.program_id,
            vault_address(tampered.program.program_id, tampered.owner.address)[0],
            tampered.asset,
        )
        assert tampered.gateway.balance_of(custody) == 1000
