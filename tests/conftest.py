"""Shared fixtures for vault program tests."""

import pytest
from eth_account import Account

from payvault.config import PayVaultConfig
from payvault.instructions import (
    AUTHORIZE_AGENT,
    INITIALIZE_VAULT,
    REVOKE_AGENT,
    SPEND_FROM_VAULT,
    WITHDRAW_AND_CLOSE,
)
from payvault.program import PayVault


OWNER = Account.create()
AGENT = Account.create()
TREASURY = Account.create()
ASSET = Account.create().address


class Harness:
    """A program plus funded accounts and one-line signing helpers."""

    def __init__(self, program: PayVault):
        self.program = program
        self.gateway = program.gateway
        self.owner = OWNER
        self.agent = AGENT
        self.asset = ASSET
        self.owner_account = program.open_associated_account(OWNER.address, ASSET)
        self.treasury = program.open_associated_account(TREASURY.address, ASSET)

    def fund_owner(self, amount: int) -> None:
        self.gateway.deposit(self.owner_account, amount)

    def init(self, amount: int = 0, key=None, **fields):
        fields.setdefault("owner", OWNER.address)
        fields.setdefault("asset", ASSET)
        signed = self.program.sign(
            key or OWNER.key.hex(), INITIALIZE_VAULT, amount=amount, **fields
        )
        return self.program.initialize_vault(signed)

    def authorize(self, budget: int, agent=None, key=None):
        signed = self.program.sign(
            key or OWNER.key.hex(),
            AUTHORIZE_AGENT,
            owner=OWNER.address,
            agent=agent or AGENT.address,
            amount=budget,
        )
        return self.program.authorize_agent(signed)

    def revoke(self, agent=None, key=None):
        signed = self.program.sign(
            key or OWNER.key.hex(),
            REVOKE_AGENT,
            owner=OWNER.address,
            agent=agent or AGENT.address,
        )
        return self.program.revoke_agent(signed)

    def spend(self, amount: int, key=None, agent=None, treasury=None):
        signed = self.program.sign(
            key or AGENT.key.hex(),
            SPEND_FROM_VAULT,
            owner=OWNER.address,
            agent=agent or AGENT.address,
            amount=amount,
            account=treasury or self.treasury,
        )
        return self.program.spend_from_vault(signed)

    def withdraw(self, key=None, **fields):
        signed = self.program.sign(
            key or OWNER.key.hex(), WITHDRAW_AND_CLOSE, owner=OWNER.address, **fields
        )
        return self.program.withdraw_and_close(signed)


@pytest.fixture
def program(tmp_path):
    return PayVault.from_config(PayVaultConfig(home=tmp_path / "payvault"))


@pytest.fixture
def harness(program):
    return Harness(program)
