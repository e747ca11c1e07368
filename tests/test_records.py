"""Tests for fixed-width record encodings."""

import struct

import pytest
from eth_account import Account

from payvault.amounts import U64_MAX
from payvault.errors import MathOverflow
from payvault.records import AgentPermission, PaymentVault


OWNER = Account.create().address
AGENT = Account.create().address
ASSET = Account.create().address


def test_record_sizes():
    assert PaymentVault.SIZE == 65
    assert AgentPermission.SIZE == 81


def test_vault_layout():
    vault = PaymentVault(owner=OWNER, asset=ASSET, discriminator=254)
    data = vault.to_bytes()
    assert len(data) == 65
    assert data[12:32] == bytes.fromhex(OWNER[2:])
    assert data[44:64] == bytes.fromhex(ASSET[2:])
    assert data[64] == 254
    assert PaymentVault.from_bytes(data) == vault
    assert vault.owner == OWNER.lower()


def test_permission_layout_little_endian():
    perm = AgentPermission(owner=OWNER, agent=AGENT, budget=300, spent=U64_MAX, discriminator=255)
    data = perm.to_bytes()
    assert struct.unpack_from("<Q", data, 64)[0] == 300
    assert data[72:80] == b"\xff" * 8
    assert AgentPermission.from_bytes(data) == perm


@pytest.mark.parametrize("cls", [PaymentVault, AgentPermission])
def test_wrong_length_rejected(cls):
    with pytest.raises(ValueError):
        cls.from_bytes(b"\x00" * (cls.SIZE - 1))


def test_remaining():
    perm = AgentPermission(owner=OWNER, agent=AGENT, budget=300, spent=120, discriminator=255)
    assert perm.remaining == 180


def test_remaining_when_budget_below_spent():
    perm = AgentPermission(owner=OWNER, agent=AGENT, budget=50, spent=120, discriminator=255)
    with pytest.raises(MathOverflow):
        perm.remaining
