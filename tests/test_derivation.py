"""Tests for deterministic record addressing."""

import pytest
from eth_account import Account

from payvault.derivation import (
    DEFAULT_PROGRAM_ID,
    PERMISSION_TAG,
    VAULT_TAG,
    _candidate,
    address_to_bytes32,
    bytes32_to_address,
    create_address,
    derive_address,
    is_on_curve,
    normalize_address,
    permission_address,
    vault_address,
    verify_address,
)
from payvault.errors import InvalidInstruction, Unauthorized


OWNER = Account.create().address.lower()
AGENT = Account.create().address.lower()
OTHER_PROGRAM = "0x" + "11" * 32


class TestDeriveAddress:
    def test_deterministic(self):
        assert vault_address(DEFAULT_PROGRAM_ID, OWNER) == vault_address(DEFAULT_PROGRAM_ID, OWNER)

    def test_checksum_and_lowercase_seeds_agree(self):
        checksum = Account.from_key("0x" + "42" * 32).address
        assert vault_address(DEFAULT_PROGRAM_ID, checksum) == vault_address(
            DEFAULT_PROGRAM_ID, checksum.lower()
        )

    def test_distinct_per_program_and_tag(self):
        vault, _ = vault_address(DEFAULT_PROGRAM_ID, OWNER)
        other, _ = vault_address(OTHER_PROGRAM, OWNER)
        perm, _ = permission_address(DEFAULT_PROGRAM_ID, OWNER, AGENT)
        assert len({vault, other, perm}) == 3

    def test_permission_order_matters(self):
        forward, _ = permission_address(DEFAULT_PROGRAM_ID, OWNER, AGENT)
        reverse, _ = permission_address(DEFAULT_PROGRAM_ID, AGENT, OWNER)
        assert forward != reverse

    def test_result_is_off_curve_with_highest_discriminator(self):
        address, disc = derive_address(DEFAULT_PROGRAM_ID, VAULT_TAG, OWNER)
        assert not is_on_curve(bytes.fromhex(address[2:]))
        for higher in range(disc + 1, 256):
            assert is_on_curve(_candidate(DEFAULT_PROGRAM_ID, VAULT_TAG, [OWNER], higher))


class TestCreateAndVerify:
    def test_create_matches_derive(self):
        address, disc = vault_address(DEFAULT_PROGRAM_ID, OWNER)
        assert create_address(DEFAULT_PROGRAM_ID, VAULT_TAG, [OWNER], disc) == address

    def test_create_rejects_out_of_range(self):
        with pytest.raises(Unauthorized):
            create_address(DEFAULT_PROGRAM_ID, VAULT_TAG, [OWNER], 256)

    def test_verify_accepts_canonical(self):
        address, disc = permission_address(DEFAULT_PROGRAM_ID, OWNER, AGENT)
        verify_address(address, DEFAULT_PROGRAM_ID, PERMISSION_TAG, [OWNER, AGENT], disc)

    def test_verify_rejects_non_canonical_discriminator(self):
        address, disc = vault_address(DEFAULT_PROGRAM_ID, OWNER)
        with pytest.raises(Unauthorized, match="not canonical"):
            verify_address(address, DEFAULT_PROGRAM_ID, VAULT_TAG, [OWNER], (disc - 1) % 256)

    def test_verify_rejects_wrong_address(self):
        _, disc = vault_address(DEFAULT_PROGRAM_ID, OWNER)
        with pytest.raises(Unauthorized, match="mismatch"):
            verify_address("0x" + "ab" * 32, DEFAULT_PROGRAM_ID, VAULT_TAG, [OWNER], disc)


class TestIdentityEncoding:
    def test_bytes32_padding(self):
        raw = address_to_bytes32(OWNER)
        assert len(raw) == 32
        assert raw[:12] == b"\x00" * 12
        assert bytes32_to_address(raw) == OWNER

    def test_bytes32_rejects_dirty_padding(self):
        with pytest.raises(ValueError):
            bytes32_to_address(b"\x01" + b"\x00" * 31)

    @pytest.mark.parametrize("bad", ["", "0x123", "not-an-address", None])
    def test_normalize_rejects_malformed(self, bad):
        with pytest.raises(InvalidInstruction):
            normalize_address(bad)
