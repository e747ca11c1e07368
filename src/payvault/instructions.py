"""
Signed instructions.

Each vault operation is submitted as an EIP-712 typed message signed by the
caller. The program recovers the signer from the signature, so a caller proves
its identity without ever handing a key to the program.
"""

from __future__ import annotations

import secrets
from dataclasses import asdict, dataclass, field
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import to_checksum_address

from .amounts import require_u64
from .derivation import (
    DEFAULT_PROGRAM_ID,
    ZERO_ACCOUNT,
    ZERO_ADDRESS,
    normalize_address,
    normalize_hex32,
)
from .errors import InvalidInstruction, Unauthorized


DEFAULT_CHAIN_ID = 8453
DOMAIN_NAME = "PayVault"
DOMAIN_VERSION = "1"

INITIALIZE_VAULT = "initialize_vault"
AUTHORIZE_AGENT = "authorize_agent"
REVOKE_AGENT = "revoke_agent"
SPEND_FROM_VAULT = "spend_from_vault"
WITHDRAW_AND_CLOSE = "withdraw_and_close"

INSTRUCTION_NAMES = frozenset(
    {INITIALIZE_VAULT, AUTHORIZE_AGENT, REVOKE_AGENT, SPEND_FROM_VAULT, WITHDRAW_AND_CLOSE}
)

_INSTRUCTION_TYPES = {
    "Instruction": [
        {"name": "program", "type": "bytes32"},
        {"name": "name", "type": "string"},
        {"name": "owner", "type": "address"},
        {"name": "agent", "type": "address"},
        {"name": "asset", "type": "address"},
        {"name": "amount", "type": "uint256"},
        {"name": "account", "type": "bytes32"},
        {"name": "nonce", "type": "bytes32"},
    ],
}


def new_nonce() -> str:
    return "0x" + secrets.token_hex(32)


@dataclass(frozen=True)
class Instruction:
    """Operation parameters as the caller signs them."""

    name: str
    owner: str
    agent: str = ZERO_ADDRESS
    asset: str = ZERO_ADDRESS
    amount: int = 0
    account: str = ZERO_ACCOUNT
    nonce: str = field(default_factory=new_nonce)

    def __post_init__(self):
        if self.name not in INSTRUCTION_NAMES:
            raise InvalidInstruction(f"Unknown instruction: {self.name}")
        for name in ("owner", "agent", "asset"):
            object.__setattr__(self, name, normalize_address(getattr(self, name)))
        object.__setattr__(self, "account", normalize_hex32(self.account, "account"))
        object.__setattr__(self, "nonce", normalize_hex32(self.nonce, "nonce"))
        require_u64(self.amount)

    def to_eip712_message(self, program_id: str, chain_id: int) -> dict:
        return {
            "types": _INSTRUCTION_TYPES,
            "primaryType": "Instruction",
            "domain": {
                "name": DOMAIN_NAME,
                "version": DOMAIN_VERSION,
                "chainId": chain_id,
            },
            "message": {
                "program": bytes.fromhex(normalize_hex32(program_id, "program_id")[2:]),
                "name": self.name,
                "owner": to_checksum_address(self.owner),
                "agent": to_checksum_address(self.agent),
                "asset": to_checksum_address(self.asset),
                "amount": self.amount,
                "account": bytes.fromhex(self.account[2:]),
                "nonce": bytes.fromhex(self.nonce[2:]),
            },
        }


@dataclass(frozen=True)
class SignedInstruction:
    """An instruction plus the caller's signature over it."""

    instruction: Instruction
    signature: str

    def to_dict(self) -> dict:
        return {"instruction": asdict(self.instruction), "signature": self.signature}

    @classmethod
    def from_dict(cls, d: dict) -> SignedInstruction:
        return cls(instruction=Instruction(**d["instruction"]), signature=d["signature"])


def sign_instruction(
    private_key: str,
    instruction: Instruction,
    program_id: str = DEFAULT_PROGRAM_ID,
    chain_id: int = DEFAULT_CHAIN_ID,
) -> SignedInstruction:
    """Sign an instruction with the caller's key (client side)."""
    typed_data = instruction.to_eip712_message(program_id, chain_id)
    signed = Account.sign_typed_data(
        private_key,
        typed_data["domain"],
        typed_data["types"],
        typed_data["message"],
    )
    return SignedInstruction(instruction=instruction, signature=signed.signature.hex())


def recover_signer(
    signed: SignedInstruction,
    program_id: str = DEFAULT_PROGRAM_ID,
    chain_id: int = DEFAULT_CHAIN_ID,
) -> str:
    """Recover the signing address, raising Unauthorized on a bad signature."""
    typed_data = signed.instruction.to_eip712_message(program_id, chain_id)
    signature = signed.signature[2:] if signed.signature.startswith("0x") else signed.signature
    try:
        signable = encode_typed_data(
            typed_data["domain"],
            typed_data["types"],
            typed_data["message"],
        )
        recovered = Account.recover_message(signable, signature=bytes.fromhex(signature))
    except Exception as e:
        raise Unauthorized(f"Signature verification failed: {e}") from e
    return normalize_address(recovered)


def require_signer(
    signed: SignedInstruction,
    expected_name: str,
    expected_signer: str,
    program_id: str = DEFAULT_PROGRAM_ID,
    chain_id: int = DEFAULT_CHAIN_ID,
) -> str:
    """Check the instruction name and that expected_signer produced the signature."""
    if signed.instruction.name != expected_name:
        raise InvalidInstruction(
            f"Expected {expected_name} instruction, got {signed.instruction.name}"
        )
    signer = recover_signer(signed, program_id, chain_id)
    if signer != normalize_address(expected_signer):
        raise Unauthorized(f"Signer mismatch: expected {expected_signer}, got {signer}")
    return signer


def build_instruction(
    name: str,
    owner: str,
    agent: Optional[str] = None,
    asset: Optional[str] = None,
    amount: int = 0,
    account: Optional[str] = None,
) -> Instruction:
    return Instruction(
        name=name,
        owner=owner,
        agent=agent or ZERO_ADDRESS,
        asset=asset or ZERO_ADDRESS,
        amount=amount,
        account=account or ZERO_ACCOUNT,
    )
