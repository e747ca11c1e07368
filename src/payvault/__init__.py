"""
PayVault: budget-limited payment delegation vaults.

An owner funds a custody account and grants agents metered spending rights:
Owner funds vault → Owner sets agent budget → Agent spends within it.
"""

__version__ = "0.1.0"

from .errors import (
    AlreadyInitialized,
    AssetMismatch,
    BudgetExceeded,
    InsufficientBalance,
    InvalidInstruction,
    MathOverflow,
    NotFound,
    PayVaultError,
    TransferFailure,
    Unauthorized,
    UnauthorizedCapability,
)
from .records import AgentPermission, PaymentVault
from .instructions import Instruction, SignedInstruction, build_instruction, sign_instruction
from .gateway import LocalTransferGateway, TransferGateway
from .store import RecordStore
from .audit import AuditTrail, EventType
from .config import PayVaultConfig
from .program import PayVault

__all__ = [
    "PayVault", "PayVaultConfig",
    "PaymentVault", "AgentPermission",
    "Instruction", "SignedInstruction", "build_instruction", "sign_instruction",
    "TransferGateway", "LocalTransferGateway", "RecordStore",
    "AuditTrail", "EventType",
    "PayVaultError", "InvalidInstruction", "Unauthorized", "AlreadyInitialized", "NotFound",
    "BudgetExceeded", "MathOverflow", "TransferFailure", "InsufficientBalance",
    "AssetMismatch", "UnauthorizedCapability",
]
