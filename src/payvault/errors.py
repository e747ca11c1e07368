"""
PayVault error types.

Every operation raises one of these and aborts as a whole, so callers can
tell a budget denial from a gateway rejection without parsing messages.
"""


class PayVaultError(Exception):
    """Base error for all PayVault operations."""
    pass


class InvalidInstruction(PayVaultError):
    """Instruction is malformed (bad address, non-u64 amount, wrong name)."""
    pass


# Authorization errors
class Unauthorized(PayVaultError):
    """Caller identity or record binding does not match the stored record."""
    pass


class AlreadyInitialized(PayVaultError):
    """A vault already exists for this owner."""
    def __init__(self, owner: str):
        self.owner = owner
        super().__init__(f"Vault already initialized for owner {owner}")


class NotFound(PayVaultError):
    """Operation targets a record that does not exist."""
    pass


# Budget errors
class BudgetExceeded(PayVaultError):
    """Requested spend exceeds the remaining budget."""
    def __init__(self, amount: int, remaining: int):
        self.amount = amount
        self.remaining = remaining
        super().__init__(f"Amount {amount} exceeds remaining budget {remaining}")


class MathOverflow(PayVaultError):
    """Checked u64 arithmetic over- or underflowed."""
    pass


# Transfer errors
class TransferFailure(PayVaultError):
    """Base error for transfer gateway rejections."""
    pass


class InsufficientBalance(TransferFailure):
    """Source account does not hold enough of the asset."""
    def __init__(self, account: str, balance: int, amount: int):
        self.account = account
        self.balance = balance
        self.amount = amount
        super().__init__(f"Account {account} holds {balance}, cannot move {amount}")


class AssetMismatch(TransferFailure):
    """Source and destination accounts hold different assets."""
    pass


class UnauthorizedCapability(TransferFailure):
    """Authority presented to the gateway cannot move funds from the account."""
    pass
