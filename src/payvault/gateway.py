"""
Transfer gateway: the asset-movement primitive the vault program drives.

The real primitive is external (a token program or payment rail). The
``TransferGateway`` protocol is everything the program needs from it, and
``LocalTransferGateway`` is a SQLite-backed stand-in that enforces the same
balance, asset and authority rules for local development and tests.
"""

from __future__ import annotations

import secrets
import sqlite3
import time
from contextlib import closing, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Protocol, Union

from .amounts import checked_add, require_u64
from .capability import SigningCapability
from .derivation import normalize_address, normalize_hex32
from .errors import (
    AssetMismatch,
    InvalidInstruction,
    InsufficientBalance,
    NotFound,
    TransferFailure,
    UnauthorizedCapability,
)
from .storage import ensure_private_dir, ensure_private_file


DEFAULT_GATEWAY_DIR = Path.home() / ".payvault" / "gateway"

Authority = Union[str, SigningCapability]


@dataclass
class GatewayAccount:
    """An asset-holding account and the authority allowed to debit it."""

    address: str
    asset: str
    authority: str
    balance: int = 0

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "asset": self.asset,
            "authority": self.authority,
            "balance": self.balance,
        }


@dataclass
class TransferRecord:
    transfer_id: str
    from_account: str
    to_account: str
    amount: int
    timestamp: int
    reversed: bool = False


class TransferGateway(Protocol):
    def open_account(self, address: str, asset: str, authority: str) -> GatewayAccount: ...

    def close_account(self, address: str, authority: Authority) -> None: ...

    def get_account(self, address: str) -> Optional[GatewayAccount]: ...

    def balance_of(self, address: str) -> int: ...

    def transfer(
        self,
        from_account: str,
        to_account: str,
        amount: int,
        authority: Authority,
    ) -> str: ...

    def reverse_transfer(self, transfer_id: str, authority: Authority) -> str:
        """Move a transfer's amount back to its source; authority is the source's."""
        ...


def check_authority(account: GatewayAccount, authority: Authority) -> None:
    """Raise UnauthorizedCapability unless authority may debit account."""
    if isinstance(authority, SigningCapability):
        if authority.address != account.authority or authority.custody != account.address:
            raise UnauthorizedCapability(
                f"Capability for {authority.address} cannot move funds from {account.address}"
            )
        return
    if isinstance(authority, str):
        try:
            signer = normalize_address(authority)
        except InvalidInstruction as e:
            raise UnauthorizedCapability(f"Invalid authority: {authority}") from e
        if signer != account.authority:
            raise UnauthorizedCapability(
                f"{signer} is not the authority of account {account.address}"
            )
        return
    raise UnauthorizedCapability(f"Unsupported authority type: {type(authority).__name__}")


def _account_key(address: str) -> str:
    return normalize_hex32(address, "account address")


class LocalTransferGateway:
    """SQLite-backed gateway stand-in with per-call atomic transfers."""

    def __init__(self, gateway_dir: Optional[Path] = None):
        self.gateway_dir = gateway_dir or DEFAULT_GATEWAY_DIR
        ensure_private_dir(self.gateway_dir)
        self.db_path = self.gateway_dir / "gateway.sqlite3"
        self._init_db()
        ensure_private_file(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _immediate(self) -> Iterator[sqlite3.Connection]:
        with closing(self._connect()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_db(self) -> None:
        with closing(self._connect()) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    address TEXT PRIMARY KEY,
                    asset TEXT NOT NULL,
                    authority TEXT NOT NULL,
                    balance TEXT NOT NULL DEFAULT '0'
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS transfers (
                    transfer_id TEXT PRIMARY KEY,
                    from_account TEXT NOT NULL,
                    to_account TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    reversed INTEGER NOT NULL DEFAULT 0
                )
                """
            )

    def _load(self, conn: sqlite3.Connection, address: str) -> GatewayAccount:
        row = conn.execute(
            "SELECT * FROM accounts WHERE address = ?",
            (_account_key(address),),
        ).fetchone()
        if row is None:
            raise NotFound(f"Account not found: {address}")
        return GatewayAccount(
            address=row["address"],
            asset=row["asset"],
            authority=row["authority"],
            balance=int(row["balance"]),
        )

    def open_account(self, address: str, asset: str, authority: str) -> GatewayAccount:
        account = GatewayAccount(
            address=_account_key(address),
            asset=normalize_address(asset),
            authority=authority.lower(),
        )
        with self._immediate() as conn:
            try:
                conn.execute(
                    "INSERT INTO accounts (address, asset, authority, balance) VALUES (?, ?, ?, '0')",
                    (account.address, account.asset, account.authority),
                )
            except sqlite3.IntegrityError as e:
                raise TransferFailure(f"Account already exists: {account.address}") from e
        return account

    def close_account(self, address: str, authority: Authority) -> None:
        with self._immediate() as conn:
            account = self._load(conn, address)
            check_authority(account, authority)
            if account.balance != 0:
                raise TransferFailure(
                    f"Cannot close account {account.address} with balance {account.balance}"
                )
            conn.execute("DELETE FROM accounts WHERE address = ?", (account.address,))

    def get_account(self, address: str) -> Optional[GatewayAccount]:
        with closing(self._connect()) as conn:
            try:
                return self._load(conn, address)
            except NotFound:
                return None

    def balance_of(self, address: str) -> int:
        with closing(self._connect()) as conn:
            return self._load(conn, address).balance

    def deposit(self, address: str, amount: int) -> int:
        """Credit an account from outside the system. Returns the new balance."""
        require_u64(amount)
        with self._immediate() as conn:
            account = self._load(conn, address)
            new_balance = checked_add(account.balance, amount)
            conn.execute(
                "UPDATE accounts SET balance = ? WHERE address = ?",
                (str(new_balance), account.address),
            )
        return new_balance

    def transfer(
        self,
        from_account: str,
        to_account: str,
        amount: int,
        authority: Authority,
    ) -> str:
        require_u64(amount)
        transfer_id = f"xfer-{secrets.token_hex(8)}"
        with self._immediate() as conn:
            source = self._load(conn, from_account)
            destination = self._load(conn, to_account)
            if source.asset != destination.asset:
                raise AssetMismatch(
                    f"Asset mismatch: {source.asset} -> {destination.asset}"
                )
            check_authority(source, authority)
            self._move(conn, transfer_id, source, destination, amount)
        return transfer_id

    def reverse_transfer(self, transfer_id: str, authority: Authority) -> str:
        """
        Undo a transfer by moving its amount back to the source account.

        Authorized by the source account's authority, since the debit being
        undone was its own. A transfer can be reversed once.
        """
        reversal_id = f"xfer-{secrets.token_hex(8)}"
        with self._immediate() as conn:
            row = conn.execute(
                "SELECT * FROM transfers WHERE transfer_id = ?",
                (transfer_id,),
            ).fetchone()
            if row is None:
                raise NotFound(f"Transfer not found: {transfer_id}")
            if row["reversed"]:
                raise TransferFailure(f"Transfer already reversed: {transfer_id}")
            source = self._load(conn, row["from_account"])
            check_authority(source, authority)
            destination = self._load(conn, row["to_account"])
            self._move(conn, reversal_id, destination, source, int(row["amount"]))
            conn.execute(
                "UPDATE transfers SET reversed = 1 WHERE transfer_id = ?",
                (transfer_id,),
            )
        return reversal_id

    def _move(
        self,
        conn: sqlite3.Connection,
        transfer_id: str,
        source: GatewayAccount,
        destination: GatewayAccount,
        amount: int,
    ) -> None:
        if source.balance < amount:
            raise InsufficientBalance(source.address, source.balance, amount)
        if source.address != destination.address:
            conn.execute(
                "UPDATE accounts SET balance = ? WHERE address = ?",
                (str(source.balance - amount), source.address),
            )
            conn.execute(
                "UPDATE accounts SET balance = ? WHERE address = ?",
                (str(checked_add(destination.balance, amount)), destination.address),
            )
        conn.execute(
            """
            INSERT INTO transfers (transfer_id, from_account, to_account, amount, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (transfer_id, source.address, destination.address, str(amount), int(time.time())),
        )

    def transfers(self, account: Optional[str] = None) -> list[TransferRecord]:
        query = "SELECT * FROM transfers"
        params: tuple = ()
        if account is not None:
            key = _account_key(account)
            query += " WHERE from_account = ? OR to_account = ?"
            params = (key, key)
        with closing(self._connect()) as conn:
            rows = conn.execute(query + " ORDER BY rowid ASC", params).fetchall()
        return [
            TransferRecord(
                transfer_id=r["transfer_id"],
                from_account=r["from_account"],
                to_account=r["to_account"],
                amount=int(r["amount"]),
                timestamp=int(r["timestamp"]),
                reversed=bool(r["reversed"]),
            )
            for r in rows
        ]
