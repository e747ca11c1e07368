"""
Record store for vaults and agent permissions.

Records are kept in SQLite as their fixed-width encodings, keyed by derived
address. Every vault operation runs inside one ``RecordStore.transaction()``:
an exclusive file lock plus ``BEGIN IMMEDIATE``, so concurrent operations are
totally ordered. Side effects outside the database (gateway calls) register a
compensation on the transaction; if the block raises or the commit fails, the
database rolls back and compensations run newest-first.
"""

from __future__ import annotations

import fcntl
import hashlib
import hmac
import logging
import sqlite3
import time
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from .errors import Unauthorized
from .records import AgentPermission, PaymentVault
from .storage import ensure_private_dir, ensure_private_file, load_or_create_key

logger = logging.getLogger(__name__)


DEFAULT_STORE_DIR = Path.home() / ".payvault" / "records"

VAULT_KIND = "vault"
PERMISSION_KIND = "permission"


class RecordTxn:
    """Record reads and writes bound to one open SQLite transaction."""

    def __init__(self, conn: sqlite3.Connection, writable: bool = True):
        self._conn = conn
        self._writable = writable
        self._compensations: list[tuple[str, Callable[[], object]]] = []

    def _require_writable(self) -> None:
        if not self._writable:
            raise RuntimeError("Record transaction is read-only")

    def _get(self, address: str, kind: str) -> Optional[bytes]:
        row = self._conn.execute(
            "SELECT kind, data FROM records WHERE address = ?",
            (address,),
        ).fetchone()
        if row is None:
            return None
        if row["kind"] != kind:
            raise Unauthorized(f"Record at {address} is a {row['kind']}, not a {kind}")
        return bytes(row["data"])

    def _put(self, address: str, kind: str, owner: str, agent: Optional[str], data: bytes) -> None:
        self._require_writable()
        self._conn.execute(
            """
            INSERT INTO records (address, kind, owner, agent, data, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(address) DO UPDATE SET
                data = excluded.data,
                updated_at = excluded.updated_at
            """,
            (address, kind, owner, agent, data, int(time.time())),
        )

    def _delete(self, address: str) -> bool:
        self._require_writable()
        cur = self._conn.execute("DELETE FROM records WHERE address = ?", (address,))
        return cur.rowcount > 0

    def get_vault(self, address: str) -> Optional[PaymentVault]:
        data = self._get(address, VAULT_KIND)
        return PaymentVault.from_bytes(data) if data is not None else None

    def put_vault(self, address: str, vault: PaymentVault) -> None:
        self._put(address, VAULT_KIND, vault.owner, None, vault.to_bytes())

    def delete_vault(self, address: str) -> bool:
        return self._delete(address)

    def get_permission(self, address: str) -> Optional[AgentPermission]:
        data = self._get(address, PERMISSION_KIND)
        return AgentPermission.from_bytes(data) if data is not None else None

    def put_permission(self, address: str, permission: AgentPermission) -> None:
        self._put(address, PERMISSION_KIND, permission.owner, permission.agent, permission.to_bytes())

    def delete_permission(self, address: str) -> bool:
        return self._delete(address)

    def list_permissions(self, owner: str) -> list[tuple[str, AgentPermission]]:
        rows = self._conn.execute(
            """
            SELECT address, data FROM records
            WHERE kind = ? AND owner = ?
            ORDER BY agent ASC
            """,
            (PERMISSION_KIND, owner),
        ).fetchall()
        return [(r["address"], AgentPermission.from_bytes(bytes(r["data"]))) for r in rows]

    def consume_nonce(self, signer: str, nonce: str, instruction: str) -> None:
        """Record a signed instruction as used; a second use is a replay."""
        self._require_writable()
        try:
            self._conn.execute(
                """
                INSERT INTO consumed_nonces (signer, nonce, instruction, consumed_at)
                VALUES (?, ?, ?, ?)
                """,
                (signer, nonce, instruction, int(time.time())),
            )
        except sqlite3.IntegrityError as e:
            raise Unauthorized(f"Instruction replayed: nonce {nonce} already used by {signer}") from e

    def on_rollback(self, description: str, callback: Callable[[], object]) -> None:
        """Register an undo step for a side effect outside the database."""
        self._require_writable()
        self._compensations.append((description, callback))

    def _run_compensations(self) -> None:
        for description, callback in reversed(self._compensations):
            try:
                callback()
            except Exception:
                logger.exception("Compensation failed: %s", description)
            else:
                logger.info("Compensation applied: %s", description)
        self._compensations.clear()


class RecordStore:
    """
    SQLite-backed record set with an HMAC integrity seal.

    The seal covers the database files and is verified before every access,
    so edits made outside the store are detected.
    """

    def __init__(self, store_dir: Optional[Path] = None):
        self.store_dir = store_dir or DEFAULT_STORE_DIR
        ensure_private_dir(self.store_dir)
        self.db_path = self.store_dir / "records.sqlite3"
        self._secret_dir = self.store_dir.parent / ".payvault-secrets"
        ensure_private_dir(self._secret_dir)
        self._hmac_key = load_or_create_key(self._secret_dir / "records_hmac.key")
        self._sig_path = self._secret_dir / f"{self.store_dir.name}.records.sig"
        self._lock_path = self._secret_dir / f"{self.store_dir.name}.records.lock"
        ensure_private_file(self._lock_path)
        with self._exclusive():
            self._verify_integrity()
            self._init_db()
            self._seal_integrity()

    @contextmanager
    def _exclusive(self):
        with open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _compute_integrity_hash(self) -> str:
        digest = hmac.new(self._hmac_key, digestmod=hashlib.sha256)
        for path in (
            self.db_path,
            Path(str(self.db_path) + "-wal"),
            Path(str(self.db_path) + "-shm"),
        ):
            if path.exists():
                digest.update(path.name.encode() + b":" + path.read_bytes() + b";")
        return digest.hexdigest()

    def _verify_integrity(self) -> None:
        if not self.db_path.exists() or not self._sig_path.exists():
            return
        expected = self._sig_path.read_text().strip()
        if expected and not hmac.compare_digest(expected, self._compute_integrity_hash()):
            raise RuntimeError("Record store integrity check failed: local state was modified")

    def _seal_integrity(self) -> None:
        if not self.db_path.exists():
            return
        self._sig_path.write_text(self._compute_integrity_hash())
        ensure_private_file(self._sig_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with closing(self._connect()) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS records (
                    address TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    owner TEXT NOT NULL,
                    agent TEXT,
                    data BLOB NOT NULL,
                    updated_at INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_records_owner ON records (kind, owner)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS consumed_nonces (
                    signer TEXT NOT NULL,
                    nonce TEXT NOT NULL,
                    instruction TEXT NOT NULL,
                    consumed_at INTEGER NOT NULL,
                    PRIMARY KEY (signer, nonce)
                )
                """
            )
        ensure_private_file(self.db_path)

    @contextmanager
    def transaction(self) -> Iterator[RecordTxn]:
        """Run one all-or-nothing unit of work against the record set."""
        with self._exclusive():
            self._verify_integrity()
            txn: Optional[RecordTxn] = None
            committed = False
            try:
                with closing(self._connect()) as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    txn = RecordTxn(conn)
                    try:
                        yield txn
                        conn.execute("COMMIT")
                        committed = True
                    finally:
                        if not committed and conn.in_transaction:
                            conn.execute("ROLLBACK")
            finally:
                self._seal_integrity()
                if not committed and txn is not None:
                    txn._run_compensations()

    @contextmanager
    def reader(self) -> Iterator[RecordTxn]:
        """Read-only view of the record set."""
        with self._exclusive():
            self._verify_integrity()
            with closing(self._connect()) as conn:
                yield RecordTxn(conn, writable=False)
