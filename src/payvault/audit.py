"""
Audit trail for vault operations.

Every operation outcome is appended as one JSONL line. Lines form an HMAC
hash chain (each event hashes over its predecessor's hash), so an edited,
dropped or reordered line breaks the chain and is reported on read.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional, Protocol

from .storage import ensure_private_dir, ensure_private_file, load_or_create_key


DEFAULT_AUDIT_PATH = Path.home() / ".payvault" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".payvault" / ".payvault-secrets" / "audit_hmac.key"
AUDIT_KEY_ENV = "PAYVAULT_AUDIT_HMAC_KEY"

_CHAIN_FIELDS = {"prev_hash", "event_hash"}
# result fields that carry the amount moved or granted, by operation
_AMOUNT_FIELDS = ("amount", "deposited", "withdrawn", "budget")


class EventType(str, Enum):
    VAULT_INITIALIZED = "vault_initialized"
    VAULT_CLOSED = "vault_closed"
    AGENT_AUTHORIZED = "agent_authorized"
    AGENT_REVOKED = "agent_revoked"
    SPEND_COMPLETED = "spend_completed"
    SPEND_DENIED = "spend_denied"
    OPERATION_FAILED = "operation_failed"


class OperationResult(Protocol):
    owner: str

    def to_dict(self) -> dict: ...


@dataclass
class AuditEvent:
    """One vault operation outcome."""

    event_type: str
    timestamp: float
    owner: Optional[str] = None
    agent: Optional[str] = None
    vault: Optional[str] = None
    amount: Optional[int] = None
    transfer_id: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def payload(self) -> dict:
        """Fields covered by the event hash."""
        return {
            k: v
            for k, v in asdict(self).items()
            if k not in _CHAIN_FIELDS and v is not None and v != {}
        }

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None and v != {}}
        return json.dumps(d, separators=(",", ":"))

    @classmethod
    def from_raw(cls, raw: dict) -> AuditEvent:
        return cls(**{k: v for k, v in raw.items() if k in cls.__dataclass_fields__})


@dataclass
class SpendSummary:
    owner: str
    spends: int = 0
    denied: int = 0
    total_spent: int = 0


class AuditTrail:
    """Tamper-evident append-only log of vault operations."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH

        ensure_private_dir(self.path.parent)
        ensure_private_file(self.path)

        self._hmac_key = load_or_create_key(self.key_path, env_var=AUDIT_KEY_ENV)
        self._last_hash = self._scan_last_hash()

    def _scan_last_hash(self) -> str:
        last = ""
        for raw in self._lines():
            last = raw.get("event_hash", "")
        return last

    def _lines(self) -> Iterator[dict]:
        with open(self.path, "r") as f:
            for line in f:
                if line.strip():
                    yield json.loads(line)

    def _hash(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256).hexdigest()

    def _append(self, event: AuditEvent) -> AuditEvent:
        prev_hash = self._last_hash
        event.prev_hash = prev_hash or None
        event.event_hash = self._hash(event.payload(), prev_hash)

        with open(self.path, "a") as f:
            f.write(event.to_json() + "\n")
            f.flush()
            os.fsync(f.fileno())

        self._last_hash = event.event_hash
        return event

    def log(
        self,
        event_type: EventType,
        owner: Optional[str] = None,
        agent: Optional[str] = None,
        vault: Optional[str] = None,
        amount: Optional[int] = None,
        transfer_id: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        return self._append(
            AuditEvent(
                event_type=event_type.value,
                timestamp=time.time(),
                owner=owner,
                agent=agent,
                vault=vault,
                amount=amount,
                transfer_id=transfer_id,
                success=success,
                reason=reason,
                details=details or {},
            )
        )

    def record(self, event_type: EventType, result: OperationResult) -> AuditEvent:
        """Log a committed operation from its result object."""
        d = result.to_dict()
        amount = next((d[k] for k in _AMOUNT_FIELDS if k in d), None)
        return self.log(
            event_type,
            owner=result.owner,
            agent=d.get("agent"),
            vault=d.get("vault"),
            amount=amount,
            transfer_id=d.get("transfer_id"),
            details=d,
        )

    def _verified(self) -> Iterator[AuditEvent]:
        expected_prev = ""
        for raw in self._lines():
            event = AuditEvent.from_raw(raw)
            prev_hash = event.prev_hash or ""
            if prev_hash != expected_prev:
                raise RuntimeError("Audit chain broken: previous hash mismatch")
            if not hmac.compare_digest(self._hash(event.payload(), prev_hash), event.event_hash or ""):
                raise RuntimeError("Audit chain broken: event hash mismatch")
            expected_prev = event.event_hash or ""
            yield event
        self._last_hash = expected_prev

    def read_events(
        self,
        owner: Optional[str] = None,
        agent: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: Optional[int] = 100,
    ) -> list[AuditEvent]:
        events = [
            e
            for e in self._verified()
            if (not owner or e.owner == owner.lower())
            and (not agent or e.agent == agent.lower())
            and (not event_type or e.event_type == event_type.value)
        ]
        return events[-limit:] if limit else events

    def spend_summary(self, owner: str) -> SpendSummary:
        """Completed and denied spends against one owner's vault."""
        summary = SpendSummary(owner=owner.lower())
        for event in self.read_events(owner=owner, limit=None):
            if event.event_type == EventType.SPEND_COMPLETED.value:
                summary.spends += 1
                summary.total_spent += event.amount or 0
            elif event.event_type == EventType.SPEND_DENIED.value:
                summary.denied += 1
        return summary
