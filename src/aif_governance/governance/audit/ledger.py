"""Ledger - append-only, hash-chained governance event log.

Each event hashes ``ts | type | canonical_json(payload) | prev_hash`` with
SHA-256; the first event chains off the ``GENESIS`` sentinel. The ledger is
the source of truth for agent, decision and override state: stores read the
newest matching event rather than keeping their own copies.

Writes never raise. A failed append comes back as ``AppendResult(ok=False)``
so the caller decides whether the failure is fatal (state-bearing writes) or
only an operator alert (pure audit writes). Reads do raise, because a read
failure must never be mistaken for "no state".
"""

from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union
import hashlib
import json
import logging
import threading

from pydantic import BaseModel

from aif_governance.common.constants import LedgerConstants
from aif_governance.common.exceptions import (
    LedgerIntegrityError,
    LogConflictError,
    StorageError,
)
from aif_governance.governance.audit.storage import Storage
from aif_governance.governance.redact import AuditRedactor, Redactor
from aif_governance.governance.schemas import AppendResult, LedgerEvent, utc_now

logger = logging.getLogger(__name__)

Predicate = Callable[[Dict[str, Any]], bool]
EventTypes = Union[str, Iterable[str]]


def _type_name(event_type: Any) -> str:
    return event_type.value if isinstance(event_type, Enum) else str(event_type)


def _type_set(event_type: Optional[EventTypes]) -> Optional[Set[str]]:
    if event_type is None:
        return None
    if isinstance(event_type, str):
        return {_type_name(event_type)}
    return {_type_name(t) for t in event_type}


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_json(payload: Any) -> str:
    """Deterministic JSON: sorted keys, no whitespace."""
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_jsonable,
    )


def compute_hash(ts: str, event_type: str, payload: Dict[str, Any], prev_hash: str) -> str:
    """Hash of one ledger link, recomputable by anyone holding the log."""
    content = "|".join([ts, event_type, canonical_json(payload), prev_hash])
    hasher = hashlib.new(LedgerConstants.HASH_ALGORITHM)
    hasher.update(content.encode("utf-8"))
    return hasher.hexdigest()


def resolve_dotted(payload: Dict[str, Any], dotted_key: str) -> Any:
    node: Any = payload
    for part in dotted_key.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


class Ledger:
    """Hash-chained event log over a Storage stream.

    Appends are serialized per ledger instance by a lock around
    read-tail + append, and the storage rejects any append whose
    ``expected_last_id`` is stale, so concurrent writers (threads or other
    processes on the same storage) never chain off the same ``prev_hash``.
    """

    def __init__(
        self,
        storage: Storage,
        stream: str = "governance",
        redactor: Optional[Redactor] = None,
        clock: Callable[[], datetime] = utc_now,
        max_retries: int = LedgerConstants.MAX_APPEND_RETRIES,
    ):
        self.storage = storage
        self.stream = stream
        self.redactor = redactor or AuditRedactor()
        self.clock = clock
        self.max_retries = max_retries

        self._lock = threading.RLock()
        # Local replica of the log, extended incrementally from storage
        self._events: List[LedgerEvent] = []

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _idempotency_key(self, key: str) -> str:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return f"ledger/{self.stream}/idempotency/{digest}"

    @staticmethod
    def _decode(log_id: int, data: bytes) -> LedgerEvent:
        body = json.loads(data.decode("utf-8"))
        return LedgerEvent(
            seq=log_id,
            ts=body["ts"],
            type=body["type"],
            payload=body.get("payload") or {},
            prev_hash=body["prev_hash"],
            hash=body["hash"],
        )

    def _sync(self) -> None:
        """Pull entries appended since our last look. Caller holds the lock."""
        last_seen = self._events[-1].seq if self._events else 0
        entries = self.storage.range_log(self.stream, from_id=last_seen + 1)
        for log_id, data in entries:
            try:
                self._events.append(self._decode(log_id, data))
            except (ValueError, KeyError) as e:
                raise StorageError(
                    f"Malformed ledger entry {log_id} in {self.stream}: {e}",
                    details={"stream": self.stream, "seq": log_id},
                ) from e

    def _tail(self) -> Tuple[int, str]:
        if not self._events:
            return 0, LedgerConstants.GENESIS_HASH
        last = self._events[-1]
        return last.seq, last.hash

    def _event_by_seq(self, seq: int) -> Optional[LedgerEvent]:
        if 0 < seq <= len(self._events) and self._events[seq - 1].seq == seq:
            return self._events[seq - 1]
        for event in self._events:
            if event.seq == seq:
                return event
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(
        self,
        event_type: str,
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> AppendResult:
        """Redact, chain and persist one event.

        Args:
            event_type: Event type name
            payload: JSON-serializable event body
            idempotency_key: If the key was already used, the original event is
                returned and nothing is appended.

        Returns:
            AppendResult; ``ok`` is False when storage failed.
        """
        event_type = _type_name(event_type)

        try:
            clean = self.redactor.redact(json.loads(canonical_json(payload)))
        except (TypeError, ValueError) as e:
            logger.error(f"Ledger payload for {event_type} is not serializable: {e}")
            return AppendResult(ok=False, error=f"unserializable payload: {e}")

        with self._lock:
            try:
                if idempotency_key is not None:
                    recorded = self.storage.get(self._idempotency_key(idempotency_key))
                    if recorded is not None:
                        self._sync()
                        original = self._event_by_seq(int(recorded))
                        if original is not None:
                            logger.debug(f"Idempotent replay of {event_type} ({idempotency_key})")
                            return AppendResult(ok=True, event=original, duplicate=True)

                for attempt in range(1, self.max_retries + 1):
                    self._sync()
                    last_id, prev_hash = self._tail()
                    ts = self.clock().isoformat()
                    event_hash = compute_hash(ts, event_type, clean, prev_hash)
                    body = {
                        "seq": last_id + 1,
                        "ts": ts,
                        "type": event_type,
                        "payload": clean,
                        "prev_hash": prev_hash,
                        "hash": event_hash,
                    }
                    try:
                        new_id = self.storage.append_to_log(
                            self.stream,
                            canonical_json(body).encode("utf-8"),
                            expected_last_id=last_id,
                        )
                    except LogConflictError:
                        logger.info(
                            f"Ledger tail moved during append of {event_type} "
                            f"(attempt {attempt}/{self.max_retries}); retrying"
                        )
                        continue

                    event = LedgerEvent(
                        seq=new_id,
                        ts=ts,
                        type=event_type,
                        payload=clean,
                        prev_hash=prev_hash,
                        hash=event_hash,
                    )
                    self._events.append(event)

                    if idempotency_key is not None:
                        try:
                            self.storage.set(self._idempotency_key(idempotency_key), str(new_id))
                        except StorageError as e:
                            logger.warning(f"Could not record idempotency key for seq {new_id}: {e}")

                    return AppendResult(ok=True, event=event)

                logger.error(f"Ledger append of {event_type} gave up after {self.max_retries} conflicts")
                return AppendResult(ok=False, error="append conflict retries exhausted")

            except StorageError as e:
                logger.error(f"Ledger append of {event_type} failed: {e}")
                return AppendResult(ok=False, error=str(e))

    def record(
        self,
        event_type: str,
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> LedgerEvent:
        """Append a state-bearing event; failure is fatal to the caller.

        Raises:
            StorageError: if the event could not be persisted.
        """
        result = self.append(event_type, payload, idempotency_key=idempotency_key)
        if not result.ok:
            raise StorageError(
                f"Failed to record {_type_name(event_type)}: {result.error}",
                details={"event_type": _type_name(event_type)},
            )
        return result.event

    def audit(self, event_type: str, payload: Dict[str, Any]) -> AppendResult:
        """Append a pure audit event; failure only raises an operator alert."""
        result = self.append(event_type, payload)
        if not result.ok:
            logger.error(
                f"operator_alert: audit event {_type_name(event_type)} not recorded: {result.error}"
            )
        return result

    def put_snapshot(self, key: str, data: str) -> bool:
        """Write a keyed projection of state that is already in the log.

        The event is committed by the time this runs, so a failed write only
        leaves a listing stale; it is reported as an operator alert and never
        raised to the caller.
        """
        try:
            self.storage.set(key, data)
            return True
        except StorageError as e:
            logger.error(f"operator_alert: snapshot {key} not written: {e}")
            return False

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def latest_event(
        self,
        event_type: Optional[EventTypes] = None,
        predicate: Optional[Predicate] = None,
    ) -> Optional[LedgerEvent]:
        """Newest event of the given type(s) whose payload satisfies the predicate.

        Raises:
            StorageError: if the log cannot be read.
        """
        found = self.events(event_type, predicate, limit=1, newest_first=True)
        return found[0] if found else None

    def latest_matching(self, event_type: Optional[EventTypes] = None, predicate: Optional[Predicate] = None) -> Optional[Dict[str, Any]]:
        """Payload of the newest matching event, or None."""
        event = self.latest_event(event_type, predicate)
        return dict(event.payload) if event is not None else None

    def latest_by_field(self, event_type: EventTypes, dotted_key: str, value: Any) -> Optional[Dict[str, Any]]:
        """Payload of the newest event whose ``dotted_key`` equals ``value``."""
        return self.latest_matching(
            event_type, lambda payload: resolve_dotted(payload, dotted_key) == value
        )

    def events(
        self,
        event_type: Optional[EventTypes] = None,
        predicate: Optional[Predicate] = None,
        limit: Optional[int] = None,
        newest_first: bool = True,
    ) -> List[LedgerEvent]:
        """Events filtered by type(s) and predicate."""
        types = _type_set(event_type)
        with self._lock:
            self._sync()
            source = reversed(self._events) if newest_first else iter(self._events)
            out: List[LedgerEvent] = []
            for event in source:
                if types is not None and event.type not in types:
                    continue
                if predicate is not None and not predicate(event.payload):
                    continue
                out.append(event)
                if limit is not None and len(out) >= limit:
                    break
            return out


    def head(self) -> Tuple[int, str]:
        """(seq, hash) of the newest event, (0, GENESIS) when empty."""
        with self._lock:
            self._sync()
            return self._tail()

    def __len__(self) -> int:
        return self.head()[0]

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def verify_integrity(self) -> bool:
        """Recompute the whole chain straight from storage.

        Returns:
            True if every link validates

        Raises:
            LedgerIntegrityError: at the first broken link
            StorageError: if the log cannot be read
        """
        previous_hash = LedgerConstants.GENESIS_HASH
        expected_seq = 1

        for log_id, data in self.storage.range_log(self.stream, from_id=1):
            try:
                body = json.loads(data.decode("utf-8"))
                ts, event_type, prev_hash, stored_hash = (
                    body["ts"], body["type"], body["prev_hash"], body["hash"]
                )
                payload = body.get("payload") or {}
            except (ValueError, KeyError) as e:
                raise LedgerIntegrityError(
                    f"Malformed ledger entry at seq {log_id}: {e}",
                    details={"seq": log_id},
                ) from e

            if log_id != expected_seq or body.get("seq", log_id) != log_id:
                raise LedgerIntegrityError(
                    f"Sequence gap at seq {log_id}, expected {expected_seq}",
                    details={"seq": log_id, "expected": expected_seq},
                )

            if prev_hash != previous_hash:
                raise LedgerIntegrityError(
                    f"Hash chain broken at seq {log_id}. "
                    f"Expected prev_hash={previous_hash}, got {prev_hash}",
                    details={"seq": log_id},
                )

            if compute_hash(ts, event_type, payload, prev_hash) != stored_hash:
                raise LedgerIntegrityError(
                    f"Entry hash mismatch at seq {log_id}. Entry may have been tampered with.",
                    details={"seq": log_id},
                )

            previous_hash = stored_hash
            expected_seq += 1

        return True
