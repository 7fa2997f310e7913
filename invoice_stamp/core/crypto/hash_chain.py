"""
Per-entity invoice hash chain.

Every issuing entity owns a sequence record ``(counter, last_digest)``. Each
stamped invoice takes the next counter (its Invoice Counter Value) and
embeds the digest of the entity's previous invoice (Previous Invoice Hash),
creating a tamper-evident chain where a gap, a duplicate counter, or a
rewritten predecessor is detectable by any verifier.

A position is taken with ``reserve()`` and written with ``commit()``. The
pair is indivisible with respect to other requests for the same entity:
``InMemoryChainLedger`` holds a per-entity lock for the whole span, while
``OptimisticChainLedger`` lets requests race and rejects stale commits with
``LedgerConflictError``.
"""

from __future__ import annotations

import hashlib
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass

from invoice_stamp.core.config import get_settings
from invoice_stamp.core.errors import LedgerConflictError
from invoice_stamp.core.logging import get_logger

logger = get_logger(__name__)

# Digest of the literal "0", the predecessor of an entity's first invoice.
PLACEHOLDER_DIGEST: str = hashlib.sha256(b"0").hexdigest()


@dataclass(frozen=True, slots=True)
class SequenceRecord:
    """Last committed chain position of one entity."""

    counter: int
    last_digest: str


@dataclass(frozen=True, slots=True)
class Reservation:
    """A chain position handed to one stamp request."""

    entity_id: str
    counter: int
    previous_digest: str


class ChainLedger(ABC):
    """Injectable store of per-entity chain positions."""

    def __init__(self, *, placeholder_digest: str | None = None) -> None:
        self._placeholder_digest = (
            placeholder_digest or get_settings().chain_placeholder_digest
        )

    @property
    def placeholder_digest(self) -> str:
        return self._placeholder_digest

    def _next_position(self, entity_id: str, record: SequenceRecord | None) -> Reservation:
        if record is None:
            return Reservation(
                entity_id=entity_id,
                counter=1,
                previous_digest=self._placeholder_digest,
            )
        return Reservation(
            entity_id=entity_id,
            counter=record.counter + 1,
            previous_digest=record.last_digest,
        )

    @abstractmethod
    def reserve(self, entity_id: str) -> AbstractContextManager[Reservation]:
        """Reserve the next chain position for ``entity_id``.

        Leaving the context without a successful ``commit()`` discards the
        reservation; nothing is written.
        """

    @abstractmethod
    def commit(self, reservation: Reservation, digest: str) -> SequenceRecord:
        """Record ``digest`` as the invoice occupying ``reservation``."""

    @abstractmethod
    def current(self, entity_id: str) -> SequenceRecord | None:
        """Return the last committed record for ``entity_id``, if any."""


class InMemoryChainLedger(ChainLedger):
    """Ledger serializing each entity behind its own lock.

    Requests for different entities never contend; requests for the same
    entity wait for the holder's reservation to commit or be discarded.
    """

    def __init__(self, *, placeholder_digest: str | None = None) -> None:
        super().__init__(placeholder_digest=placeholder_digest)
        self._records: dict[str, SequenceRecord] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._pending: dict[str, Reservation] = {}
        self._registry_lock = threading.Lock()

    def _entity_lock(self, entity_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(entity_id)
            if lock is None:
                lock = self._locks[entity_id] = threading.Lock()
            return lock

    @contextmanager
    def reserve(self, entity_id: str) -> Iterator[Reservation]:
        lock = self._entity_lock(entity_id)
        with lock:
            reservation = self._next_position(entity_id, self._records.get(entity_id))
            self._pending[entity_id] = reservation
            try:
                yield reservation
            finally:
                self._pending.pop(entity_id, None)

    def commit(self, reservation: Reservation, digest: str) -> SequenceRecord:
        if self._pending.get(reservation.entity_id) is not reservation:
            raise LedgerConflictError(
                f"Reservation {reservation.counter} for {reservation.entity_id} is not active",
                step="commit",
                field="counter",
            )
        record = SequenceRecord(counter=reservation.counter, last_digest=digest)
        with self._registry_lock:
            self._records[reservation.entity_id] = record
        del self._pending[reservation.entity_id]
        logger.debug(
            "chain_position_committed",
            entity_id=reservation.entity_id,
            counter=record.counter,
        )
        return record

    def current(self, entity_id: str) -> SequenceRecord | None:
        """Return the last committed record without waiting for a pending reservation."""
        with self._registry_lock:
            return self._records.get(entity_id)


class OptimisticChainLedger(ChainLedger):
    """Ledger using compare-and-swap on the entity's counter.

    Reservations read a snapshot without blocking. ``commit()`` succeeds only
    if no other commit for the entity happened since the snapshot, otherwise
    it raises ``LedgerConflictError`` and the caller must reserve again.
    """

    def __init__(self, *, placeholder_digest: str | None = None) -> None:
        super().__init__(placeholder_digest=placeholder_digest)
        self._records: dict[str, SequenceRecord] = {}
        self._lock = threading.Lock()

    @contextmanager
    def reserve(self, entity_id: str) -> Iterator[Reservation]:
        with self._lock:
            record = self._records.get(entity_id)
        yield self._next_position(entity_id, record)

    def commit(self, reservation: Reservation, digest: str) -> SequenceRecord:
        with self._lock:
            record = self._records.get(reservation.entity_id)
            committed = record.counter if record is not None else 0
            if committed != reservation.counter - 1:
                raise LedgerConflictError(
                    f"Position {reservation.counter} for {reservation.entity_id} "
                    f"was superseded (ledger is at {committed})",
                    step="commit",
                    field="counter",
                )
            new_record = SequenceRecord(counter=reservation.counter, last_digest=digest)
            self._records[reservation.entity_id] = new_record
        logger.debug(
            "chain_position_committed",
            entity_id=reservation.entity_id,
            counter=new_record.counter,
        )
        return new_record

    def current(self, entity_id: str) -> SequenceRecord | None:
        with self._lock:
            return self._records.get(entity_id)
