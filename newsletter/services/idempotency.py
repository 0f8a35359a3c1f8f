"""
Idempotency Guard
Resolves an (actor, idempotency key) pair to a single recorded HTTP response
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union
import hashlib
import json
import structlog

from newsletter.errors import RequestInProgress, StoreFailure
from newsletter.store.base import IdempotencyEntry, SavedResponse, StoreTransaction, utcnow

logger = structlog.get_logger(__name__)

MAX_IDEMPOTENCY_KEY_LENGTH = 50


def request_fingerprint(payload: dict) -> str:
    """
    Hash a command payload.

    Only used to flag reuse of a key with a different payload; the key alone
    decides idempotence.
    """
    # Create consistent JSON representation for hashing
    payload_json = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(payload_json.encode()).hexdigest()


@dataclass(frozen=True)
class Reservation:
    """Proof that the current transaction owns the pending record."""
    actor_id: str
    idempotency_key: str


@dataclass(frozen=True)
class Replay:
    response: SavedResponse


@dataclass(frozen=True)
class Proceed:
    reservation: Reservation


class IdempotencyGuard:
    """
    Store-backed idempotency guard.

    The pending record is inserted inside the caller's transaction, so a
    concurrent duplicate waits on the store's row lock until the first
    execution commits (and then replays its response) or rolls back (and then
    takes the reservation itself).

    A pending record can only be observed by another transaction if its
    writer committed it without finishing. Records older than the pending
    lease are taken over; fresher ones make `begin` raise RequestInProgress.
    A duplicate that loses the takeover race waits for the winner and
    replays its response.
    """

    def __init__(self, pending_lease_seconds: int = 60):
        self.pending_lease = timedelta(seconds=pending_lease_seconds)
        self.logger = logger.bind(service="idempotency")

    def begin(
        self,
        tx: StoreTransaction,
        actor_id: str,
        idempotency_key: str,
        fingerprint: str,
        now: Optional[datetime] = None,
    ) -> Union[Replay, Proceed]:
        now = now or utcnow()
        log = self.logger.bind(actor_id=actor_id, idempotency_key=idempotency_key)
        reservation = Reservation(actor_id=actor_id, idempotency_key=idempotency_key)

        if tx.try_insert_idempotency_record(actor_id, idempotency_key, fingerprint, now):
            log.info("idempotency_key_reserved")
            return Proceed(reservation)

        record = tx.get_idempotency_record(actor_id, idempotency_key)
        if record is None:
            # The conflicting row vanished; records are never deleted
            log.error("idempotency_record_missing_after_conflict")
            raise StoreFailure(f"idempotency record {idempotency_key!r} missing after conflict")

        if record.is_completed:
            return self._replay(record, fingerprint, log)

        stale_before = now - self.pending_lease
        if tx.take_over_idempotency_record(actor_id, idempotency_key, fingerprint, stale_before, now):
            log.warning("idempotency_stale_reservation_taken_over", created_at=str(record.created_at))
            return Proceed(reservation)

        # The takeover waits behind a concurrent one, which may have completed the record
        current = tx.get_idempotency_record(actor_id, idempotency_key)
        if current is not None and current.is_completed:
            return self._replay(current, fingerprint, log)

        log.info("idempotency_request_in_progress", created_at=str(record.created_at))
        raise RequestInProgress(
            f"A request with idempotency key {idempotency_key!r} is still being processed"
        )

    def _replay(self, record: IdempotencyEntry, fingerprint: str, log) -> Replay:
        if record.request_fingerprint and record.request_fingerprint != fingerprint:
            log.warning("idempotency_key_reused_with_different_payload")
        log.info("idempotency_replay", status_code=record.response.status_code)
        return Replay(record.response)

    def finish(
        self,
        tx: StoreTransaction,
        reservation: Reservation,
        response: SavedResponse,
        now: Optional[datetime] = None,
    ) -> None:
        """Save the response and complete the record. Committed by the caller's transaction."""
        tx.complete_idempotency_record(
            reservation.actor_id,
            reservation.idempotency_key,
            response,
            now or utcnow()
        )
        self.logger.info(
            "idempotency_response_saved",
            actor_id=reservation.actor_id,
            idempotency_key=reservation.idempotency_key,
            status_code=response.status_code
        )
