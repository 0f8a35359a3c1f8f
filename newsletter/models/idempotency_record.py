"""
IdempotencyRecord Model
Stores the response of every publish command keyed by (actor, idempotency key)
"""

from sqlalchemy import Column, Integer, String, DateTime, LargeBinary, JSON, UniqueConstraint, Index
from newsletter.database import Base


class IdempotencyRecord(Base):
    """
    Idempotency reservation and cached response for a publish command.

    A row is inserted as 'pending' inside the command transaction and flipped
    to 'completed' (with the saved response) in that same transaction.
    Rows are never deleted.
    """
    __tablename__ = "idempotency_records"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Scope
    actor_id = Column(String(255), nullable=False)
    idempotency_key = Column(String(50), nullable=False)

    # Reservation State
    state = Column(String(20), nullable=False, default="pending")
    # 'pending', 'completed'

    request_fingerprint = Column(String(64), nullable=True)
    # sha256 of the submitted payload, used to flag key reuse with a different payload

    # Cached Response
    response_status_code = Column(Integer, nullable=True)
    response_headers = Column(JSON, nullable=True)
    # List of [name, value] pairs, order preserved
    response_body = Column(LargeBinary, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint('actor_id', 'idempotency_key', name='uq_idempotency_actor_key'),
        Index('ix_idempotency_state_created_at', 'state', 'created_at'),
    )

    def __repr__(self):
        return f"<IdempotencyRecord(id={self.id}, actor='{self.actor_id}', key='{self.idempotency_key}', state='{self.state}')>"
