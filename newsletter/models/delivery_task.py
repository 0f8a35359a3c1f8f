"""
DeliveryTask Model
Transactional outbox of per-subscriber sends for a newsletter issue
"""

from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, UniqueConstraint, Index
from sqlalchemy.sql import func
from newsletter.database import Base


class DeliveryTask(Base):
    """
    One pending email for one subscriber of one issue.

    Written in the same transaction as the issue. The subscriber email is a
    snapshot taken at enqueue time. Rows are deleted by the delivery worker on
    success or when the task is dropped.
    """
    __tablename__ = "issue_delivery_queue"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Owning Issue
    issue_id = Column(Integer, ForeignKey("newsletter_issues.id"), nullable=False)

    # Recipient snapshot
    subscriber_email = Column(String(320), nullable=False)

    # Retry Logic
    retry_count = Column(Integer, default=0, nullable=False)
    next_attempt_at = Column(DateTime, nullable=False)
    last_error = Column(Text, nullable=True)

    # Claim lease
    claim_token = Column(String(36), nullable=True)
    claimed_until = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('issue_id', 'subscriber_email', name='uq_delivery_issue_email'),
        Index('ix_delivery_next_attempt_at', 'next_attempt_at'),
    )

    def __repr__(self):
        return f"<DeliveryTask(id={self.id}, issue_id={self.issue_id}, retries={self.retry_count})>"
