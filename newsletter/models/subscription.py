"""
Subscription Model
Subscriber list owned by the signup flow; read-only for newsletter delivery
"""

from sqlalchemy import Column, Integer, String, DateTime, Index
from sqlalchemy.sql import func
from newsletter.database import Base


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(320), unique=True, nullable=False)
    name = Column(String(255), nullable=False)

    status = Column(String(50), nullable=False, default="pending_confirmation")
    # 'pending_confirmation', 'confirmed'

    subscribed_at = Column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('ix_subscriptions_status', 'status'),
    )

    def __repr__(self):
        return f"<Subscription(id={self.id}, email='{self.email}', status='{self.status}')>"
