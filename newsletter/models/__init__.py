"""
Database Models
"""

from newsletter.models.subscription import Subscription
from newsletter.models.newsletter_issue import NewsletterIssue
from newsletter.models.delivery_task import DeliveryTask
from newsletter.models.idempotency_record import IdempotencyRecord

__all__ = [
    "Subscription",
    "NewsletterIssue",
    "DeliveryTask",
    "IdempotencyRecord",
]
