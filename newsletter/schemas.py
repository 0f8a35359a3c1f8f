"""
Pydantic schemas for the publish command and delivery status views
"""

from dataclasses import dataclass
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional


@dataclass(frozen=True)
class ActorContext:
    """Who is publishing, threaded explicitly through the command handler."""
    actor_id: str
    request_id: str = "none"


class PublishNewsletterForm(BaseModel):
    """
    Newsletter publish form.
    Every field is required and must not be blank.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(..., min_length=1, description="Issue title, used as the email subject")
    html_content: str = Field(..., min_length=1, description="HTML email body")
    text_content: str = Field(..., min_length=1, description="Plain text email body")
    idempotency_key: str = Field(..., min_length=1, max_length=50, description="Client supplied idempotency key")


class DeliveryTaskStatus(BaseModel):
    subscriber_email: str
    retry_count: int
    next_attempt_at: datetime
    in_flight: bool
    last_error: Optional[str] = None


class IssueDeliveryStatus(BaseModel):
    """
    Delivery progress of one issue.
    Completed and dropped tasks are deleted, so only outstanding ones are listed.
    """
    issue_id: int
    title: str
    published_at: datetime
    outstanding: int
    tasks: List[DeliveryTaskStatus]
