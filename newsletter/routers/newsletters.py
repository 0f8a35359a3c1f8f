"""
Newsletter Router
Publish endpoint and delivery progress for published issues
"""

from fastapi import APIRouter, Depends, Form, HTTPException, Request
from fastapi.responses import Response
from typing import Optional
import structlog

from newsletter.auth import get_actor_context
from newsletter.config import settings
from newsletter.schemas import ActorContext, DeliveryTaskStatus, IssueDeliveryStatus
from newsletter.services.idempotency import IdempotencyGuard
from newsletter.services.publisher import NewsletterPublisher, validate_publish_form
from newsletter.store.base import SavedResponse, Store, utcnow

logger = structlog.get_logger()

router = APIRouter(prefix="/admin/newsletters", tags=["newsletters"])


def get_store(request: Request) -> Store:
    """Dependency returning the store built at startup."""
    store = request.app.state.store
    if store is None:
        raise HTTPException(status_code=503, detail="Store not configured")
    return store


def get_publisher(store: Store = Depends(get_store)) -> NewsletterPublisher:
    return NewsletterPublisher(
        store=store,
        guard=IdempotencyGuard(pending_lease_seconds=settings.idempotency_pending_lease_seconds)
    )


def to_http_response(saved: SavedResponse) -> Response:
    """Rebuild the exact HTTP response from its saved form, repeated headers included."""
    response = Response(content=saved.body, status_code=saved.status_code)
    for name, value in saved.headers:
        response.headers.append(name, value)
    return response


@router.post("")
def publish_newsletter(
    title: Optional[str] = Form(None),
    html_content: Optional[str] = Form(None),
    text_content: Optional[str] = Form(None),
    idempotency_key: Optional[str] = Form(None),
    actor: ActorContext = Depends(get_actor_context),
    publisher: NewsletterPublisher = Depends(get_publisher),
):
    """
    Publish a newsletter issue to every confirmed subscriber.

    Emails are not sent here: one delivery task per subscriber is queued and
    the delivery worker sends them. Repeated submissions with the same
    idempotency key get the first submission's response back.

    Returns:
        303 redirect to the newsletter form (fresh or replayed)

    Raises:
        400: missing or blank field (nothing is reserved)
        409: the same key is still being processed
        500: the store could not commit (nothing is persisted)
    """
    form = validate_publish_form(title, html_content, text_content, idempotency_key)
    saved = publisher.publish(form, actor)
    return to_http_response(saved)


@router.get("/{issue_id}/deliveries", response_model=IssueDeliveryStatus)
def get_issue_deliveries(
    issue_id: int,
    actor: ActorContext = Depends(get_actor_context),
    store: Store = Depends(get_store),
):
    """
    Outstanding deliveries of an issue.

    Delivered and dropped tasks are removed from the queue, so an issue whose
    emails all went out reports zero outstanding tasks.

    Raises:
        404: Issue not found
    """
    with store.transaction() as tx:
        issue = tx.get_issue(issue_id)
        if issue is None:
            raise HTTPException(status_code=404, detail="Issue not found")
        tasks = tx.list_delivery_tasks(issue_id)

    now = utcnow()
    task_list = [
        DeliveryTaskStatus(
            subscriber_email=task.subscriber_email,
            retry_count=task.retry_count,
            next_attempt_at=task.next_attempt_at,
            in_flight=task.claimed_until is not None and task.claimed_until >= now,
            last_error=task.last_error
        )
        for task in tasks
    ]

    logger.info("issue_deliveries_listed", issue_id=issue_id, outstanding=len(task_list), actor_id=actor.actor_id)

    return IssueDeliveryStatus(
        issue_id=issue.id,
        title=issue.title,
        published_at=issue.published_at,
        outstanding=len(task_list),
        tasks=task_list
    )
