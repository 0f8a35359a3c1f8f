"""
Newsletter Publisher
Publish command handler: one issue plus one delivery task per confirmed subscriber, exactly once per key
"""

from typing import Optional
import structlog
from pydantic import ValidationError

from newsletter.errors import InvalidInput
from newsletter.schemas import ActorContext, PublishNewsletterForm
from newsletter.services.idempotency import IdempotencyGuard, Replay, request_fingerprint
from newsletter.store.base import SavedResponse, Store, utcnow

logger = structlog.get_logger(__name__)

PUBLISH_REDIRECT_LOCATION = "/admin/newsletters"
PUBLISH_SUCCESS_MESSAGE = "The newsletter issue has been accepted - emails will go out shortly."


def validate_publish_form(
    title: Optional[str],
    html_content: Optional[str],
    text_content: Optional[str],
    idempotency_key: Optional[str],
) -> PublishNewsletterForm:
    """
    Build the publish form from raw request fields.

    Raises:
        InvalidInput: a field is missing, blank, or the key is too long
    """
    try:
        return PublishNewsletterForm(
            title=title,
            html_content=html_content,
            text_content=text_content,
            idempotency_key=idempotency_key
        )
    except ValidationError as e:
        fields = sorted({str(error["loc"][0]) for error in e.errors() if error.get("loc")})
        raise InvalidInput(f"Invalid newsletter form: {', '.join(fields)}") from e


def build_publish_response() -> SavedResponse:
    """Redirect back to the newsletter form with a human-readable confirmation."""
    return SavedResponse(
        status_code=303,
        headers=(
            ("location", PUBLISH_REDIRECT_LOCATION),
            ("content-type", "text/plain; charset=utf-8"),
        ),
        body=PUBLISH_SUCCESS_MESSAGE.encode("utf-8")
    )


class NewsletterPublisher:
    """
    Executes the publish command.

    Validation happens before the store is touched. The idempotency
    reservation, the issue, its delivery tasks and the saved response are all
    written in a single store transaction.
    """

    def __init__(self, store: Store, guard: IdempotencyGuard):
        self.store = store
        self.guard = guard
        self.logger = logger.bind(service="publisher")

    def publish(self, form: PublishNewsletterForm, actor: ActorContext) -> SavedResponse:
        """
        Publish a newsletter issue.

        Args:
            form: Validated publish form
            actor: Publishing operator and request id

        Returns:
            The response to send, fresh or replayed

        Raises:
            RequestInProgress: a fresh pending reservation exists for this key
            StoreFailure: the transaction could not commit, nothing persisted
        """
        log = self.logger.bind(
            actor_id=actor.actor_id,
            request_id=actor.request_id,
            idempotency_key=form.idempotency_key
        )
        fingerprint = request_fingerprint(form.model_dump(exclude={"idempotency_key"}))

        with self.store.transaction() as tx:
            outcome = self.guard.begin(tx, actor.actor_id, form.idempotency_key, fingerprint)
            if isinstance(outcome, Replay):
                log.info("publish_replayed", status_code=outcome.response.status_code)
                return outcome.response

            now = utcnow()
            issue_id = tx.insert_issue(
                title=form.title,
                html_body=form.html_content,
                text_body=form.text_content,
                created_by=actor.actor_id,
                published_at=now
            )
            subscribers = tx.list_confirmed_subscriber_emails()
            enqueued = tx.enqueue_delivery_tasks(issue_id, subscribers, now)

            response = build_publish_response()
            self.guard.finish(tx, outcome.reservation, response, now)

        log.info("newsletter_published", issue_id=issue_id, delivery_tasks=enqueued)
        return response
