"""
Actor Context
Authentication happens upstream; this service only reads the authenticated actor id
"""

from fastapi import Request

from newsletter.config import settings
from newsletter.errors import Unauthenticated
from newsletter.middleware.correlation_id import get_correlation_id
from newsletter.schemas import ActorContext


def get_actor_context(request: Request) -> ActorContext:
    """
    Dependency resolving the publishing actor.

    Reads the actor id set by the upstream authenticator. Deployments with a
    different session mechanism override this dependency.

    Raises:
        Unauthenticated: no actor id on the request
    """
    actor_id = (request.headers.get(settings.actor_header) or "").strip()
    if not actor_id:
        raise Unauthenticated("Authentication required")
    return ActorContext(actor_id=actor_id, request_id=get_correlation_id())
