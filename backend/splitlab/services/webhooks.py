"""Webhook dispatch for organization-scoped events.

Payloads are signed with HMAC-SHA256 of the raw body using the webhook's
secret (``X-SplitLab-Signature`` header). Delivery is fire-and-forget:
failures are logged and never reach the caller.
"""
import hashlib
import hmac
import json
from concurrent.futures import Executor
from typing import Any, Dict, Optional

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from splitlab.models.webhook import Webhook
from splitlab.services.experiments import coerce_uuid
from splitlab.timeutils import isoformat, utcnow

logger = structlog.get_logger()

WINNER_CHANGED_EVENT = "experiment.winner_changed"
SIGNATURE_HEADER = "X-SplitLab-Signature"
USER_AGENT = "SplitLab-Webhook/1.0"


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class WebhookDispatcher:
    """Looks up active webhooks for an organization and delivers signed payloads."""

    def __init__(
        self,
        db: Session,
        timeout: float = 5.0,
        executor: Optional[Executor] = None,
        transport: Optional[httpx.BaseTransport] = None,
        clock=utcnow,
    ):
        """
        Args:
            db: Database session used to look up webhooks
            timeout: Per-delivery HTTP timeout in seconds
            executor: When given, deliveries run there instead of inline
            transport: Optional httpx transport (tests use MockTransport)
            clock: Source of the payload timestamp
        """
        self.db = db
        self.timeout = timeout
        self.executor = executor
        self.transport = transport
        self.clock = clock

    def emit(self, event: str, data: Dict[str, Any], organization_id) -> int:
        """
        Send ``event`` to every active webhook of the organization subscribed to it.

        Returns:
            Number of deliveries scheduled
        """
        org_id = coerce_uuid(organization_id, "organizationId")
        if org_id is None:
            return 0

        webhooks = self.db.execute(
            select(Webhook).where(Webhook.organization_id == org_id, Webhook.status == "active")
        ).scalars().all()
        targets = [(w.target_url, w.secret) for w in webhooks if event in (w.events or [])]
        if not targets:
            return 0

        payload = {
            "event": event,
            "timestamp": isoformat(self.clock()),
            "organizationId": str(org_id),
            "data": data,
        }
        body = json.dumps(payload, default=str).encode("utf-8")

        for target_url, secret in targets:
            if self.executor is not None:
                self.executor.submit(self.deliver, target_url, secret, body)
            else:
                self.deliver(target_url, secret, body)

        logger.info("webhook_emitted", event_name=event, organization_id=str(org_id), targets=len(targets))
        return len(targets)

    def deliver(self, target_url: str, secret: str, body: bytes) -> bool:
        """POST one signed payload. Returns True on a 2xx response."""
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(secret, body),
            "User-Agent": USER_AGENT,
        }
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(target_url, content=body, headers=headers)
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning(
                "webhook_delivery_failed",
                target_url=target_url,
                error=str(e),
                error_type=type(e).__name__
            )
            return False
