"""Webhook Verifier & Normalizer.

`WebhookProcessor.process` is transport-free: verify, normalize, dedupe and
apply. The HTTP handler only turns the outcome or error into a status code.
"""

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError

from settlepay.common.config import settings
from settlepay.common.db import utcnow
from settlepay.common.errors import PayloadInvalid, SignatureInvalid
from settlepay.common.logging import event_id_ctx, logger
from settlepay.common.metrics import webhook_events_total
from settlepay.services.gateways.registry import GatewayRegistry
from settlepay.services.ledger.models import WebhookInbox
from settlepay.services.ledger.service import LedgerWriter
from settlepay.services.webhooks.normalizers import NORMALIZERS


@dataclass
class WebhookOutcome:
    provider: str
    outcome: str
    event_id: str | None = None
    changed: bool = False


class WebhookProcessor:
    def __init__(
        self,
        session_factory,
        registry: GatewayRegistry,
        ledger: LedgerWriter,
        secrets: Mapping[str, str],
        service_name: str = "settlepay",
    ) -> None:
        self.session_factory = session_factory
        self.registry = registry
        self.ledger = ledger
        self.secrets = dict(secrets)
        self.service_name = service_name

    def _count(self, provider: str, outcome: str) -> None:
        webhook_events_total.labels(service=self.service_name, provider=provider, outcome=outcome).inc()

    def process(self, provider: str, raw_body: bytes, headers: Mapping[str, str]) -> WebhookOutcome:
        """Handle one delivery.

        Raises `SignatureInvalid` or `PayloadInvalid` before touching the
        ledger. Every other result, including a rejected transition out of a
        terminal state, is an acknowledged `WebhookOutcome`.
        """

        headers = {key.lower(): value for key, value in headers.items()}
        adapter = self.registry.get(provider)
        secret = self.secrets.get(provider)
        if not secret or not adapter.verify_webhook(raw_body, headers, secret):
            self._count(provider, "rejected")
            logger.warning("webhook_signature_invalid provider=%s", provider)
            raise SignatureInvalid(f"{provider} webhook signature did not verify")

        try:
            payload = json.loads(raw_body)
        except ValueError as exc:
            self._count(provider, "invalid")
            raise PayloadInvalid(f"{provider} webhook body is not JSON") from exc
        if not isinstance(payload, dict):
            self._count(provider, "invalid")
            raise PayloadInvalid(f"{provider} webhook body is not an object")

        fingerprint = hashlib.sha256(raw_body).hexdigest()
        try:
            event = NORMALIZERS[provider](adapter, payload, headers, fingerprint)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            # Wrong field types surface as AttributeError or TypeError.
            self._count(provider, "invalid")
            raise PayloadInvalid(f"{provider} webhook payload is malformed: {exc!r}") from exc
        if event is None:
            self._count(provider, "ignored")
            logger.info("webhook_ignored provider=%s fingerprint=%s", provider, fingerprint)
            return WebhookOutcome(provider=provider, outcome="ignored")

        event_id_ctx.set(event.provider_event_id)
        with self.session_factory() as db:
            if db.get(WebhookInbox, (provider, event.provider_event_id)) is not None:
                self._count(provider, "duplicate")
                logger.info("webhook_duplicate provider=%s event_id=%s", provider, event.provider_event_id)
                return WebhookOutcome(provider=provider, outcome="duplicate", event_id=event.provider_event_id)
            try:
                result = self.ledger.apply_event(db, event)
                db.add(WebhookInbox(provider=provider, event_id=event.provider_event_id))
                db.commit()
            except IntegrityError:
                # A concurrent delivery of the same event committed first.
                db.rollback()
                self._count(provider, "duplicate")
                logger.info("webhook_duplicate_race provider=%s event_id=%s", provider, event.provider_event_id)
                return WebhookOutcome(provider=provider, outcome="duplicate", event_id=event.provider_event_id)

        changed = result == "applied"
        outcome = "applied" if result in ("applied", "noop") else result
        self._count(provider, outcome)
        logger.info(
            "webhook_processed provider=%s event_id=%s status=%s outcome=%s",
            provider,
            event.provider_event_id,
            event.status.value,
            result,
        )
        return WebhookOutcome(provider=provider, outcome=outcome, event_id=event.provider_event_id, changed=changed)

    def purge_inbox(self, older_than_days: int | None = None) -> int:
        """Drop dedup entries past the retention window; returns rows removed."""

        days = settings.webhook_retention_days if older_than_days is None else older_than_days
        cutoff = utcnow() - timedelta(days=days)
        with self.session_factory() as db:
            result = db.execute(delete(WebhookInbox).where(WebhookInbox.received_at < cutoff))
            db.commit()
        logger.info("webhook_inbox_purged removed=%s older_than_days=%s", result.rowcount, days)
        return result.rowcount
