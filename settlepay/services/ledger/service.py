"""Transaction Ledger Writer.

The only code path that mutates `Transaction`/`Payout` rows. Every status
change goes through a compare-and-set on `(id, status, state_version)` and
writes the timeline, purchase and outbox rows in the caller's transaction.
Callers own the session and commit.
"""

import asyncio
from uuid import uuid4

from sqlalchemy import or_, select, update

from settlepay.common.db import utcnow
from settlepay.common.errors import InvalidStateTransition
from settlepay.common.events import NOTIFY_EVENTS, EventEnvelope, KafkaBus, SettlementEvent
from settlepay.common.logging import logger, trace_id_ctx
from settlepay.common.metrics import (
    ledger_anomalies_total,
    ledger_transitions_total,
    purchases_created_total,
    subject_terminal_total,
)
from settlepay.common.outbox import (
    claim_outbox_batch,
    mark_outbox_sent,
    requeue_outbox_event,
    update_outbox_backlog_metrics,
)
from settlepay.common.state_machine import TERMINAL_STATUSES, CanonicalStatus, SubjectType, plan_transition
from settlepay.services.ledger.models import (
    GatewayAttempt,
    OutboxEvent,
    Payout,
    Purchase,
    SettlementEventLog,
    StatusTimeline,
    Transaction,
)


SUBJECT_MODELS = {SubjectType.PAYMENT: Transaction, SubjectType.PAYOUT: Payout}


def subject_type_of(subject) -> SubjectType:
    return SubjectType.PAYMENT if isinstance(subject, Transaction) else SubjectType.PAYOUT


class LedgerWriter:
    """Applies canonical status changes under optimistic concurrency."""

    def __init__(self, service_name: str = "settlepay", max_cas_attempts: int = 5) -> None:
        self.service_name = service_name
        self.max_cas_attempts = max_cas_attempts

    def create_transaction(self, db, **fields) -> Transaction:
        """Insert a payment row in PENDING. Flushes so the unique key is checked."""

        transaction = Transaction(status=CanonicalStatus.PENDING.value, state_version=0, **fields)
        db.add(transaction)
        db.flush()
        self._add_timeline(db, transaction, None, CanonicalStatus.PENDING.value, "payment_created", None)
        return transaction

    def create_payout(self, db, **fields) -> Payout:
        payout = Payout(status=CanonicalStatus.PENDING.value, state_version=0, **fields)
        db.add(payout)
        db.flush()
        self._add_timeline(db, payout, None, CanonicalStatus.PENDING.value, "payout_created", None)
        return payout

    def get_subject(self, db, subject_type: SubjectType, subject_id: str):
        return db.get(SUBJECT_MODELS[subject_type], subject_id)

    def find_subject(
        self,
        db,
        subject_type: SubjectType,
        idempotency_key: str | None = None,
        gateway_id: str | None = None,
    ):
        """Locate a subject by idempotency key, falling back to the gateway-side id."""

        model = SUBJECT_MODELS[subject_type]
        if idempotency_key:
            subject = db.execute(
                select(model).where(model.idempotency_key == idempotency_key)
            ).scalar_one_or_none()
            if subject is not None:
                return subject
        if gateway_id:
            return db.execute(select(model).where(model.gateway_id == gateway_id)).scalar_one_or_none()
        return None

    def record_attempt(
        self,
        db,
        subject,
        gateway: str,
        attempt_number: int,
        outcome: str,
        latency_ms: int = 0,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> None:
        db.add(
            GatewayAttempt(
                subject_type=subject_type_of(subject).value,
                subject_id=subject.id,
                gateway=gateway,
                attempt_number=attempt_number,
                outcome=outcome,
                latency_ms=latency_ms,
                error_code=error_code,
                error_message=error_message,
            )
        )

    def _compare_and_set(self, db, subject, expected_status: str, values: dict) -> bool:
        model = type(subject)
        current_version = subject.state_version
        changes = {getattr(model, name): value for name, value in values.items()}
        changes[model.state_version] = current_version + 1
        changes[model.updated_at] = utcnow()
        result = db.execute(
            update(model)
            .where(
                model.id == subject.id,
                model.status == expected_status,
                model.state_version == current_version,
            )
            .values(changes)
        )
        if result.rowcount != 1:
            return False
        for name, value in values.items():
            setattr(subject, name, value)
        subject.state_version = current_version + 1
        return True

    def _reload(self, db, subject):
        model = type(subject)
        return db.execute(
            select(model).where(model.id == subject.id).execution_options(populate_existing=True)
        ).scalar_one()

    def apply_status(
        self,
        db,
        subject,
        target: CanonicalStatus,
        reason: str,
        event_id: str | None = None,
        failure_code: str | None = None,
        failure_reason: str | None = None,
    ) -> bool:
        """Move `subject` to `target` if the lattice allows it.

        Returns False for stale or repeated updates. Raises
        `InvalidStateTransition` (after logging the anomaly) when a terminal
        subject is asked to move to a different terminal state.
        """

        target = CanonicalStatus(target)
        subject_type = subject_type_of(subject)
        for _ in range(self.max_cas_attempts):
            current = subject.status
            try:
                should_apply = plan_transition(current, target)
            except InvalidStateTransition:
                ledger_anomalies_total.labels(service=self.service_name, subject_type=subject_type.value).inc()
                logger.warning(
                    "ledger_anomaly subject_type=%s subject_id=%s current=%s target=%s event_id=%s",
                    subject_type.value,
                    subject.id,
                    current,
                    target.value,
                    event_id,
                )
                raise
            if not should_apply:
                logger.info(
                    "transition_noop subject_type=%s subject_id=%s current=%s target=%s",
                    subject_type.value,
                    subject.id,
                    current,
                    target.value,
                )
                return False

            values: dict = {"status": target.value}
            if target == CanonicalStatus.FAILED:
                values["failure_code"] = failure_code or subject.failure_code or "PROVIDER_FAILED"
                values["failure_reason"] = failure_reason or subject.failure_reason
            if isinstance(subject, Payout) and target == CanonicalStatus.COMPLETED:
                values["completed_at"] = utcnow()

            if self._compare_and_set(db, subject, current, values):
                self._after_transition(db, subject, current, target, reason, event_id)
                return True
            logger.info(
                "cas_conflict subject_type=%s subject_id=%s expected_version=%s",
                subject_type.value,
                subject.id,
                subject.state_version,
            )
            subject = self._reload(db, subject)
        raise RuntimeError(
            f"optimistic concurrency conflict for {subject_type.value} {subject.id} "
            f"after {self.max_cas_attempts} attempts"
        )

    def assign_gateway(
        self,
        db,
        subject,
        gateway: str,
        gateway_id: str,
        status: CanonicalStatus,
        reason: str,
        meta: dict | None = None,
        estimated_arrival: str | None = None,
    ) -> None:
        """Record the adapter's create response, then replay early webhooks."""

        for _ in range(self.max_cas_attempts):
            merged = {**(subject.meta or {}), **(meta or {})}
            merged.pop("ambiguous_gateway", None)
            merged.pop("submitting_gateway", None)
            values: dict = {"gateway": gateway, "gateway_id": gateway_id, "meta": merged}
            if isinstance(subject, Payout) and estimated_arrival:
                values["estimated_arrival"] = estimated_arrival
            if self._compare_and_set(db, subject, subject.status, values):
                break
            subject = self._reload(db, subject)
        else:
            raise RuntimeError(f"optimistic concurrency conflict assigning gateway to {subject.id}")

        try:
            self.apply_status(db, subject, status, reason=reason)
        except InvalidStateTransition:
            # The subject settled first (webhook or local cancel); the create response is stale.
            pass
        self._replay_unmatched(db, subject)

    def annotate(self, db, subject, **meta) -> None:
        """Merge `meta` into the subject's metadata; status is untouched."""

        for _ in range(self.max_cas_attempts):
            if self._compare_and_set(db, subject, subject.status, {"meta": {**(subject.meta or {}), **meta}}):
                return
            subject = self._reload(db, subject)
        raise RuntimeError(f"optimistic concurrency conflict annotating {subject.id}")

    def mark_submitting(self, db, subject, gateway: str) -> None:
        """Record the candidate about to receive the create, before the request leaves.

        A worker that dies mid-create leaves this mark behind, so a later
        refresh, cancel or retry knows which provider to look the reference up at.
        """

        self.annotate(db, subject, submitting_gateway=gateway)

    def mark_ambiguous(self, db, subject, gateway: str) -> None:
        """Remember which gateway may hold an unconfirmed create; status stays PENDING."""

        for _ in range(self.max_cas_attempts):
            meta = {**(subject.meta or {}), "ambiguous_gateway": gateway}
            meta.pop("submitting_gateway", None)
            values = {"gateway": gateway, "meta": meta}
            if self._compare_and_set(db, subject, subject.status, values):
                logger.warning(
                    "ambiguous_create subject_type=%s subject_id=%s gateway=%s",
                    subject_type_of(subject).value,
                    subject.id,
                    gateway,
                )
                return
            subject = self._reload(db, subject)
        raise RuntimeError(f"optimistic concurrency conflict marking {subject.id} ambiguous")

    def mark_failed(self, db, subject, failure_code: str, failure_reason: str) -> bool:
        return self.apply_status(
            db,
            subject,
            CanonicalStatus.FAILED,
            reason=f"create_failed:{failure_code}",
            failure_code=failure_code,
            failure_reason=failure_reason,
        )

    def apply_event(self, db, event: SettlementEvent) -> str:
        """Apply one verified settlement event and append it to the event log.

        Returns `applied`, `noop`, `unmatched` or `anomaly`.
        """

        subject = self.find_subject(db, event.subject_type, event.idempotency_key, event.gateway_id)
        if subject is None:
            outcome = "unmatched"
            logger.info(
                "settlement_event_unmatched provider=%s event_id=%s gateway_id=%s",
                event.provider,
                event.provider_event_id,
                event.gateway_id,
            )
        else:
            try:
                changed = self.apply_status(
                    db,
                    subject,
                    event.status,
                    reason=f"webhook:{event.provider}",
                    event_id=event.provider_event_id,
                    failure_code="PROVIDER_FAILED" if event.status == CanonicalStatus.FAILED else None,
                    failure_reason=event.failure_reason,
                )
                outcome = "applied" if changed else "noop"
            except InvalidStateTransition:
                outcome = "anomaly"
        db.add(
            SettlementEventLog(
                provider=event.provider,
                provider_event_id=event.provider_event_id,
                subject_type=event.subject_type.value,
                idempotency_key=event.idempotency_key,
                gateway_id=event.gateway_id,
                status=event.status.value,
                failure_reason=event.failure_reason,
                fingerprint=event.fingerprint,
                outcome=outcome,
                received_at=event.received_at,
            )
        )
        return outcome

    def _replay_unmatched(self, db, subject) -> None:
        subject_type = subject_type_of(subject)
        keys = [SettlementEventLog.idempotency_key == subject.idempotency_key]
        if subject.gateway_id:
            keys.append(SettlementEventLog.gateway_id == subject.gateway_id)
        pending = db.execute(
            select(SettlementEventLog)
            .where(
                SettlementEventLog.outcome == "unmatched",
                SettlementEventLog.replayed_at.is_(None),
                SettlementEventLog.subject_type == subject_type.value,
                or_(*keys),
            )
            .order_by(SettlementEventLog.received_at)
        ).scalars().all()
        for logged in pending:
            try:
                self.apply_status(
                    db,
                    subject,
                    CanonicalStatus(logged.status),
                    reason=f"webhook_replay:{logged.provider}",
                    event_id=logged.provider_event_id,
                    failure_reason=logged.failure_reason,
                )
            except InvalidStateTransition:
                pass
            logged.replayed_at = utcnow()

    def _add_timeline(self, db, subject, from_status, to_status, reason, event_id) -> None:
        db.add(
            StatusTimeline(
                subject_type=subject_type_of(subject).value,
                subject_id=subject.id,
                from_status=from_status,
                to_status=to_status,
                reason=reason,
                event_id=event_id,
            )
        )

    def _after_transition(self, db, subject, from_status: str, target: CanonicalStatus, reason, event_id) -> None:
        subject_type = subject_type_of(subject)
        self._add_timeline(db, subject, from_status, target.value, reason, event_id)
        ledger_transitions_total.labels(
            service=self.service_name, subject_type=subject_type.value, to_status=target.value
        ).inc()
        if target in TERMINAL_STATUSES:
            subject_terminal_total.labels(
                service=self.service_name, subject_type=subject_type.value, status=target.value
            ).inc()
        if subject_type == SubjectType.PAYMENT and target == CanonicalStatus.COMPLETED:
            self._create_purchase(db, subject)
        notify = NOTIFY_EVENTS.get((subject_type, target))
        if notify is not None:
            topic, event_type = notify
            self._enqueue_notification(db, subject, subject_type, topic, event_type)
        logger.info(
            "status_transition subject_type=%s subject_id=%s from=%s to=%s reason=%s",
            subject_type.value,
            subject.id,
            from_status,
            target.value,
            reason,
        )

    def _create_purchase(self, db, transaction: Transaction) -> None:
        """Grant the entitlement; only the CAS winner into COMPLETED gets here."""

        existing = db.execute(
            select(Purchase).where(Purchase.transaction_id == transaction.id)
        ).scalar_one_or_none()
        if existing is not None:
            return
        db.add(
            Purchase(
                transaction_id=transaction.id,
                payer_ref=transaction.payer_ref,
                product_ref=transaction.product_ref,
                developer_id=transaction.developer_id,
                amount=transaction.amount,
                currency=transaction.currency,
            )
        )
        db.flush()
        purchases_created_total.labels(service=self.service_name).inc()

    def _enqueue_notification(self, db, subject, subject_type: SubjectType, topic: str, event_type: str) -> None:
        payload = {
            "subject_id": subject.id,
            "idempotency_key": subject.idempotency_key,
            "amount": subject.amount,
            "currency": subject.currency,
            "gateway": subject.gateway,
            "status": subject.status,
        }
        if subject.failure_code:
            payload["failure_code"] = subject.failure_code
        if isinstance(subject, Payout):
            payload["developer_id"] = subject.developer_id
        db.add(
            OutboxEvent(
                aggregate_type=subject_type.value,
                aggregate_id=subject.id,
                event_type=event_type,
                topic=topic,
                payload=EventEnvelope(
                    event_type=event_type,
                    aggregate_id=subject.id,
                    trace_id=trace_id_ctx.get() or str(uuid4()),
                    payload=payload,
                ).model_dump(),
            )
        )


class OutboxPublisher:
    """Drains ledger outbox rows to Kafka; failures only requeue the row."""

    def __init__(self, session_factory, bus: KafkaBus | None = None, service_name: str = "settlepay") -> None:
        self.session_factory = session_factory
        self.kafka = bus or KafkaBus()
        self.service_name = service_name

    async def publish_pending(self, limit: int = 100) -> int:
        """Publish one claimed batch; returns the number of rows delivered."""

        with self.session_factory() as db:
            rows = claim_outbox_batch(db, OutboxEvent, limit=limit)
            update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
            db.commit()
        sent = 0
        for row in rows:
            try:
                await self.kafka.publish(row["topic"], EventEnvelope(**row["payload"]))
                with self.session_factory() as db:
                    mark_outbox_sent(db, OutboxEvent, row["id"])
                    update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                    db.commit()
                sent += 1
            except Exception as exc:
                logger.exception("outbox publish failed: %s", exc)
                with self.session_factory() as db:
                    requeue_outbox_event(db, OutboxEvent, row["id"])
                    update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                    db.commit()
        return sent

    async def run_forever(self) -> None:
        while True:
            await self.publish_pending()
            await asyncio.sleep(0.5)
