"""Event shapes and the Kafka producer used by the outbox publisher.

`EventEnvelope` is what leaves the process for the notification collaborator;
`SettlementEvent` is the canonical form every verified webhook is normalized
into before it reaches the Ledger Writer.
"""

import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaProducer
from pydantic import BaseModel, Field

from settlepay.common.config import settings
from settlepay.common.state_machine import CanonicalStatus, SubjectType


# Terminal ledger transitions that notify downstream consumers.
NOTIFY_EVENTS: dict[tuple[SubjectType, CanonicalStatus], tuple[str, str]] = {
    (SubjectType.PAYMENT, CanonicalStatus.COMPLETED): ("payments.completed", "PaymentCompleted"),
    (SubjectType.PAYMENT, CanonicalStatus.FAILED): ("payments.failed", "PaymentFailed"),
    (SubjectType.PAYOUT, CanonicalStatus.COMPLETED): ("payouts.completed", "PayoutCompleted"),
    (SubjectType.PAYOUT, CanonicalStatus.FAILED): ("payouts.failed", "PayoutFailed"),
}


class EventEnvelope(BaseModel):
    """Canonical event shape sent across Kafka topics."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str
    payload: dict[str, Any]


class SettlementEvent(BaseModel):
    """Provider webhook notification normalized into canonical terms.

    Either `idempotency_key` or `gateway_id` (or both) identifies the subject,
    depending on what the provider echoes back.
    """

    provider: str
    provider_event_id: str
    subject_type: SubjectType
    idempotency_key: str | None = None
    gateway_id: str | None = None
    status: CanonicalStatus
    failure_reason: str | None = None
    fingerprint: str
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class KafkaBus:
    """Lazy Kafka producer wrapper used by the outbox publisher."""

    def __init__(self) -> None:
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=settings.kafka_bootstrap_servers)
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        producer = await self.producer()
        await producer.send_and_wait(topic, json.dumps(event.model_dump()).encode("utf-8"))

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()
