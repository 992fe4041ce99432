"""Payout Scheduler.

One `run_once` per external trigger. Overlapping runs are prevented by a
lease row in `scheduler_locks`; each developer is processed in isolation so
one failure never aborts the rest of the run.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from settlepay.common.config import settings
from settlepay.common.db import ensure_utc, utcnow
from settlepay.common.errors import SettlePayError
from settlepay.common.logging import logger, mask_account
from settlepay.common.metrics import scheduler_decisions_total
from settlepay.common.state_machine import CanonicalStatus
from settlepay.services.conversion.service import ConversionService
from settlepay.services.earnings.service import IN_FLIGHT, EarningsCalculator
from settlepay.services.ledger.models import Payout
from settlepay.services.orchestrator.schemas import PayoutCreateRequest, PayoutSettingsUpdate
from settlepay.services.scheduler.models import DeveloperPayoutProfile, SchedulerLock


LOCK_NAME = "auto_payouts"
MISSING_ACCOUNT = "missing_account_details"


@dataclass
class SchedulerRunSummary:
    submitted: int = 0
    skipped: int = 0
    flagged: int = 0
    failed: int = 0
    locked: bool = False


class PayoutScheduler:
    def __init__(
        self,
        session_factory,
        orchestrator,
        earnings: EarningsCalculator,
        conversion: ConversionService,
        service_name: str = "settlepay",
        lease_seconds: int | None = None,
        platform_currency: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.orchestrator = orchestrator
        self.earnings = earnings
        self.conversion = conversion
        self.service_name = service_name
        self.lease_seconds = lease_seconds or settings.scheduler_lock_lease_seconds
        self.platform_currency = (platform_currency or settings.platform_currency).upper()

    def acquire_lock(self, holder: str, now: datetime | None = None) -> bool:
        """Take the run lease unless another holder's lease is still live."""

        now = now or utcnow()
        with self.session_factory() as db:
            if db.get(SchedulerLock, LOCK_NAME) is None:
                try:
                    db.add(SchedulerLock(name=LOCK_NAME))
                    db.commit()
                except IntegrityError:
                    db.rollback()
            result = db.execute(
                update(SchedulerLock)
                .where(
                    SchedulerLock.name == LOCK_NAME,
                    or_(SchedulerLock.locked_until.is_(None), SchedulerLock.locked_until < now),
                )
                .values(holder=holder, locked_until=now + timedelta(seconds=self.lease_seconds))
            )
            db.commit()
            return result.rowcount == 1

    def release_lock(self, holder: str) -> None:
        with self.session_factory() as db:
            db.execute(
                update(SchedulerLock)
                .where(SchedulerLock.name == LOCK_NAME, SchedulerLock.holder == holder)
                .values(holder=None, locked_until=None)
            )
            db.commit()

    def last_payout_at(self, db, developer_id: str) -> datetime | None:
        """Most recent completion, or creation of a payout still in flight."""

        completed = db.execute(
            select(func.max(Payout.completed_at)).where(
                Payout.developer_id == developer_id,
                Payout.status == CanonicalStatus.COMPLETED.value,
            )
        ).scalar_one()
        in_flight = db.execute(
            select(func.max(Payout.created_at)).where(
                Payout.developer_id == developer_id,
                Payout.status.in_(IN_FLIGHT),
            )
        ).scalar_one()
        moments = [ensure_utc(value) for value in (completed, in_flight) if value is not None]
        return max(moments) if moments else None

    async def run_once(self, now: datetime | None = None) -> SchedulerRunSummary:
        now = ensure_utc(now) if now else utcnow()
        holder = str(uuid4())
        if not self.acquire_lock(holder, now):
            logger.info("scheduler_locked holder=%s", holder)
            return SchedulerRunSummary(locked=True)

        summary = SchedulerRunSummary()
        try:
            with self.session_factory() as db:
                developer_ids = db.execute(
                    select(DeveloperPayoutProfile.developer_id)
                    .where(DeveloperPayoutProfile.auto_payout_enabled.is_(True))
                    .order_by(DeveloperPayoutProfile.developer_id)
                ).scalars().all()
            for developer_id in developer_ids:
                try:
                    decision = await self._process_developer(developer_id, now)
                except SettlePayError as exc:
                    decision = "failed"
                    logger.warning(
                        "auto_payout_rejected developer_id=%s code=%s error=%s", developer_id, exc.code, exc.message
                    )
                except Exception:
                    decision = "failed"
                    logger.exception("auto_payout_error developer_id=%s", developer_id)
                scheduler_decisions_total.labels(service=self.service_name, decision=decision).inc()
                setattr(summary, decision, getattr(summary, decision) + 1)
        finally:
            self.release_lock(holder)
        logger.info(
            "scheduler_run_finished submitted=%s skipped=%s flagged=%s failed=%s",
            summary.submitted,
            summary.skipped,
            summary.flagged,
            summary.failed,
        )
        return summary

    async def _process_developer(self, developer_id: str, now: datetime) -> str:
        with self.session_factory() as db:
            profile = db.get(DeveloperPayoutProfile, developer_id)
            if not profile.account_details:
                if profile.flagged_reason == MISSING_ACCOUNT:
                    return "skipped"
                profile.flagged_reason = MISSING_ACCOUNT
                profile.flagged_at = now
                db.commit()
                logger.warning("auto_payout_flagged developer_id=%s reason=%s", developer_id, MISSING_ACCOUNT)
                return "flagged"

            snapshot = self.earnings.compute_balance(developer_id, db=db)
            balance = snapshot.available_balance
            if balance <= 0 or balance < profile.payout_threshold:
                logger.info(
                    "auto_payout_below_threshold developer_id=%s balance=%s threshold=%s",
                    developer_id,
                    balance,
                    profile.payout_threshold,
                )
                return "skipped"

            last = self.last_payout_at(db, developer_id)
            if last is not None and now - last < timedelta(days=profile.payout_interval_days):
                logger.info("auto_payout_interval_not_elapsed developer_id=%s last_payout_at=%s", developer_id, last)
                return "skipped"

            currency = (profile.payout_currency or self.platform_currency).upper()
            account = dict(profile.account_details)
            method, country, region = profile.preferred_method, profile.country, profile.region

        amount, quote_id = balance, None
        if currency != self.platform_currency:
            quote = await self.conversion.quote(balance, self.platform_currency, currency, now=now)
            amount, quote_id = quote.target_amount, quote.quote_id

        response = await self.orchestrator.create_payout(
            PayoutCreateRequest(
                idempotency_key=f"auto:{developer_id}:{now.date().isoformat()}",
                amount=amount,
                currency=currency,
                region=region,
                country=country,
                method=method,
                developer_id=developer_id,
                account_details=account,
                quote_id=quote_id,
                source="automatic",
            )
        )
        logger.info(
            "auto_payout_submitted developer_id=%s payout_id=%s amount=%s currency=%s status=%s account=%s",
            developer_id,
            response.transaction_id,
            amount,
            currency,
            response.status,
            mask_account(account),
        )
        return "submitted"

    def _profile(self, db, developer_id: str) -> DeveloperPayoutProfile:
        profile = db.get(DeveloperPayoutProfile, developer_id)
        if profile is None:
            profile = DeveloperPayoutProfile(
                developer_id=developer_id,
                auto_payout_enabled=False,
                payout_threshold=0,
                payout_interval_days=settings.auto_payout_default_interval_days,
                payout_currency=self.platform_currency,
            )
            db.add(profile)
        return profile

    def update_payout_account(self, developer_id: str, account_details: dict) -> DeveloperPayoutProfile:
        """Store the payee account; clears a missing-account flag."""

        with self.session_factory() as db:
            profile = self._profile(db, developer_id)
            profile.account_details = dict(account_details)
            if profile.flagged_reason == MISSING_ACCOUNT:
                profile.flagged_reason = None
                profile.flagged_at = None
            db.commit()
            logger.info(
                "payout_account_updated developer_id=%s account=%s", developer_id, mask_account(account_details)
            )
            return profile

    def update_auto_payout_settings(self, developer_id: str, update_: PayoutSettingsUpdate) -> DeveloperPayoutProfile:
        changes = update_.model_dump(exclude_unset=True, exclude={"account_details"})
        if update_.account_details is not None:
            self.update_payout_account(developer_id, update_.account_details)
        with self.session_factory() as db:
            profile = self._profile(db, developer_id)
            for name, value in changes.items():
                if name in ("payout_currency", "country") and value:
                    value = value.upper()
                setattr(profile, name, value)
            db.commit()
            logger.info("payout_settings_updated developer_id=%s fields=%s", developer_id, sorted(changes))
            return profile
