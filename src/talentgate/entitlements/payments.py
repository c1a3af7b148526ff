"""Payment event intake.

Gateway notifications are stored once per ``(gateway, event_id)`` and then
applied to the subscription they reference. Signature verification happens
before an event reaches this module.
"""

from collections.abc import Awaitable, Callable
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from talentgate.core.exceptions import TalentGateException, ValidationError
from talentgate.core.logging import LoggerMixin
from talentgate.entitlements.holder import Holder
from talentgate.entitlements.models import PaymentEvent, SubscriptionStatus
from talentgate.entitlements.periods import utcnow
from talentgate.entitlements.schemas import PaymentEventCreate
from talentgate.entitlements.subscriptions import SubscriptionService

PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED = "payment.failed"
SUBSCRIPTION_CANCELED = "subscription.canceled"

# Failed events are retried by the beat task until they have failed this often
MAX_PAYMENT_EVENT_ATTEMPTS = 5


class PaymentEventProcessor(LoggerMixin):
    """Record gateway events idempotently and drive subscription state."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db
        self.subscriptions = SubscriptionService(db)
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[None]]] = {
            PAYMENT_SUCCEEDED: self._on_payment_succeeded,
            PAYMENT_FAILED: self._on_payment_failed,
            SUBSCRIPTION_CANCELED: self._on_subscription_canceled,
        }

    async def get_event(self, gateway: str, event_id: str) -> PaymentEvent | None:
        result = await self.db.execute(
            select(PaymentEvent)
            .where(PaymentEvent.gateway == gateway, PaymentEvent.event_id == event_id)
            .execution_options(populate_existing=True),
        )
        return result.scalar_one_or_none()

    async def list_events(self, unprocessed_only: bool = False, limit: int = 100) -> list[PaymentEvent]:
        query = select(PaymentEvent)
        if unprocessed_only:
            query = query.where(PaymentEvent.processed.is_(False))
        result = await self.db.execute(query.order_by(PaymentEvent.received_at.desc()).limit(limit))
        return list(result.scalars().all())

    async def list_retryable_events(self, limit: int = 100) -> list[PaymentEvent]:
        """Unprocessed events that have not used up their retry attempts, oldest first."""
        result = await self.db.execute(
            select(PaymentEvent)
            .where(
                PaymentEvent.processed.is_(False),
                PaymentEvent.failed_attempts < MAX_PAYMENT_EVENT_ATTEMPTS,
            )
            .order_by(PaymentEvent.received_at)
            .limit(limit),
        )
        return list(result.scalars().all())

    async def record_event(self, data: PaymentEventCreate) -> tuple[PaymentEvent, bool]:
        """Store an event unless it was seen before.

        Returns:
            ``(event, created)``; ``created`` is False for a duplicate delivery

        Raises:
            IntegrityError: If a concurrent delivery stored the same event first
        """
        existing = await self.get_event(data.gateway, data.event_id)
        if existing is not None:
            self.logger.info(
                "payment_event_duplicate",
                gateway=data.gateway,
                event_id=data.event_id,
            )
            return existing, False

        event = PaymentEvent(**data.model_dump(), received_at=utcnow())
        self.db.add(event)
        await self.db.flush()

        self.logger.info(
            "payment_event_recorded",
            gateway=event.gateway,
            event_id=event.event_id,
            event_type=event.event_type,
        )
        return event, True

    async def process_event(self, event: PaymentEvent) -> str:
        """Apply an event to its subscription.

        Unknown event types are marked processed without effect. A failure
        is stored on the event, which stays unprocessed for a later retry
        until it has failed ``MAX_PAYMENT_EVENT_ATTEMPTS`` times.

        Returns:
            One of ``processed``, ``ignored``, ``failed`` or ``duplicate``
        """
        if event.processed:
            return "duplicate"

        event_id, event_type = event.event_id, event.event_type
        handler = self._handlers.get(event_type)
        if handler is None:
            self._mark_processed(event)
            await self.db.flush()
            self.logger.info("payment_event_ignored", event_id=event_id, event_type=event_type)
            return "ignored"

        try:
            async with self.db.begin_nested():
                await handler(event.payload or {})
        except TalentGateException as e:
            await self.db.refresh(event)
            event.error = str(e)
            event.failed_attempts += 1
            await self.db.flush()
            await self.db.refresh(event)
            self.logger.warning(
                "payment_event_failed",
                event_id=event_id,
                event_type=event_type,
                error=str(e),
                failed_attempts=event.failed_attempts,
            )
            if event.failed_attempts >= MAX_PAYMENT_EVENT_ATTEMPTS:
                self.logger.error(
                    "payment_event_retries_exhausted",
                    event_id=event_id,
                    event_type=event_type,
                )
            return "failed"

        self._mark_processed(event)
        await self.db.flush()
        self.logger.info("payment_event_processed", event_id=event_id, event_type=event_type)
        return "processed"

    async def ingest(self, data: PaymentEventCreate) -> tuple[PaymentEvent, bool, str]:
        """Record then process an event in one call."""
        event, created = await self.record_event(data)
        if not created and event.processed:
            return event, True, "duplicate"
        outcome = await self.process_event(event)
        return event, not created, outcome

    @staticmethod
    def _mark_processed(event: PaymentEvent) -> None:
        event.processed = True
        event.processed_at = utcnow()
        event.error = None

    @staticmethod
    def _subscription_id(payload: dict[str, Any]) -> UUID | None:
        raw = payload.get("subscription_id")
        if raw is None:
            return None
        try:
            return UUID(str(raw))
        except ValueError as e:
            raise ValidationError(
                "subscription_id is not a valid UUID",
                details={"subscription_id": str(raw)},
            ) from e

    async def _on_payment_succeeded(self, payload: dict[str, Any]) -> None:
        subscription_id = self._subscription_id(payload)
        if subscription_id is not None:
            await self.subscriptions.recover(subscription_id)
            return

        # First payment for a new plan: activate a subscription for the holder
        if "holder_type" not in payload or "plan_id" not in payload:
            raise ValidationError(
                "payment.succeeded needs subscription_id or holder_type, holder_id and plan_id",
            )
        holder = Holder.parse(payload["holder_type"], payload.get("holder_id"))
        current = await self.subscriptions.get_live_subscription(holder)
        if current is None:
            await self.subscriptions.subscribe(
                holder,
                str(payload["plan_id"]),
                external_ref=payload.get("external_ref"),
            )
            return

        # A payment settles a past-due subscription rather than opening a second one
        if current.status == SubscriptionStatus.PAST_DUE:
            await self.subscriptions.recover(current.id)
        await self.subscriptions.change_plan(current.id, str(payload["plan_id"]), reset_period=True)

    async def _on_payment_failed(self, payload: dict[str, Any]) -> None:
        subscription_id = self._subscription_id(payload)
        if subscription_id is None:
            raise ValidationError("payment.failed needs subscription_id")
        await self.subscriptions.mark_past_due(subscription_id)

    async def _on_subscription_canceled(self, payload: dict[str, Any]) -> None:
        subscription_id = self._subscription_id(payload)
        if subscription_id is None:
            raise ValidationError("subscription.canceled needs subscription_id")
        await self.subscriptions.cancel(subscription_id, immediate=True)
