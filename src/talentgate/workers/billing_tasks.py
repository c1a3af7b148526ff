"""Celery tasks for the billing cycle and payment event retries."""

import asyncio
from collections.abc import Coroutine
from typing import Any, TypeVar

import structlog
from celery import shared_task

from talentgate.core.database import get_engine, get_session_context
from talentgate.entitlements.payments import PaymentEventProcessor
from talentgate.entitlements.scheduler import BillingCycleScheduler

logger = structlog.get_logger(__name__)

T = TypeVar("T")

PENDING_EVENTS_BATCH = 100


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run async function in sync context for Celery."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _with_engine_cleanup(coro: Coroutine[Any, Any, T]) -> T:
    # Pooled connections are bound to the loop that opened them
    try:
        return await coro
    finally:
        await get_engine().dispose()


@shared_task(bind=True, name="talentgate.billing.run_billing_cycle")  # type: ignore[untyped-decorator]
def run_billing_cycle(_self: Any) -> dict[str, int]:  # noqa: ARG001
    """Roll elapsed subscriptions into their next period."""
    return run_async(_with_engine_cleanup(_run_billing_cycle_async()))


async def _run_billing_cycle_async() -> dict[str, int]:
    async with get_session_context() as session:
        summary = await BillingCycleScheduler(session).run()
    logger.info("billing_cycle_task_completed", **summary.model_dump())
    return summary.model_dump()


@shared_task(bind=True, name="talentgate.billing.process_pending_payment_events")  # type: ignore[untyped-decorator]
def process_pending_payment_events(_self: Any) -> dict[str, int]:  # noqa: ARG001
    """Retry payment events that failed to apply and have attempts left."""
    return run_async(_with_engine_cleanup(_process_pending_payment_events_async()))


async def _process_pending_payment_events_async() -> dict[str, int]:
    results = {"processed": 0, "ignored": 0, "failed": 0, "duplicate": 0}

    async with get_session_context() as session:
        processor = PaymentEventProcessor(session)
        events = await processor.list_retryable_events(limit=PENDING_EVENTS_BATCH)
        for event in events:
            outcome = await processor.process_event(event)
            results[outcome] += 1

    logger.info("payment_events_retried", **results)
    return results
