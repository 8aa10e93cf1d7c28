"""Background worker using ARQ (async Redis queue).

Cron jobs:
- purge_expired_tokens_job: delete long-expired signing token rows (hygiene only;
  expiry itself is enforced at read time)
- reconcile_pending_deals_job: server-side provider sweep for contract-ready
  deals, so deals advance even when nobody is polling
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import cast
from uuid import UUID

from arq import cron
from arq.connections import RedisSettings
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from countersign.config import get_settings
from countersign.domain.signing.factory import build_signing_service
from countersign.infrastructure.database.connection import dispose_engine, get_session_factory
from countersign.infrastructure.esign.base import ESignProvider
from countersign.infrastructure.esign.factory import build_esign_provider, close_esign_provider
from countersign.shared.exceptions import CountersignError
from countersign.shared.logging import (
    bind_request_context,
    clear_request_context,
    get_logger,
    setup_logging,
)

logger = get_logger(__name__)

# Deals reconciled concurrently within one sweep
RECONCILE_CONCURRENCY = 5


@dataclass
class JobContext:
    session_factory: Callable[[], AsyncSession]
    esign_provider: ESignProvider


# ----- Job Functions -----


async def purge_expired_tokens_job(ctx: dict[str, object]) -> dict[str, object]:
    """Daily cron job removing token rows past the retention window."""
    logger.info("job_started", job="purge_expired_tokens")
    job_ctx = cast(JobContext, ctx["job_context"])

    try:
        async with job_ctx.session_factory() as session:
            service = build_signing_service(session, job_ctx.esign_provider)
            purged = await service.purge_expired_tokens()
            await session.commit()
    except SQLAlchemyError as e:
        logger.exception("job_failed", job="purge_expired_tokens", error=str(e))
        return {"status": "failed", "error": str(e)}

    logger.info("job_completed", job="purge_expired_tokens", purged=purged)
    return {"status": "completed", "purged": purged}


async def reconcile_pending_deals_job(ctx: dict[str, object]) -> dict[str, object]:
    """Reconcile contract-ready deals with the e-signature provider.

    Each deal runs in its own session so one failure does not roll back the
    others.
    """
    logger.info("job_started", job="reconcile_pending_deals")
    job_ctx = cast(JobContext, ctx["job_context"])
    settings = get_settings()

    async with job_ctx.session_factory() as session:
        service = build_signing_service(session, job_ctx.esign_provider)
        deal_ids = await service.pending_provider_deal_ids(
            limit=settings.reconcile_sweep_batch_size
        )

    semaphore = asyncio.Semaphore(RECONCILE_CONCURRENCY)

    async def _process_deal(deal_id: UUID) -> tuple[str, bool]:
        async with semaphore:
            bind_request_context(deal_id=str(deal_id))
            try:
                async with job_ctx.session_factory() as deal_session:
                    deal_service = build_signing_service(deal_session, job_ctx.esign_provider)
                    result, advanced = await deal_service.reconcile_deal(deal_id)
                    await deal_session.commit()
                    return result.outcome.value, advanced
            except (CountersignError, SQLAlchemyError) as e:
                logger.error(
                    "deal_reconciliation_failed",
                    deal_id=str(deal_id),
                    error=str(e),
                )
                return "failed", False
            finally:
                clear_request_context()

    results = await asyncio.gather(*(_process_deal(deal_id) for deal_id in deal_ids))

    outcomes: dict[str, int] = {}
    advanced_count = 0
    for outcome, advanced in results:
        outcomes[outcome] = outcomes.get(outcome, 0) + 1
        advanced_count += int(advanced)

    logger.info(
        "job_completed",
        job="reconcile_pending_deals",
        checked=len(deal_ids),
        advanced=advanced_count,
        outcomes=outcomes,
    )
    return {
        "status": "completed",
        "checked": len(deal_ids),
        "advanced": advanced_count,
        "outcomes": outcomes,
    }


# ----- Worker Settings -----


async def startup(ctx: dict[str, object]) -> None:
    """Initialize worker resources on startup."""
    setup_logging()
    logger.info("worker_starting")

    ctx["job_context"] = JobContext(
        session_factory=get_session_factory(),
        esign_provider=build_esign_provider(get_settings()),
    )

    logger.info("worker_started")


async def shutdown(ctx: dict[str, object]) -> None:
    """Clean up worker resources on shutdown."""
    logger.info("worker_stopping")
    job_ctx = ctx.get("job_context")
    if isinstance(job_ctx, JobContext):
        await close_esign_provider(job_ctx.esign_provider)
    await dispose_engine()
    logger.info("worker_stopped")


def get_redis_settings() -> RedisSettings:
    """Get Redis settings from app config."""
    settings = get_settings()
    return RedisSettings.from_dsn(str(settings.redis_url))


class WorkerSettings:
    """ARQ worker settings."""

    # Redis connection - must be a RedisSettings instance, not a method
    redis_settings = get_redis_settings()

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown

    # Worker config
    max_jobs = 10
    job_timeout = 300  # 5 minutes max per job
    keep_result = 3600  # Keep results for 1 hour

    # Cron jobs (scheduled tasks)
    cron_jobs = [
        # Daily at 3:15 AM - storage hygiene
        cron(purge_expired_tokens_job, hour=3, minute=15),
        # Every minute - provider sweep; unique so slow sweeps do not overlap
        cron(reconcile_pending_deals_job, second=0, unique=True),
    ]
