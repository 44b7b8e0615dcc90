from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from dca_executor.data.store.provider import Store
from dca_executor.logging_utils import get_logger
from dca_executor.orchestrator.models import RUN_SKIPPED_ALREADY_RAN, RUN_SKIPPED_FAIL_CLOSED

logger = get_logger(__name__)


@dataclass(frozen=True)
class IdempotencyVerdict:
    proceed: bool
    status: Optional[str] = None
    reason: str = ""


def utc_day_start(now: datetime) -> datetime:
    current = now.astimezone(timezone.utc) if now.tzinfo else now.replace(tzinfo=timezone.utc)
    return current.replace(hour=0, minute=0, second=0, microsecond=0)


async def check_idempotency(store: Store, now: datetime, force: bool = False) -> IdempotencyVerdict:
    """At most one run per UTC day; an unanswerable query skips the run."""
    if force:
        logger.warning("Idempotency check bypassed (--force)")
        return IdempotencyVerdict(proceed=True, reason="forced")
    since = utc_day_start(now)
    try:
        already_ran = await store.has_activity_since(since)
    except Exception as exc:
        logger.error("Idempotency check failed, skipping run to avoid a duplicate: %s", exc)
        return IdempotencyVerdict(proceed=False, status=RUN_SKIPPED_FAIL_CLOSED, reason=str(exc))
    if already_ran:
        logger.info("A run has already been recorded since %s; skipping", since.isoformat())
        return IdempotencyVerdict(
            proceed=False, status=RUN_SKIPPED_ALREADY_RAN, reason=f"already ran since {since.isoformat()}"
        )
    return IdempotencyVerdict(proceed=True)


__all__ = ["IdempotencyVerdict", "check_idempotency", "utc_day_start"]
