"""Polling scheduler that advances due runs."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from .context import RequestContext
from .contracts import as_utc, utcnow
from .engine import AdvanceResult, PlaybookEngine

logger = logging.getLogger(__name__)


class RunScheduler:
    """Periodically advance runs whose ``scheduled_at``/``next_step_at`` elapsed.

    Runs left ``running`` after a crash are due as well; advancing them is
    safe because every run write is a compare-and-swap.
    """

    def __init__(self, engine: PlaybookEngine, actor: str = "scheduler") -> None:
        self.engine = engine
        self.actor = actor

    async def tick(self, now: Optional[datetime] = None) -> List[AdvanceResult]:
        """Advance every due run once. A failing run does not stop the tick."""
        now = as_utc(now) or utcnow()
        due = await self.engine.repository.list_due_runs(now)
        results: List[AdvanceResult] = []
        for run in due:
            ctx = RequestContext(org_id=run.org_id, actor=self.actor)
            try:
                results.append(await self.engine.advance(ctx, run.id, now=now))
            except Exception as exc:
                logger.error(f"Scheduler failed to advance run {run.id}: {exc}")
        if due:
            logger.info(f"Scheduler tick advanced {len(results)}/{len(due)} runs")
        return results

    async def start(self, interval: float = 5.0, lifespan: Optional[float] = None) -> None:
        """Tick every ``interval`` seconds until ``lifespan`` expires (or forever)."""
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None
        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break
            await self.tick()
            await asyncio.sleep(interval)
