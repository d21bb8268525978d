"""
Downstream enrichment trigger - fire-and-forget after an event is persisted.

The ingestion response never waits on enrichment and never fails because of
it. Failures are logged and counted here (the dispatcher's error channel);
retrying is the profile processor's own responsibility.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

from eventrelay.config import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnrichmentJob:
    workspace_id: str
    user_id: str
    event_id: str


EnrichmentHandler = Callable[[EnrichmentJob], Awaitable[None]]


async def invoke_profile_processor(job: EnrichmentJob) -> None:
    """POST the job to the configured profile processor."""
    settings = get_settings()
    if not settings.enrichment_url:
        logger.debug("ENRICHMENT_URL not set - skipping enrichment for event %s", job.event_id[:8])
        return

    async with httpx.AsyncClient(timeout=settings.enrichment_timeout_seconds) as client:
        response = await client.post(
            settings.enrichment_url,
            json={
                "action": "process_live_events",
                "workspace_id": job.workspace_id,
                "user_id": job.user_id,
                "event_id": job.event_id,
            },
        )
        response.raise_for_status()


class EnrichmentDispatcher:
    """Runs enrichment jobs as detached tasks and records their failures."""

    def __init__(self, handler: Optional[EnrichmentHandler] = None):
        self._handler = handler or invoke_profile_processor
        self._tasks: set[asyncio.Task] = set()
        self.completed_count = 0
        self.failure_count = 0
        self.last_error: Optional[str] = None

    def dispatch(self, job: EnrichmentJob) -> asyncio.Task:
        task = asyncio.create_task(self._run(job))
        # Hold a strong reference until done so the task is not garbage-collected
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, job: EnrichmentJob) -> None:
        try:
            await self._handler(job)
            self.completed_count += 1
        except Exception as e:
            self.failure_count += 1
            self.last_error = str(e)
            logger.warning(
                "Enrichment failed, but event %s was saved: %s",
                job.event_id[:8], str(e),
                extra={"workspace_id": job.workspace_id},
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def stats(self) -> dict:
        return {
            "pending": self.pending,
            "completed": self.completed_count,
            "failed": self.failure_count,
            "last_error": self.last_error,
        }

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for in-flight jobs on shutdown, cancelling stragglers."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Cancelled %d enrichment jobs at shutdown", len(pending))


_dispatcher: Optional[EnrichmentDispatcher] = None


def get_enrichment_dispatcher() -> EnrichmentDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = EnrichmentDispatcher()
    return _dispatcher
