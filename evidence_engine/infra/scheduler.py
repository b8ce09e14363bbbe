"""
Scheduler infrastructure for periodic ingestion.
"""

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from croniter import croniter

from ..models import ConnectorConfig


logger = logging.getLogger(__name__)

DEFAULT_CRON = "0 6 * * 1"

# crontab counts weekdays from Sunday=0 (7 is Sunday again), APScheduler from
# Monday=0, so numeric fields are rewritten with day names. A range starting on
# Sunday, or carrying a step, is spelled out day by day since APScheduler only
# takes plain ranges of names.
_DOW_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")
_DOW_PART = re.compile(r"(\*|\d+)(?:-(\d+))?(?:/(\d+))?")


def _crontab_day_of_week(field: str) -> str:
    converted: List[str] = []
    for part in field.split(","):
        m = _DOW_PART.fullmatch(part)
        if m is None:
            converted.append(part)
            continue
        start, end, step = m.groups()
        if start == "*" and step is None:
            converted.append("*")
            continue
        if start == "*":
            lo, hi = 0, 6
        else:
            lo = int(start)
            hi = int(end) if end is not None else (7 if step else lo)
        if max(lo, hi) > 7:
            converted.append(part)
        elif lo == hi:
            converted.append(_DOW_NAMES[lo])
        elif lo == 0 or step:
            for day in range(lo, hi + 1, int(step or 1)):
                if _DOW_NAMES[day] not in converted:
                    converted.append(_DOW_NAMES[day])
        else:
            converted.append(f"{_DOW_NAMES[lo]}-{_DOW_NAMES[hi]}")
    return ",".join(converted)


def validate_cron_expression(cron_expression: str) -> bool:
    """Validate a 5-field cron expression using croniter."""
    if len(cron_expression.split()) != 5:
        return False
    try:
        croniter(cron_expression)
        return True
    except (ValueError, KeyError) as e:
        logger.error(f"Invalid cron expression '{cron_expression}': {e}")
        return False


def cron_trigger(cron_expression: str, timezone: str = "UTC") -> CronTrigger:
    minute, hour, day, month, day_of_week = cron_expression.split()
    return CronTrigger(
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=_crontab_day_of_week(day_of_week),
        timezone=timezone,
    )


class Scheduler:
    """Async task scheduler wrapper around APScheduler (in-memory job store)."""

    def __init__(self, timezone: str = "UTC"):
        job_defaults = {
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': 300  # seconds
        }
        self.timezone = timezone
        self._scheduler = AsyncIOScheduler(job_defaults=job_defaults, timezone=timezone)
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Start the scheduler."""
        if not self._started:
            self._scheduler.start()
            self._started = True
            logger.info("Scheduler started")

    async def stop(self) -> None:
        """Stop the scheduler."""
        if self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("Scheduler stopped")

    def add_cron_job(
        self,
        func: Callable,
        cron_expression: str,
        job_id: Optional[str] = None,
        **kwargs
    ) -> None:
        """Add a job that runs on a cron schedule."""
        if not validate_cron_expression(cron_expression):
            raise ValueError(f"Invalid cron expression: {cron_expression}")

        self._scheduler.add_job(
            func,
            trigger=cron_trigger(cron_expression, self.timezone),
            id=job_id,
            replace_existing=True,
            **kwargs
        )
        logger.info(f"Added cron job: {job_id or func.__name__} ({cron_expression})")

    def list_jobs(self) -> Dict[str, Any]:
        """List all scheduled jobs."""
        jobs = {}
        for job in self._scheduler.get_jobs():
            jobs[job.id] = {
                "name": job.name,
                "next_run": getattr(job, "next_run_time", None),
                "trigger": str(job.trigger),
            }
        return jobs


SourceRunner = Callable[[ConnectorConfig], Awaitable[Any]]


def group_by_schedule(configs: List[ConnectorConfig], default_cron: str = DEFAULT_CRON) -> Dict[str, List[ConnectorConfig]]:
    """Enabled sources keyed by cron expression; missing or invalid schedules use *default_cron*."""
    groups: Dict[str, List[ConnectorConfig]] = {}
    for cfg in configs:
        if not cfg.enabled:
            continue
        cron = cfg.schedule or default_cron
        if not validate_cron_expression(cron):
            logger.warning("Source %s has invalid schedule %r, using %s", cfg.source_id, cron, default_cron)
            cron = default_cron
        groups.setdefault(cron, []).append(cfg)
    return groups


class IngestionScheduler:
    """Runs each schedule group's sources one after another, staggered.

    A group whose previous run is still in progress is skipped.
    """

    def __init__(
        self,
        configs: List[ConnectorConfig],
        runner: SourceRunner,
        *,
        scheduler: Optional[Scheduler] = None,
        default_cron: str = DEFAULT_CRON,
        stagger_s: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if not validate_cron_expression(default_cron):
            logger.warning("Invalid default schedule %r, falling back to %s", default_cron, DEFAULT_CRON)
            default_cron = DEFAULT_CRON
        self.default_cron = default_cron
        self.groups = group_by_schedule(configs, default_cron)
        self.scheduler = scheduler or Scheduler()
        self._runner = runner
        self._stagger_s = stagger_s
        self._sleep = sleep
        self._running: Set[str] = set()
        self._last_run: Dict[str, datetime] = {}

    @staticmethod
    def job_id(cron: str) -> str:
        return "ingestion:" + cron.replace(" ", "_")

    async def start(self) -> None:
        for cron, configs in self.groups.items():
            self.scheduler.add_cron_job(self.run_group, cron, job_id=self.job_id(cron), args=[cron])
            logger.info("Scheduled %d source(s) on '%s'", len(configs), cron)
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()

    def is_running(self, cron: str) -> bool:
        return cron in self._running

    async def run_group(self, cron: str) -> List[Any]:
        if cron in self._running:
            logger.warning("Previous run of schedule '%s' still in progress, skipping", cron)
            return []

        self._running.add(cron)
        results: List[Any] = []
        try:
            for i, cfg in enumerate(self.groups.get(cron, [])):
                if i > 0 and self._stagger_s > 0:
                    await self._sleep(self._stagger_s)
                try:
                    results.append(await self._runner(cfg))
                except Exception as e:
                    logger.error(f"Scheduled run of {cfg.source_id} failed: {e}")
        finally:
            self._running.discard(cron)
            self._last_run[cron] = datetime.now(timezone.utc)
        return results

    def status(self) -> List[Dict[str, Any]]:
        jobs = self.scheduler.list_jobs()
        return [
            {
                "schedule": cron,
                "sources": [c.source_id for c in configs],
                "next_run": jobs.get(self.job_id(cron), {}).get("next_run"),
                "last_run": self._last_run.get(cron),
                "running": cron in self._running,
            }
            for cron, configs in self.groups.items()
        ]
