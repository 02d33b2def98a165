from __future__ import annotations

from typing import Callable, Any
import threading

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger


class SchedulerWrapper:
    def __init__(self, timezone: str | None = None):
        self._scheduler = BackgroundScheduler(timezone=timezone) if timezone else BackgroundScheduler()
        self._started = False
        self._lock = threading.Lock()

    @property
    def started(self) -> bool:
        return self._started

    def start(self):
        with self._lock:
            if not self._started:
                self._scheduler.start()
                self._started = True

    def add_interval_job(
        self,
        func: Callable[..., Any],
        minutes: int,
        id: str,
        *,
        max_instances: int = 1,
        coalesce: bool = True,
        misfire_grace_time: int | None = 60,
    ):
        self._scheduler.add_job(
            func,
            "interval",
            minutes=minutes,
            id=id,
            replace_existing=True,
            max_instances=max_instances,
            coalesce=coalesce,
            misfire_grace_time=misfire_grace_time,
        )

    def add_cron_job(
        self,
        func: Callable[..., Any],
        cron_trigger: CronTrigger,
        id: str,
        *,
        max_instances: int = 1,
        coalesce: bool = True,
        misfire_grace_time: int | None = 3600,
    ):
        """Add a cron-based scheduled job"""
        self._scheduler.add_job(
            func,
            trigger=cron_trigger,
            id=id,
            replace_existing=True,
            max_instances=max_instances,
            coalesce=coalesce,
            misfire_grace_time=misfire_grace_time,
        )

    def get_job_ids(self) -> list[str]:
        return [job.id for job in self._scheduler.get_jobs()]

    def shutdown(self):
        with self._lock:
            if self._started:
                self._scheduler.shutdown(wait=False)
                self._started = False
