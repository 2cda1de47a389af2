"""
Background scheduler for the lead sync jobs.

One daemon thread per enabled source: a first pass shortly after startup,
then one pass per interval. A failing pass is logged and retried on the
next tick from the same checkpoint; a tick that finds the previous pass
still running is skipped.
"""

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from leads import SyncInProgressError, env_flag

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MINUTES = {"meta": 15, "knowlarity": 5}
DEFAULT_STARTUP_DELAY_SECONDS = 10


@dataclass
class JobConfig:
    source: str
    enabled: bool = True
    interval_seconds: float = 900.0


@dataclass
class SchedulerConfig:
    """Timer settings for every sync job."""
    jobs: List[JobConfig] = field(default_factory=list)
    startup_delay_seconds: float = DEFAULT_STARTUP_DELAY_SECONDS

    @classmethod
    def from_env(cls) -> "SchedulerConfig":
        """
        Load configuration from environment variables.

        Environment variables (per source, META / KNOWLARITY):
            <SOURCE>_SYNC_ENABLED: Optional toggle (default: true)
            <SOURCE>_SYNC_INTERVAL_MINUTES: Optional interval (default: 15 / 5)
            SYNC_STARTUP_DELAY_SECONDS: Optional delay of the first pass (default: 10)
        """
        jobs = []
        for source, default_minutes in DEFAULT_INTERVAL_MINUTES.items():
            prefix = source.upper()
            minutes = float(os.environ.get(f"{prefix}_SYNC_INTERVAL_MINUTES", str(default_minutes)))
            if minutes <= 0:
                raise ValueError(f"{prefix}_SYNC_INTERVAL_MINUTES must be positive")
            jobs.append(JobConfig(
                source=source,
                enabled=env_flag(f"{prefix}_SYNC_ENABLED", True),
                interval_seconds=minutes * 60,
            ))

        return cls(
            jobs=jobs,
            startup_delay_seconds=float(
                os.environ.get("SYNC_STARTUP_DELAY_SECONDS", str(DEFAULT_STARTUP_DELAY_SECONDS))
            ),
        )


class SyncScheduler:
    """
    Runs `sync_fn(source)` on a fixed interval for every enabled job.

    Usage:
        scheduler = SyncScheduler(lead_sync.sync, SchedulerConfig.from_env())
        scheduler.start()
        ...
        scheduler.stop()
    """

    def __init__(self, sync_fn: Callable[[str], object], config: Optional[SchedulerConfig] = None):
        self.sync_fn = sync_fn
        self.config = config or SchedulerConfig.from_env()
        self._stop = threading.Event()
        self._threads: Dict[str, threading.Thread] = {}

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads.values())

    def start(self) -> None:
        if self.running:
            return

        self._stop.clear()
        for job in self.config.jobs:
            if not job.enabled:
                logger.info("%s sync disabled", job.source)
                continue
            thread = threading.Thread(
                target=self._loop,
                args=(job,),
                name=f"lead-sync-{job.source}",
                daemon=True,
            )
            self._threads[job.source] = thread
            thread.start()
            logger.info(
                "Scheduled %s sync every %.0fs (first run in %.0fs)",
                job.source,
                job.interval_seconds,
                self.config.startup_delay_seconds,
            )

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop timers. An in-flight pass is left to finish on its own."""
        self._stop.set()
        for thread in self._threads.values():
            thread.join(timeout)
        self._threads.clear()

    def run_once(self, source: str) -> Optional[object]:
        """Run one tick for `source`, logging instead of raising."""
        try:
            result = self.sync_fn(source)
        except SyncInProgressError:
            logger.warning("%s sync still running, skipping this tick", source)
            return None
        except Exception:
            logger.exception("%s sync failed", source)
            return None
        return result

    def _loop(self, job: JobConfig) -> None:
        if self._stop.wait(self.config.startup_delay_seconds):
            return
        while not self._stop.is_set():
            self.run_once(job.source)
            if self._stop.wait(job.interval_seconds):
                return
