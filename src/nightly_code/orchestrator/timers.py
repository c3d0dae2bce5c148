"""Cancellable periodic jobs bound to a session lifetime."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable

import psutil

from nightly_code.orchestrator.models import ResourceSample, utc_now

logger = logging.getLogger(__name__)

HIGH_CPU_PERCENT = 90.0
HIGH_MEMORY_BYTES = 2 * 1024 * 1024 * 1024


class PeriodicJob:
    """Runs ``action`` every ``interval_seconds`` on a daemon thread.

    The first run happens one interval after ``start``. ``stop`` wakes the
    thread immediately and joins it, so no run starts after ``stop`` returns.
    An exception raised by ``action`` is logged and the schedule continues.
    """

    def __init__(
        self,
        *,
        name: str,
        interval_seconds: float,
        action: Callable[[], None],
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be > 0, got {interval_seconds!r}")
        self.name = name
        self.interval_seconds = interval_seconds
        self.action = action
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.debug("Periodic job %s started (every %ss).", self.name, self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is None:
            return
        thread.join(timeout=timeout)
        if thread.is_alive():
            logger.warning("Periodic job %s did not stop within %ss.", self.name, timeout)
        else:
            logger.debug("Periodic job %s stopped.", self.name)

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.action()
            except Exception:  # noqa: BLE001
                logger.exception("Periodic job %s failed.", self.name)


class ResourceSampler:
    """Samples CPU and resident memory of this process and its children.

    Samples go into a bounded buffer shared with the session state; the
    oldest sample is evicted once the buffer is full.
    """

    def __init__(
        self,
        buffer: deque[ResourceSample],
        *,
        process: psutil.Process | None = None,
        cpu_warning_percent: float = HIGH_CPU_PERCENT,
        memory_warning_bytes: int = HIGH_MEMORY_BYTES,
    ) -> None:
        self.buffer = buffer
        self.process = process or psutil.Process()
        self.cpu_warning_percent = cpu_warning_percent
        self.memory_warning_bytes = memory_warning_bytes

    def sample(self) -> ResourceSample:
        cpu_percent = 0.0
        memory_bytes = 0
        for proc in self._process_tree():
            try:
                cpu_percent += proc.cpu_percent(interval=None)
                memory_bytes += proc.memory_info().rss
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue

        sample = ResourceSample(
            timestamp=utc_now(),
            cpu_percent=round(cpu_percent, 1),
            memory_bytes=memory_bytes,
        )
        self.buffer.append(sample)
        if sample.cpu_percent > self.cpu_warning_percent:
            logger.warning("High CPU usage detected: %.1f%%", sample.cpu_percent)
        if sample.memory_bytes > self.memory_warning_bytes:
            logger.warning(
                "High memory usage detected: %d MB",
                sample.memory_bytes // (1024 * 1024),
            )
        return sample

    def _process_tree(self) -> list[psutil.Process]:
        try:
            children = self.process.children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            children = []
        return [self.process, *children]
