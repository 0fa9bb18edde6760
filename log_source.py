"""Common contract for the transports that discover and tail agent log files.

A LogSource never touches loop state. It reports what it sees to a listener
object through four callbacks:

    listener.on_line(host_name, path, text)
    listener.on_status(host_name, path, 'new' | 'active' | 'inactive')
    listener.on_connection(host_name, 'connected' | 'disconnected' | 'idle')
    listener.on_error(host_name, exc)
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

LOG_SUFFIX = '.jsonl'
DISCOVERY_INTERVAL_SEC = 10.0
TAIL_POLL_INTERVAL_SEC = 0.5
STALE_CHECK_INTERVAL_SEC = 30.0
STALE_THRESHOLD_SEC = 5 * 60.0


class PeriodicTask:
    """Call `fn` every `interval` seconds on a daemon thread until stopped."""

    def __init__(self, interval: float, fn: Callable[[], Any], name: str) -> None:
        self.interval = interval
        self.fn = fn
        self.name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self._loop, daemon=True, name=self.name)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.fn()
            except Exception as e:
                print(f'[{self.name}] error: {e}')


class LogSource(ABC):
    """Discovers append-only log files on one host and streams their new lines."""

    def __init__(self, host_name: str, listener: Any) -> None:
        self.host_name = host_name
        self.listener = listener

    @abstractmethod
    def start(self) -> None:
        """Begin discovery and tailing in background threads."""

    @abstractmethod
    def stop(self) -> None:
        """Cancel every timer and thread; safe to repeat and to call before start."""

    @abstractmethod
    def delete_file(self, path: str) -> bool:
        """Remove a log file and stop tracking it. An already-missing file is a success."""

    def tracked_files(self) -> list[str]:
        return []

    @staticmethod
    def liveness(last_data: float, now: Optional[float] = None, threshold: float = STALE_THRESHOLD_SEC) -> str:
        """Classify a file as 'active' or 'inactive' from the time of its last data."""
        now = time.time() if now is None else now
        return 'inactive' if now - last_data > threshold else 'active'
