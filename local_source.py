"""Tail agent logs on the machine running the observatory."""

from __future__ import annotations

import os
import threading
import time
from typing import Any, Optional

from config import DEFAULT_WATCH_DIR
from log_source import (
    DISCOVERY_INTERVAL_SEC,
    LOG_SUFFIX,
    STALE_CHECK_INTERVAL_SEC,
    STALE_THRESHOLD_SEC,
    TAIL_POLL_INTERVAL_SEC,
    LogSource,
    PeriodicTask,
)


# A writer that never ends its line is flushed once this much has piled up.
MAX_PARTIAL_BYTES = 1 << 20


class _TrackedFile:
    __slots__ = ('offset', 'last_data', 'partial', 'poller')

    def __init__(self, offset: int) -> None:
        self.offset = offset
        self.last_data = time.time()
        self.partial = b''
        self.poller: Optional[PeriodicTask] = None


class LocalSource(LogSource):
    """Polls the local filesystem with byte-offset cursors, one poller per file."""

    def __init__(
        self,
        host_name: str,
        listener: Any,
        watch_dir: Optional[str] = None,
        discovery_interval: float = DISCOVERY_INTERVAL_SEC,
        poll_interval: float = TAIL_POLL_INTERVAL_SEC,
        stale_interval: float = STALE_CHECK_INTERVAL_SEC,
        stale_threshold: float = STALE_THRESHOLD_SEC,
    ) -> None:
        super().__init__(host_name, listener)
        self.watch_dir = os.path.expanduser(watch_dir or DEFAULT_WATCH_DIR)
        self.discovery_interval = discovery_interval
        self.poll_interval = poll_interval
        self.stale_interval = stale_interval
        self.stale_threshold = stale_threshold
        self._tracked: dict[str, _TrackedFile] = {}
        self._lock = threading.Lock()
        self._stopped = True
        self._discovery: Optional[PeriodicTask] = None
        self._stale_checker: Optional[PeriodicTask] = None

    def start(self) -> None:
        if not self._stopped:
            return
        self._stopped = False
        print(f'[LOCAL] Watching {self.watch_dir} for {self.host_name}')
        self.listener.on_connection(self.host_name, 'connected')
        self.discover_files()
        self._discovery = PeriodicTask(self.discovery_interval, self.discover_files, f'discover-{self.host_name}')
        self._discovery.start()
        self._stale_checker = PeriodicTask(self.stale_interval, self.check_stale, f'stale-{self.host_name}')
        self._stale_checker.start()

    def stop(self) -> None:
        self._stopped = True
        for task in (self._discovery, self._stale_checker):
            if task is not None:
                task.stop()
        self._discovery = None
        self._stale_checker = None
        with self._lock:
            tracked = list(self._tracked.values())
            self._tracked.clear()
        for info in tracked:
            if info.poller is not None:
                info.poller.stop()

    def tracked_files(self) -> list[str]:
        with self._lock:
            return sorted(self._tracked)

    def delete_file(self, path: str) -> bool:
        self._untrack(path)
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            print(f'[LOCAL] Failed to delete {path}: {e}')
            return False
        return True

    def find_log_files(self) -> list[str]:
        """Recursively list log files under the watch directory."""
        found = []
        for root, _dirs, files in os.walk(self.watch_dir):
            for name in files:
                if name.endswith(LOG_SUFFIX):
                    found.append(os.path.join(root, name))
        return sorted(found)

    def discover_files(self) -> None:
        if self._stopped:
            return
        files = self.find_log_files() if os.path.isdir(self.watch_dir) else []
        if not files:
            self.listener.on_connection(self.host_name, 'idle')
            return
        for path in files:
            self._track(path)

    def _track(self, path: str) -> None:
        with self._lock:
            if self._stopped or path in self._tracked:
                return
            try:
                # Tail semantics: existing content is not replayed.
                offset = os.path.getsize(path)
            except OSError:
                return
            info = _TrackedFile(offset)
            self._tracked[path] = info
        self.listener.on_status(self.host_name, path, 'new')
        info.poller = PeriodicTask(self.poll_interval, lambda: self.read_new_lines(path), f'tail-{os.path.basename(path)}')
        info.poller.start()

    def _untrack(self, path: str) -> None:
        with self._lock:
            info = self._tracked.pop(path, None)
        if info is not None and info.poller is not None:
            info.poller.stop()

    def read_new_lines(self, path: str) -> None:
        """Read bytes appended since the last poll and emit complete lines."""
        with self._lock:
            info = self._tracked.get(path)
        if info is None or self._stopped:
            return

        try:
            size = os.path.getsize(path)
            if size < info.offset:
                info.offset = 0
                info.partial = b''
            if size == info.offset:
                return
            with open(path, 'rb') as f:
                f.seek(info.offset)
                chunk = f.read(size - info.offset)
        except OSError:
            self._untrack(path)
            return

        info.offset += len(chunk)
        info.last_data = time.time()
        pieces = (info.partial + chunk).split(b'\n')
        info.partial = pieces.pop()
        if len(info.partial) > MAX_PARTIAL_BYTES:
            pieces.append(info.partial)
            info.partial = b''
        for piece in pieces:
            text = piece.decode('utf-8', errors='replace').rstrip('\r')
            if not text.strip():
                continue
            try:
                self.listener.on_line(self.host_name, path, text)
            except Exception as e:
                print(f'[LOCAL] Dropped line from {path}: {e!r}')

    def check_stale(self) -> None:
        now = time.time()
        with self._lock:
            snapshot = [(path, info.last_data) for path, info in self._tracked.items()]
        for path, last_data in snapshot:
            status = self.liveness(last_data, now, self.stale_threshold)
            self.listener.on_status(self.host_name, path, status)
