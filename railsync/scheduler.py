from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Optional

from railsync.models import BulkSyncResult
from railsync.propagation import BulkPropagator


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PropagationRequest:
    user_id: str
    project_id: str
    track_id: str | None = None
    subtrack_id: str | None = None

    @property
    def scope(self) -> str:
        if self.subtrack_id and self.track_id:
            return "subtrack"
        if self.track_id:
            return "track"
        return "project"


class PropagationScheduler:
    """Runs bulk propagation off the request path.

    Settings-change handlers enqueue a request and return; a daemon thread
    drains the queue. Identical pending requests are coalesced.
    """

    def __init__(self, propagator: BulkPropagator, history_size: int = 50) -> None:
        self.propagator = propagator
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._lock = threading.Lock()
        self._pending: deque[PropagationRequest] = deque()
        self.last_results: deque[tuple[PropagationRequest, BulkSyncResult]] = deque(maxlen=history_size)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="railsync-propagation", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def enqueue(self, request: PropagationRequest) -> bool:
        with self._lock:
            if request in self._pending:
                return False
            self._pending.append(request)
        self._wake_event.set()
        return True

    def pending(self) -> list[PropagationRequest]:
        with self._lock:
            return list(self._pending)

    def run_request(self, request: PropagationRequest) -> BulkSyncResult:
        if request.scope == "subtrack":
            result = self.propagator.bulk_sync_subtrack_roadmap_events(
                request.user_id, request.project_id, str(request.track_id), str(request.subtrack_id)
            )
        elif request.scope == "track":
            result = self.propagator.bulk_sync_track_roadmap_events(
                request.user_id, request.project_id, str(request.track_id)
            )
        else:
            result = self.propagator.bulk_sync_project_roadmap_events(request.user_id, request.project_id)
        self.last_results.append((request, result))
        return result

    def run_pending(self) -> int:
        processed = 0
        while True:
            with self._lock:
                if not self._pending:
                    return processed
                request = self._pending.popleft()
            try:
                self.run_request(request)
            except Exception:
                # Not retried.
                logger.exception("Propagation failed for %s %s", request.scope, request)
            processed += 1

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self._wake_event.wait()
            self._wake_event.clear()
            if self._stop_event.is_set():
                break
            self.run_pending()
