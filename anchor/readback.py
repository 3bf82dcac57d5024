import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, Optional, Tuple

from anchor.pipeline import MarkerBuffer

LOGGER = logging.getLogger(__name__)

Position = Tuple[float, float, float]


class MarkerReadback:
    """Copies marker buffers back to the host without stalling the frame loop.

    At most one copy is outstanding. ``request`` while a copy is in flight is
    dropped, and ``latest`` always returns the most recently completed
    snapshot, which may be one or more frames old.
    """

    def __init__(self, executor: Optional[ThreadPoolExecutor] = None):
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="marker-readback")
        self._lock = threading.Lock()
        self._pending: Optional[Future] = None
        self._latest: Dict[int, Position] = {}
        self._latest_frame = -1
        self.dropped_requests = 0

    @property
    def latest_frame(self) -> int:
        """Frame index of the current snapshot, -1 before the first completed copy."""
        with self._lock:
            return self._latest_frame

    def in_flight(self) -> bool:
        with self._lock:
            return self._pending is not None and not self._pending.done()

    def request(self, markers: MarkerBuffer, frame_index: int = 0) -> bool:
        with self._lock:
            if self._pending is not None and not self._pending.done():
                self.dropped_requests += 1
                LOGGER.debug("Readback still in flight; skipping frame %d", frame_index)
                return False
            self._pending = self._executor.submit(self._copy, markers, frame_index)
            return True

    def _copy(self, markers: MarkerBuffer, frame_index: int) -> None:
        try:
            positions = markers.positions()
        except Exception:
            LOGGER.exception("Marker readback for frame %d failed; keeping previous snapshot", frame_index)
            return
        with self._lock:
            self._latest = positions
            self._latest_frame = frame_index

    def latest(self) -> Dict[int, Position]:
        with self._lock:
            return dict(self._latest)

    def snapshot(self) -> Tuple[int, Dict[int, Position]]:
        """(frame index, positions) of the current snapshot, read atomically."""
        with self._lock:
            return self._latest_frame, dict(self._latest)

    def wait(self, timeout: Optional[float] = None) -> None:
        """Block until the outstanding copy, if any, has completed."""
        with self._lock:
            pending = self._pending
        if pending is not None:
            pending.result(timeout=timeout)

    def shutdown(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
