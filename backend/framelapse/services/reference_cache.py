"""
Single-entry cache of the landscape reference frame's landmarks.

Entries are keyed by the reference frame id together with the detector
settings that produced them, since descriptors from different detectors
cannot be matched against each other. Shared between concurrent alignment
runs of one project, so every access goes through a reentrant lock.
"""

import logging
import threading
from typing import Callable, Hashable, Optional, Tuple

from framelapse.models.landmarks import LandscapeLandmarks

logger = logging.getLogger(__name__)


class ReferenceLandmarkCache:
    """Holds landmarks for at most one reference key."""

    def __init__(self):
        self._lock = threading.RLock()
        self._entry: Optional[Tuple[Hashable, LandscapeLandmarks]] = None

    def get(self, key: Hashable) -> Optional[LandscapeLandmarks]:
        with self._lock:
            if self._entry is not None and self._entry[0] == key:
                return self._entry[1]
            return None

    def put(self, key: Hashable, landmarks: LandscapeLandmarks) -> None:
        with self._lock:
            self._entry = (key, landmarks)
            logger.debug(f"Cached reference landmarks for {key}")

    def get_or_load(
        self,
        key: Hashable,
        loader: Callable[[], LandscapeLandmarks],
    ) -> LandscapeLandmarks:
        """Return cached landmarks, or run loader under the lock and cache its result."""
        with self._lock:
            cached = self.get(key)
            if cached is not None:
                return cached
            landmarks = loader()
            self.put(key, landmarks)
            return landmarks

    def clear(self) -> None:
        with self._lock:
            self._entry = None

    @property
    def cached_key(self) -> Optional[Hashable]:
        with self._lock:
            return self._entry[0] if self._entry else None
