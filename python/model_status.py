"""
Model lifecycle status

One status entry per catalog model, shared by the cache coordinator and the
model registry. Reads never block on in-flight downloads or loads.
"""

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

logger = logging.getLogger(__name__)


class ModelState(enum.IntEnum):
    # Ordering encodes forward progress; FAILED sits outside it.
    NOT_CACHED = 0
    DOWNLOADING = 1
    CACHED = 2
    LOADING = 3
    READY = 4
    FAILED = 99

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class ModelStatus:
    state: ModelState
    reason: Optional[str] = None

    @property
    def is_cached(self) -> bool:
        return ModelState.CACHED <= self.state <= ModelState.READY

    @property
    def is_ready(self) -> bool:
        return self.state == ModelState.READY

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"state": self.state.label, "reason": self.reason}


class InvalidTransition(RuntimeError):
    """Raised when a status change would move a model backwards"""


def _allowed(current: ModelState, new: ModelState) -> bool:
    if current == ModelState.FAILED:
        return new != ModelState.READY
    if current == ModelState.READY:
        return False
    if new == ModelState.FAILED:
        return current in (ModelState.DOWNLOADING, ModelState.LOADING)
    if current == ModelState.CACHED and new == ModelState.DOWNLOADING:
        # Cached files vanished from disk
        return True
    return new > current


class StatusTable:
    """Thread-safe map of model id to ModelStatus"""

    def __init__(self, model_ids: Iterable[str]):
        self._lock = threading.Lock()
        self._statuses: Dict[str, ModelStatus] = {
            model_id: ModelStatus(ModelState.NOT_CACHED) for model_id in model_ids
        }

    def get(self, model_id: str) -> ModelStatus:
        with self._lock:
            return self._statuses.get(model_id, ModelStatus(ModelState.NOT_CACHED))

    def snapshot(self) -> Dict[str, ModelStatus]:
        with self._lock:
            return dict(self._statuses)

    def transition(self, model_id: str, new: ModelState, reason: Optional[str] = None) -> ModelStatus:
        """
        Move a model to a new state.

        Setting the current state again is a no-op. Raises InvalidTransition
        for backward moves other than FAILED -> retry and CACHED -> DOWNLOADING.
        """
        with self._lock:
            current = self._statuses.get(model_id, ModelStatus(ModelState.NOT_CACHED))
            if current.state == new and new != ModelState.FAILED:
                return current
            if not _allowed(current.state, new):
                raise InvalidTransition(
                    f"{model_id}: cannot move from {current.state.label} to {new.label}"
                )
            status = ModelStatus(new, reason if new == ModelState.FAILED else None)
            self._statuses[model_id] = status

        logger.debug(f"Model {model_id}: {current.state.label} -> {new.label}")
        return status

    def advance_to(self, model_id: str, new: ModelState) -> ModelStatus:
        """Transition only if the model is behind `new`; otherwise keep the current state"""
        with self._lock:
            current = self._statuses.get(model_id, ModelStatus(ModelState.NOT_CACHED))
            if current.state != ModelState.FAILED and current.state >= new:
                return current
        return self.transition(model_id, new)

    def fail(self, model_id: str, reason: str) -> ModelStatus:
        return self.transition(model_id, ModelState.FAILED, reason)
