from __future__ import annotations

import inspect
from collections import OrderedDict

from loguru import logger

from ..metrics.registry import metrics_registry as m
from ..models import Action
from .types import ActionCallback


class ActionDispatcher:
    """Fan an Action out to registered callbacks at most once per event id.

    Keys are remembered in a bounded LRU window; a key is claimed before the
    callbacks run so a concurrent redelivery of the same event is skipped too.
    Callback failures are isolated and logged.
    """

    def __init__(self, *, window: int = 10_000, pipeline_id: str = "default"):
        if window <= 0:
            raise ValueError("window must be > 0")
        self._window = window
        self._pid = pipeline_id
        self._callbacks: list[ActionCallback] = []
        self._seen: OrderedDict[str, None] = OrderedDict()
        self.dispatched = 0
        self.duplicates = 0

    def register(self, callback: ActionCallback) -> None:
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    @property
    def callback_count(self) -> int:
        return len(self._callbacks)

    def seen(self, key: str) -> bool:
        return key in self._seen

    async def dispatch(self, action: Action) -> bool:
        """Invoke callbacks for ``action``. Returns False if it was a duplicate."""
        key = action.idempotency_key
        if key in self._seen:
            self._seen.move_to_end(key)
            self.duplicates += 1
            m.actions_dispatched_total.labels(self._pid, "duplicate").inc()
            logger.debug(f"Duplicate action for {key} ignored")
            return False

        self._remember(key)
        self.dispatched += 1
        for callback in list(self._callbacks):
            try:
                result = callback(action)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                m.actions_dispatched_total.labels(self._pid, "callback_error").inc()
                logger.error(f"Action callback failed for {key}: {type(exc).__name__}: {exc}")
            else:
                m.actions_dispatched_total.labels(self._pid, "ok").inc()
        logger.info(f"Action {action.action} dispatched for {key} ({len(self._callbacks)} callbacks)")
        return True

    def _remember(self, key: str) -> None:
        self._seen[key] = None
        while len(self._seen) > self._window:
            self._seen.popitem(last=False)
