# 実験イベント配信
"""
書き込み成功後に実験イベントを購読者へ配信する

配信はスレッドプールで行い、呼び出し元のレスポンスを待たせない。
購読者の例外はログに記録し、他の購読者・呼び出し元には伝播しない。
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from experiment_engine.ab_testing.models import utcnow


logger = logging.getLogger(__name__)


EXPERIMENT_REGISTERED = "experiment_registered"
EXPERIMENT_STATUS_CHANGED = "experiment_status_changed"
VARIANT_ASSIGNED = "experiment_variant_assigned"
CONVERSION_TRACKED = "experiment_conversion_tracked"


@dataclass(frozen=True)
class ExperimentEvent:
    """配信されるイベント"""
    event_type: str
    experiment_name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)


EventHandler = Callable[[ExperimentEvent], None]


class EventPublisher:
    """実験イベントの配信

    使用例:
        publisher = EventPublisher()
        publisher.subscribe(lambda event: print(event.event_type))
        publisher.publish(VARIANT_ASSIGNED, "checkout-button", {"variant": "A"})
        publisher.shutdown()
    """

    def __init__(self, max_workers: int = 2):
        self._lock = threading.Lock()
        self._handlers: List[EventHandler] = []
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="experiment-events",
        )
        self._pending: List[Future] = []

    def subscribe(self, handler: EventHandler) -> None:
        with self._lock:
            self._handlers.append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    def publish(
        self,
        event_type: str,
        experiment_name: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> ExperimentEvent:
        """イベントを非同期で配信

        Returns:
            配信キューに入れたイベント
        """
        event = ExperimentEvent(
            event_type=event_type,
            experiment_name=experiment_name,
            payload=dict(payload or {}),
        )
        with self._lock:
            handlers = list(self._handlers)
            if not handlers:
                return event
            # 完了済みの Future は保持しない
            self._pending = [f for f in self._pending if not f.done()]
            for handler in handlers:
                self._pending.append(self._executor.submit(self._dispatch, handler, event))
        return event

    def flush(self, timeout: Optional[float] = None) -> None:
        """キュー済みの配信が終わるまで待つ"""
        with self._lock:
            pending = list(self._pending)
        for future in pending:
            future.exception(timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _dispatch(self, handler: EventHandler, event: ExperimentEvent) -> None:
        try:
            handler(event)
        except Exception:
            logger.exception(
                "Event handler failed: event=%s experiment=%s",
                event.event_type, event.experiment_name,
            )
