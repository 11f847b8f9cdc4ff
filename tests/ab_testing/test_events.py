# EventPublisher テスト
"""
実験イベント配信の単体テスト

検証観点:
- 購読者への配信（スレッドプール経由）
- 購読者の例外は他の購読者・呼び出し元に伝播しない
"""

import logging
import threading

import pytest

from experiment_engine.ab_testing.events import (
    CONVERSION_TRACKED,
    VARIANT_ASSIGNED,
    EventPublisher,
)


@pytest.fixture
def publisher():
    publisher = EventPublisher(max_workers=2)
    yield publisher
    publisher.shutdown()


class TestEventPublisher:
    """EventPublisher のテスト"""

    def test_publish_to_subscribers(self, publisher):
        received = []
        lock = threading.Lock()

        def handler(event):
            with lock:
                received.append(event)

        publisher.subscribe(handler)
        event = publisher.publish(VARIANT_ASSIGNED, "checkout-button", {"variant": "B"})
        publisher.flush(timeout=5)

        assert received == [event]
        assert received[0].event_type == "experiment_variant_assigned"
        assert received[0].payload == {"variant": "B"}
        assert received[0].occurred_at is not None

    def test_publish_without_subscribers(self, publisher):
        event = publisher.publish(CONVERSION_TRACKED, "checkout-button")
        publisher.flush(timeout=5)
        assert event.payload == {}

    def test_handler_failure_is_isolated(self, publisher, caplog):
        received = []

        def failing(event):
            raise RuntimeError("sink down")

        publisher.subscribe(failing)
        publisher.subscribe(received.append)

        with caplog.at_level(logging.ERROR, logger="experiment_engine.ab_testing.events"):
            publisher.publish(CONVERSION_TRACKED, "checkout-button", {"goal": "completed_purchase"})
            publisher.flush(timeout=5)

        assert len(received) == 1
        assert "Event handler failed" in caplog.text

    def test_unsubscribe(self, publisher):
        received = []
        publisher.subscribe(received.append)
        publisher.unsubscribe(received.append)

        publisher.publish(VARIANT_ASSIGNED, "checkout-button")
        publisher.flush(timeout=5)

        assert received == []

    def test_payload_is_copied(self, publisher):
        payload = {"variant": "A"}
        event = publisher.publish(VARIANT_ASSIGNED, "checkout-button", payload)
        payload["variant"] = "B"
        assert event.payload == {"variant": "A"}
