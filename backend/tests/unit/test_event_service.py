"""
Unit tests for the outbound event publisher
"""
import threading
from decimal import Decimal

from shopfloor.services.event_service import (
    EventPublisher,
    LotMovement,
    WorkOrderStatusChanged,
    get_event_publisher,
)


def _status_event(work_order_id=1):
    return WorkOrderStatusChanged(work_order_id=work_order_id, previous_status="planned", new_status="scheduled")


class TestQueue:

    def test_publish_and_drain_in_order(self):
        publisher = EventPublisher(10)
        movement = LotMovement(lot_id=3, product_id=2, delta=Decimal("-4"), reason="consumption")

        assert publisher.publish(_status_event()) is True
        publisher.publish_all([movement])

        assert publisher.pending() == 2
        events = publisher.drain()
        assert [type(e) for e in events] == [WorkOrderStatusChanged, LotMovement]
        assert events[1] is movement
        assert publisher.pending() == 0

    def test_full_queue_drops_without_blocking(self):
        publisher = EventPublisher(2)

        results = [publisher.publish(_status_event(i)) for i in range(3)]

        assert results == [True, True, False]
        assert publisher.dropped == 1
        assert [e.work_order_id for e in publisher.drain()] == [0, 1]

    def test_default_publisher_is_shared(self):
        assert get_event_publisher() is get_event_publisher()


class TestDispatcher:

    def test_subscribers_receive_events(self):
        publisher = EventPublisher(10)
        received = []
        done = threading.Event()

        def handler(event):
            received.append(event.work_order_id)
            if len(received) == 2:
                done.set()

        publisher.subscribe(handler)
        publisher.start()
        try:
            publisher.publish(_status_event(1))
            publisher.publish(_status_event(2))
            assert done.wait(5)
        finally:
            publisher.stop()

        assert received == [1, 2]

    def test_failing_handler_does_not_stop_delivery(self):
        publisher = EventPublisher(10)
        received = []
        done = threading.Event()

        def broken(event):
            raise RuntimeError("subscriber down")

        def healthy(event):
            received.append(event.work_order_id)
            done.set()

        publisher.subscribe(broken)
        publisher.subscribe(healthy)
        publisher.start()
        try:
            publisher.publish(_status_event(7))
            assert done.wait(5)
        finally:
            publisher.stop()

        assert received == [7]
