"""
Tests for the event stream.
"""

import threading

from deviceauth.core.events import NOTICE, EventBus, Notice


def test_ids_increase_monotonically():
    bus = EventBus()

    first = bus.publish("updater", {"type": "checking"})
    second = bus.publish("updater", {"type": "none"})

    assert second.id == first.id + 1
    assert bus.last_id == second.id


def test_since_filters_by_id_and_topic():
    bus = EventBus()
    bus.publish("updater", {"type": "checking"})
    marker = bus.publish("init-complete", {"uid": "abc"})
    bus.notify(Notice(kind="info", title="Device UID reset", message="New UID generated"))

    assert [e.topic for e in bus.since(marker.id)] == [NOTICE]
    assert [e.topic for e in bus.since(0, topic="updater")] == ["updater"]


def test_capacity_drops_oldest():
    bus = EventBus(capacity=3)
    for index in range(5):
        bus.publish("updater", {"index": index})

    assert [e.payload["index"] for e in bus.since(0)] == [2, 3, 4]
    assert bus.last_id == 5


def test_notice_payload():
    bus = EventBus()
    event = bus.notify(Notice(kind="info", title="Title", message="Body", detail="Detail"))

    assert event.to_dict()["payload"] == {"kind": "info", "title": "Title", "message": "Body", "detail": "Detail"}


def test_concurrent_publishers_get_unique_ids():
    bus = EventBus(capacity=1000)

    def publish_many():
        for _ in range(100):
            bus.publish("updater")

    threads = [threading.Thread(target=publish_many) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    ids = [event.id for event in bus.since(0)]
    assert len(ids) == len(set(ids)) == 400
