"""Tests for lifecycle events and the in-process event bus."""

import json
import logging

from warden.events import EventBus, EventRecorder, LifecycleEvent, LifecycleEventType


def make_event(event_type=LifecycleEventType.TRANSACTION_CREATED, tx_id="tx-1"):
    return LifecycleEvent(event_type, transaction={"id": tx_id, "status": "pending"})


class TestLifecycleEvent:
    def test_to_dict_uses_call_key(self):
        event = LifecycleEvent(
            LifecycleEventType.VOICE_CALL_REQUESTED,
            transaction={"id": "tx-1"},
            voice_approval={"id": "va-1", "status": "ringing"},
        )
        d = event.to_dict()
        assert d["type"] == "voice_call_requested"
        assert d["call"]["id"] == "va-1"
        assert "config" not in d
        assert event.transaction_id == "tx-1"

    def test_to_json(self):
        event = make_event()
        assert json.loads(event.to_json())["transaction"]["id"] == "tx-1"

    def test_config_event_has_no_transaction(self):
        event = LifecycleEvent(LifecycleEventType.CONFIG_UPDATED, config={"version": 2})
        assert event.transaction_id is None
        assert event.to_dict()["config"] == {"version": 2}


class TestEventBus:
    def test_fan_out_in_order(self):
        bus = EventBus()
        first, second = EventRecorder(), EventRecorder()
        bus.subscribe(first)
        bus.subscribe(second)
        events = [make_event(), make_event(LifecycleEventType.TRANSACTION_COMPLETED)]
        for e in events:
            bus.publish(e)
        assert first.events == events
        assert second.events == events

    def test_failing_subscriber_is_isolated(self, caplog):
        bus = EventBus()
        recorder = EventRecorder()

        def broken(event):
            raise RuntimeError("socket closed")

        bus.subscribe(broken)
        bus.subscribe(recorder)
        with caplog.at_level(logging.ERROR, logger="warden.events"):
            bus.publish(make_event())

        assert len(recorder.events) == 1
        assert "failed on transaction_created" in caplog.text

    def test_unsubscribe(self):
        bus = EventBus()
        recorder = EventRecorder()
        unsubscribe = bus.subscribe(recorder)
        bus.publish(make_event())
        unsubscribe()
        unsubscribe()
        bus.publish(make_event())
        assert len(recorder.events) == 1


class TestEventRecorder:
    def test_filters(self):
        recorder = EventRecorder()
        recorder(make_event(tx_id="tx-1"))
        recorder(make_event(LifecycleEventType.TRANSACTION_REJECTED, tx_id="tx-2"))
        assert [e.transaction_id for e in recorder.for_transaction("tx-2")] == ["tx-2"]
        assert len(recorder.of_type(LifecycleEventType.TRANSACTION_CREATED)) == 1
