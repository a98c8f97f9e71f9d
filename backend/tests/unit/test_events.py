"""Unit tests for the session event channel."""

from backend.workflow.events import STATE_CHANGED, STEP_FAILED, WILDCARD, WorkflowEventBus


def test_publish_reaches_subscribers_in_order():
    bus = WorkflowEventBus("s1")
    calls = []
    bus.subscribe(STEP_FAILED, lambda e, p: calls.append(("first", p)))
    bus.subscribe(STEP_FAILED, lambda e, p: calls.append(("second", p)))

    delivered = bus.publish(STEP_FAILED, {"step": "extraction"})

    assert delivered == 2
    assert calls == [("first", {"step": "extraction"}), ("second", {"step": "extraction"})]


def test_wildcard_receives_every_event():
    bus = WorkflowEventBus("s1")
    seen = []
    bus.subscribe(WILDCARD, lambda e, p: seen.append(e))

    bus.publish(STATE_CHANGED)
    bus.publish(STEP_FAILED)
    bus.publish(WILDCARD)

    assert seen == [STATE_CHANGED, STEP_FAILED, WILDCARD]


def test_unsubscribe():
    bus = WorkflowEventBus("s1")
    seen = []
    unsubscribe = bus.subscribe(STATE_CHANGED, lambda e, p: seen.append(p))

    bus.publish(STATE_CHANGED, 1)
    unsubscribe()
    unsubscribe()
    bus.publish(STATE_CHANGED, 2)

    assert seen == [1]
    assert bus.subscriber_count(STATE_CHANGED) == 0


def test_failing_handler_does_not_stop_others():
    """Test a raising handler is skipped"""
    bus = WorkflowEventBus("s1")
    seen = []

    def broken(event, payload):
        raise RuntimeError("boom")

    bus.subscribe(STATE_CHANGED, broken)
    bus.subscribe(STATE_CHANGED, lambda e, p: seen.append(p))

    delivered = bus.publish(STATE_CHANGED, "payload")

    assert delivered == 1
    assert seen == ["payload"]


def test_buses_do_not_share_subscribers():
    first = WorkflowEventBus("a")
    second = WorkflowEventBus("b")
    seen = []
    first.subscribe(STATE_CHANGED, lambda e, p: seen.append(p))

    second.publish(STATE_CHANGED, "other session")

    assert seen == []
