import json

import pytest

from staybook.errors import ServiceError
from staybook.mqueue import (
    HOMESTAY_ORDER_CLOSE_DELAY,
    PAYMENT_UPDATE_PAYSTATUS_TOPIC,
    SEND_WX_MINI_TPL_MESSAGE_TOPIC,
    TASK_TYPE_HOMESTAY_ORDER_CLOSE,
    DelayedTaskQueue,
    MessageBroker,
    MqueueService,
    PaymentStatusMessage,
    WxMiniSubMessage,
)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class FailingQueue:
    def enqueue(self, task_type, payload, delay):
        raise RuntimeError("redis down")


def test_publish_payment_status_round_trip():
    broker = MessageBroker()
    service = MqueueService(broker)
    service.publish_payment_status("HSO1", 1)
    messages = broker.messages(PAYMENT_UPDATE_PAYSTATUS_TOPIC)
    assert len(messages) == 1
    assert PaymentStatusMessage.from_json(messages[0]) == PaymentStatusMessage("HSO1", 1)


def test_send_wx_mini_sub_message_round_trip():
    broker = MessageBroker()
    service = MqueueService(broker)
    data = {"thing1": "room#173177", "amount2": "100.00"}
    service.send_wx_mini_sub_message("openid-1", "tpl-1", data, "pages/index")
    [raw] = broker.messages(SEND_WX_MINI_TPL_MESSAGE_TOPIC)
    assert WxMiniSubMessage.from_json(raw) == WxMiniSubMessage(
        "openid-1", "tpl-1", data, "pages/index"
    )


def test_broker_keeps_push_order_per_topic():
    broker = MessageBroker()
    broker.push("a", "first")
    broker.push("b", "other")
    broker.push("a", "second")
    assert broker.messages("a") == ["first", "second"]
    assert broker.messages("b") == ["other"]


def test_broker_unknown_topic_is_empty_and_copy_is_detached():
    broker = MessageBroker()
    assert broker.messages("none") == []
    broker.push("a", "x")
    copy = broker.messages("a")
    copy.append("y")
    assert broker.messages("a") == ["x"]


def test_defer_close_becomes_due_after_a_minute():
    clock = FakeClock()
    tasks = DelayedTaskQueue(clock)
    service = MqueueService(MessageBroker(), tasks)
    service.defer_homestay_order_close("HSO9")
    assert tasks.due(clock.now + HOMESTAY_ORDER_CLOSE_DELAY - 1) == []
    due = tasks.due(clock.now + HOMESTAY_ORDER_CLOSE_DELAY)
    assert len(due) == 1
    task_type, payload = due[0]
    assert task_type == TASK_TYPE_HOMESTAY_ORDER_CLOSE
    assert json.loads(payload) == {"sn": "HSO9"}
    assert tasks.due(clock.now + 10 * HOMESTAY_ORDER_CLOSE_DELAY) == []


def test_due_returns_earliest_first_and_uses_clock_by_default():
    clock = FakeClock()
    tasks = DelayedTaskQueue(clock)
    tasks.enqueue("late", b"2", 20)
    tasks.enqueue("early", b"1", 5)
    assert tasks.due() == []
    clock.now += 30
    assert [t for t, _ in tasks.due()] == ["early", "late"]


def test_enqueue_returns_distinct_ids():
    tasks = DelayedTaskQueue(FakeClock())
    ids = {tasks.enqueue("t", b"", 1) for _ in range(3)}
    assert len(ids) == 3


def test_defer_close_failure_raises_service_error():
    service = MqueueService(MessageBroker(), FailingQueue())
    with pytest.raises(ServiceError):
        service.defer_homestay_order_close("HSO10")


def test_wx_message_from_json_fills_missing_fields():
    message = WxMiniSubMessage.from_json('{"openid": "o", "templateId": "t"}')
    assert message == WxMiniSubMessage("o", "t", {}, "")