import pytest

from staybook.errors import ServiceError
from staybook.mqueue import WxMiniSubMessage
from staybook.wx_message import (
    SubscribeDataItem,
    WxMiniSubMessageConsumer,
    build_subscribe_message,
)


class _Sender:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def send(self, message):
        if self.fail:
            raise RuntimeError("boom")
        self.sent.append(message)


def _message(data=None):
    return WxMiniSubMessage(
        openid="open-1", template_id="tpl-1", data=data or {}, page="pages/order"
    )


def test_data_with_color_is_split():
    built = build_subscribe_message(_message({"thing1": "hello#red"}), "pro")
    assert built.data["thing1"] == SubscribeDataItem(value="hello", color="red")


def test_data_without_color():
    built = build_subscribe_message(_message({"thing2": "plain"}), "pro")
    assert built.data["thing2"] == SubscribeDataItem(value="plain")


def test_data_with_many_hashes_keeps_first_part():
    built = build_subscribe_message(_message({"x": "a#b#c"}), "pro")
    assert built.data["x"] == SubscribeDataItem(value="a", color="")


def test_fields_copied():
    built = build_subscribe_message(_message(), "pro")
    assert built.to_user == "open-1"
    assert built.template_id == "tpl-1"
    assert built.page == "pages/order"
    assert built.data == {}


@pytest.mark.parametrize(
    "mode, state", [("dev", "developer"), ("test", "formal"), ("pro", "formal")]
)
def test_miniprogram_state_by_mode(mode, state):
    assert build_subscribe_message(_message(), mode).miniprogram_state == state


def test_consume_sends_message():
    sender = _Sender()
    consumer = WxMiniSubMessageConsumer(sender, mode="dev")
    sent = consumer.consume("", _message({"k": "v#blue"}).to_json())
    assert sender.sent == [sent]
    assert sent.data["k"].color == "blue"
    assert sent.miniprogram_state == "developer"


def test_consume_invalid_json():
    consumer = WxMiniSubMessageConsumer(_Sender())
    with pytest.raises(ServiceError) as info:
        consumer.consume("", "{not json")
    assert info.value.message == "invalid subscription message"


def test_consume_send_failure():
    consumer = WxMiniSubMessageConsumer(_Sender(fail=True))
    with pytest.raises(ServiceError) as info:
        consumer.consume("", _message().to_json())
    assert info.value.message == "failed to send mini program subscription message"