"""Consumer that turns queued messages into mini-program subscription messages."""

from dataclasses import dataclass, field
from typing import Protocol

from .errors import ServiceError
from .mqueue import WxMiniSubMessage

DEV_MODE = "dev"
STATE_DEVELOPER = "developer"
STATE_FORMAL = "formal"


@dataclass(frozen=True)
class SubscribeDataItem:
    """One templated value of a subscription message, with an optional colour."""

    value: str
    color: str = ""


@dataclass(frozen=True)
class SubscribeMessage:
    """A subscription message ready to hand to the mini-program platform."""

    to_user: str
    template_id: str
    page: str = ""
    data: dict[str, SubscribeDataItem] = field(default_factory=dict)
    miniprogram_state: str = STATE_FORMAL


class SubscribeSender(Protocol):
    def send(self, message: SubscribeMessage) -> object: ...


def _data_item(raw: str) -> SubscribeDataItem:
    parts = raw.split("#")
    if len(parts) == 2:
        return SubscribeDataItem(value=parts[0], color=parts[1])
    return SubscribeDataItem(value=parts[0])


def build_subscribe_message(message: WxMiniSubMessage, mode: str) -> SubscribeMessage:
    """Build the outgoing message; data values of form ``value#color`` carry a colour.

    The development service mode targets the developer build, any other the formal one.
    """
    return SubscribeMessage(
        to_user=message.openid,
        template_id=message.template_id,
        page=message.page,
        data={key: _data_item(raw) for key, raw in message.data.items()},
        miniprogram_state=STATE_DEVELOPER if mode == DEV_MODE else STATE_FORMAL,
    )


class WxMiniSubMessageConsumer:
    """Consumes queued subscription-message requests and sends them."""

    def __init__(self, sender: SubscribeSender, mode: str = "pro") -> None:
        self.sender = sender
        self.mode = mode

    def consume(self, key: str, value: str) -> SubscribeMessage:
        """Decode one queued message, send it and return what was sent."""
        try:
            message = WxMiniSubMessage.from_json(value)
        except (ValueError, AttributeError, TypeError) as exc:
            raise ServiceError(
                "invalid subscription message", f"val:{value}, err:{exc}"
            ) from exc
        outgoing = build_subscribe_message(message, self.mode)
        try:
            self.sender.send(outgoing)
        except Exception as exc:
            raise ServiceError(
                "failed to send mini program subscription message",
                f"msg:{outgoing}, err:{exc}",
            ) from exc
        return outgoing