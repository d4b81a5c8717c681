"""Message and delayed-task queues used to pass events between services."""

import heapq
import itertools
import json
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from .errors import ServiceError

PAYMENT_UPDATE_PAYSTATUS_TOPIC = "payment-update-paystatus"
SEND_WX_MINI_TPL_MESSAGE_TOPIC = "send-wx-mini-tpl-message"

TASK_TYPE_HOMESTAY_ORDER_CLOSE = "defer:homestayOrder:close"
HOMESTAY_ORDER_CLOSE_DELAY = 60.0


@dataclass(frozen=True)
class PaymentStatusMessage:
    """Notice that the payment of an order changed state."""

    order_sn: str
    pay_status: int

    def to_json(self) -> str:
        return json.dumps({"orderSn": self.order_sn, "payStatus": self.pay_status})

    @classmethod
    def from_json(cls, text: str) -> "PaymentStatusMessage":
        raw = json.loads(text)
        return cls(order_sn=raw["orderSn"], pay_status=int(raw["payStatus"]))


@dataclass(frozen=True)
class WxMiniSubMessage:
    """A mini-program subscription message to send to one user.

    Each data value is ``value`` or ``value#color``.
    """

    openid: str
    template_id: str
    data: dict[str, str] = field(default_factory=dict)
    page: str = ""

    def to_json(self) -> str:
        return json.dumps(
            {
                "openid": self.openid,
                "templateId": self.template_id,
                "data": self.data,
                "page": self.page,
            },
            ensure_ascii=False,
        )

    @classmethod
    def from_json(cls, text: str) -> "WxMiniSubMessage":
        raw = json.loads(text)
        return cls(
            openid=raw.get("openid", ""),
            template_id=raw.get("templateId", ""),
            data=dict(raw.get("data") or {}),
            page=raw.get("page", ""),
        )


class _Serializable(Protocol):
    def to_json(self) -> str: ...


class MessageBroker:
    """Keeps JSON messages per topic in the order they were pushed."""

    def __init__(self) -> None:
        self._topics: dict[str, list[str]] = defaultdict(list)

    def push(self, topic: str, message: "_Serializable | str") -> None:
        payload = message if isinstance(message, str) else message.to_json()
        self._topics[topic].append(payload)

    def messages(self, topic: str) -> list[str]:
        """Return a copy of the messages pushed to ``topic``."""
        return list(self._topics.get(topic, ()))


class DelayedTaskQueue:
    """Holds tasks until their delay has passed."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._heap: list[tuple[float, int, str, bytes]] = []
        self._counter = itertools.count()

    def enqueue(self, task_type: str, payload: bytes, delay: float) -> int:
        """Schedule a task to become due ``delay`` seconds from now; return its id."""
        task_id = next(self._counter)
        heapq.heappush(self._heap, (self._clock() + delay, task_id, task_type, payload))
        return task_id

    def due(self, now: float | None = None) -> list[tuple[str, bytes]]:
        """Remove and return the tasks due at ``now``, earliest first."""
        if now is None:
            now = self._clock()
        ready = []
        while self._heap and self._heap[0][0] <= now:
            _, _, task_type, payload = heapq.heappop(self._heap)
            ready.append((task_type, payload))
        return ready


class _TaskQueue(Protocol):
    def enqueue(self, task_type: str, payload: bytes, delay: float) -> int: ...


class MqueueService:
    """Publishes service events to the broker and schedules delayed tasks."""

    def __init__(
        self,
        broker: MessageBroker | None = None,
        tasks: _TaskQueue | None = None,
    ) -> None:
        self.broker = broker if broker is not None else MessageBroker()
        self.tasks: _TaskQueue = tasks if tasks is not None else DelayedTaskQueue()

    def defer_homestay_order_close(self, sn: str) -> int:
        """Schedule the close check of an unpaid order one minute from now."""
        payload = json.dumps({"sn": sn}).encode()
        try:
            return self.tasks.enqueue(
                TASK_TYPE_HOMESTAY_ORDER_CLOSE, payload, HOMESTAY_ORDER_CLOSE_DELAY
            )
        except Exception as exc:
            raise ServiceError(
                "failed to add homestay order to delay queue", f"sn:{sn}, err:{exc}"
            ) from exc

    def publish_payment_status(self, order_sn: str, pay_status: int) -> None:
        self.broker.push(
            PAYMENT_UPDATE_PAYSTATUS_TOPIC, PaymentStatusMessage(order_sn, pay_status)
        )

    def send_wx_mini_sub_message(
        self, openid: str, template_id: str, data: dict[str, str], page: str = ""
    ) -> None:
        self.broker.push(
            SEND_WX_MINI_TPL_MESSAGE_TOPIC,
            WxMiniSubMessage(openid, template_id, dict(data), page),
        )