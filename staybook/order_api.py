"""HTTP-facing homestay order endpoints: booking, listing and order details."""

import dataclasses
import logging
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol

from .errors import ServiceError
from .order_model import HomestayOrder, TradeState
from .order_service import CreateOrderRequest, OrderService
from .payment_model import ThirdPayment

ROUTE_PREFIX = "/order/v1"
ROUTE_CREATE = f"{ROUTE_PREFIX}/homestayOrder/createHomestayOrder"
ROUTE_LIST = f"{ROUTE_PREFIX}/homestayOrder/userHomestayOrderList"
ROUTE_DETAIL = f"{ROUTE_PREFIX}/homestayOrder/userHomestayOrderDetail"

logger = logging.getLogger(__name__)


def fen_to_yuan(fen: int) -> float:
    """Convert an amount in fen to yuan."""
    return float(Decimal(int(fen)) / Decimal(100))


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _unix(value: datetime | None) -> int:
    return int(value.timestamp()) if value is not None else 0


class _JsonView:
    def to_dict(self) -> dict[str, Any]:
        """Return the view with the camelCase keys used on the wire."""
        return {_camel(key): value for key, value in asdict(self).items()}


@dataclass(frozen=True)
class OrderListView(_JsonView):
    """One entry of a user's order list; price in yuan, times in Unix seconds."""

    sn: str
    title: str
    sub_title: str
    homestay_id: int
    cover: str
    order_total_price: float
    create_time: int
    trade_state: int
    live_start_date: int
    live_end_date: int
    trade_code: str


@dataclass(frozen=True)
class OrderDetailView(_JsonView):
    """Full view of one order; prices in yuan, times in Unix seconds."""

    sn: str
    user_id: int
    homestay_id: int
    title: str
    sub_title: str
    cover: str
    info: str
    food_info: str
    food_price: float
    homestay_price: float
    market_homestay_price: float
    homestay_business_id: float
    homestay_user_id: float
    order_total_price: float
    create_time: int
    trade_state: int
    live_start_date: int
    live_end_date: int
    trade_code: str
    food_total_price: float
    homestay_total_price: float
    remark: str
    live_people_num: int
    need_food: int
    pay_time: int = 0
    pay_type: str = ""


class PaymentLookup(Protocol):
    def get_paid_or_refunded_by_order_sn(self, order_sn: str) -> ThirdPayment | None: ...


class _ParamError(ValueError):
    pass


def _int_param(body: Mapping[str, Any], key: str) -> int:
    value = body.get(key, 0)
    if isinstance(value, bool) or not isinstance(value, int):
        raise _ParamError(f"field {key} must be an integer")
    return value


def _str_param(body: Mapping[str, Any], key: str) -> str:
    value = body.get(key, "")
    if not isinstance(value, str):
        raise _ParamError(f"field {key} must be a string")
    return value


def _bool_param(body: Mapping[str, Any], key: str) -> bool:
    value = body.get(key, False)
    if not isinstance(value, bool):
        raise _ParamError(f"field {key} must be a boolean")
    return value


def _list_view(order: HomestayOrder) -> OrderListView:
    return OrderListView(
        sn=order.sn,
        title=order.title,
        sub_title=order.sub_title,
        homestay_id=order.homestay_id,
        cover=order.cover,
        order_total_price=fen_to_yuan(order.order_total_price),
        create_time=_unix(order.create_time),
        trade_state=int(order.trade_state),
        live_start_date=_unix(order.live_start_date),
        live_end_date=_unix(order.live_end_date),
        trade_code=order.trade_code,
    )


def _detail_view(order: HomestayOrder) -> OrderDetailView:
    return OrderDetailView(
        sn=order.sn,
        user_id=order.user_id,
        homestay_id=order.homestay_id,
        title=order.title,
        sub_title=order.sub_title,
        cover=order.cover,
        info=order.info,
        food_info=order.food_info,
        food_price=fen_to_yuan(order.food_price),
        homestay_price=fen_to_yuan(order.homestay_price),
        market_homestay_price=fen_to_yuan(order.market_homestay_price),
        homestay_business_id=float(order.homestay_business_id),
        homestay_user_id=float(order.homestay_user_id),
        order_total_price=fen_to_yuan(order.order_total_price),
        create_time=_unix(order.create_time),
        trade_state=int(order.trade_state),
        live_start_date=_unix(order.live_start_date),
        live_end_date=_unix(order.live_end_date),
        trade_code=order.trade_code,
        food_total_price=fen_to_yuan(order.food_total_price),
        homestay_total_price=fen_to_yuan(order.homestay_total_price),
        remark=order.remark,
        live_people_num=order.live_people_num,
        need_food=order.need_food,
    )


class OrderApi:
    """Order endpoints for signed-in users, backed by the order and payment services."""

    def __init__(
        self, orders: OrderService, payments: PaymentLookup | None = None
    ) -> None:
        self.orders = orders
        self.payments = payments
        self._routes: dict[str, Callable[[int, Mapping[str, Any]], Any]] = {
            ROUTE_CREATE: self._handle_create,
            ROUTE_LIST: self._handle_list,
            ROUTE_DETAIL: self._handle_detail,
        }

    def create_homestay_order(self, user_id: int, request: CreateOrderRequest) -> str:
        """Place an order for ``user_id`` and return its sn."""
        request = dataclasses.replace(request, user_id=user_id)
        try:
            return self.orders.create_homestay_order(request)
        except Exception as exc:
            raise ServiceError(
                "failed to place order", f"req:{request}, err:{exc}"
            ) from exc

    def user_order_list(
        self, user_id: int, last_id: int, page_size: int, trade_state: int
    ) -> list[OrderListView]:
        """Return one page of the user's orders, newest first."""
        try:
            orders = self.orders.user_order_list(user_id, last_id, page_size, trade_state)
        except Exception as exc:
            raise ServiceError(
                "failed to get user order list", f"userId:{user_id}, err:{exc}"
            ) from exc
        return [_list_view(order) for order in orders]

    def user_order_detail(self, user_id: int, sn: str) -> OrderDetailView | None:
        """Return the user's order ``sn`` with its payment, or None if not theirs."""
        try:
            order = self.orders.homestay_order_detail(sn)
        except Exception as exc:
            raise ServiceError(
                "failed to get order detail", f"sn:{sn}, err:{exc}"
            ) from exc
        if order is None or order.user_id != user_id:
            return None

        view = _detail_view(order)
        if view.trade_state not in (TradeState.CANCEL, TradeState.WAIT_PAY) and self.payments:
            try:
                payment = self.payments.get_paid_or_refunded_by_order_sn(order.sn)
            except Exception as exc:
                logger.error("failed to get order payment err:%s, orderSn:%s", exc, order.sn)
                payment = None
            if payment is not None:
                view = dataclasses.replace(
                    view, pay_time=_unix(payment.pay_time), pay_type=payment.pay_mode
                )
        return view

    def _handle_create(self, user_id: int, body: Mapping[str, Any]) -> dict[str, Any]:
        request = CreateOrderRequest(
            homestay_id=_int_param(body, "homestayId"),
            live_start_time=_int_param(body, "liveStartTime"),
            live_end_time=_int_param(body, "liveEndTime"),
            is_food=_bool_param(body, "isFood"),
            live_people_num=_int_param(body, "livePeopleNum"),
            remark=_str_param(body, "remark"),
        )
        return {"orderSn": self.create_homestay_order(user_id, request)}

    def _handle_list(self, user_id: int, body: Mapping[str, Any]) -> dict[str, Any]:
        views = self.user_order_list(
            user_id,
            _int_param(body, "lastId"),
            _int_param(body, "pageSize"),
            _int_param(body, "tradeState"),
        )
        return {"list": [view.to_dict() for view in views]}

    def _handle_detail(self, user_id: int, body: Mapping[str, Any]) -> dict[str, Any] | None:
        view = self.user_order_detail(user_id, _str_param(body, "sn"))
        return view.to_dict() if view is not None else None

    def handle(
        self, path: str, user_id: int, body: Mapping[str, Any] | None = None
    ) -> tuple[int, Any]:
        """Serve a POST to ``path`` with a parsed JSON body; return status and payload."""
        route = self._routes.get(path)
        if route is None:
            return 404, {"msg": f"no route for {path}"}
        if body is not None and not isinstance(body, Mapping):
            return 400, {"msg": "request body must be an object"}
        try:
            data = route(user_id, body or {})
        except _ParamError as exc:
            return 400, {"msg": str(exc)}
        except ServiceError as exc:
            return 400, {"msg": exc.message}
        return 200, data