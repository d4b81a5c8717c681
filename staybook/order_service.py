"""Homestay order operations: booking, lookup, state changes and listing."""

import secrets
import sqlite3
import string
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from .errors import DbError, NotFoundError, ServiceError
from .order_model import NEED_FOOD_YES, HomestayOrder, HomestayOrderModel, TradeState

SN_PREFIX_HOMESTAY_ORDER = "HSO"
TRADE_CODE_LENGTH = 8
SECONDS_PER_DAY = 86400

_TRADE_CODE_ALPHABET = string.digits + string.ascii_lowercase + string.ascii_uppercase


@dataclass
class Homestay:
    """A homestay offered for booking; prices are in fen."""

    id: int = 0
    title: str = ""
    sub_title: str = ""
    banner: str = ""
    info: str = ""
    people_num: int = 0
    row_type: int = 0
    food_info: str = ""
    food_price: int = 0
    homestay_price: int = 0
    market_homestay_price: int = 0
    homestay_business_id: int = 0
    user_id: int = 0


@dataclass
class CreateOrderRequest:
    """A user's request to book a homestay; times are Unix seconds."""

    homestay_id: int
    live_start_time: int
    live_end_time: int
    user_id: int = 0
    is_food: bool = False
    live_people_num: int = 0
    remark: str = ""


@dataclass(frozen=True)
class TradeStateUpdate:
    """Summary of an order whose trade state was changed; dates are Unix seconds."""

    id: int
    user_id: int
    sn: str
    trade_code: str
    title: str
    live_start_date: int
    live_end_date: int
    order_total_price: int


class HomestayDirectory(Protocol):
    def homestay_detail(self, homestay_id: int) -> Homestay | None: ...


class OrderCloseScheduler(Protocol):
    def defer_homestay_order_close(self, sn: str) -> object: ...


def generate_sn(prefix: str) -> str:
    """Return a new serial number: prefix, UTC timestamp and random digits."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"{prefix}{stamp}{secrets.randbelow(10**8):08d}"


def random_trade_code(length: int) -> str:
    """Return a random code of digits and ASCII letters."""
    return "".join(secrets.choice(_TRADE_CODE_ALPHABET) for _ in range(length))


_REQUIRED_OLD_STATE = {
    TradeState.CANCEL: (TradeState.WAIT_PAY, "only orders awaiting payment can be cancelled"),
    TradeState.WAIT_USE: (TradeState.WAIT_PAY, "only orders awaiting payment can change to this state"),
    TradeState.USED: (TradeState.WAIT_USE, "only unused orders can change to this state"),
    TradeState.REFUND: (TradeState.WAIT_USE, "only unused orders can change to this state"),
    TradeState.EXPIRE: (TradeState.WAIT_USE, "only unused orders can change to this state"),
}


def verify_trade_state_change(new_state: int, old_state: int) -> None:
    """Raise ServiceError if an order may not move from ``old_state`` to ``new_state``."""
    detail = f"newTradeState:{new_state}, oldTradeState:{old_state}"
    if new_state == TradeState.WAIT_PAY:
        raise ServiceError("this state change is not supported", detail)
    rule = _REQUIRED_OLD_STATE.get(new_state)
    if rule is not None:
        required, message = rule
        if old_state != required:
            raise ServiceError(message, detail)


def _unix(value: datetime | None) -> int:
    return int(value.timestamp()) if value is not None else 0


class OrderService:
    """Creates and manages homestay orders stored in a HomestayOrderModel."""

    def __init__(
        self,
        orders: HomestayOrderModel,
        homestays: HomestayDirectory,
        mqueue: OrderCloseScheduler | None = None,
    ) -> None:
        self.orders = orders
        self.homestays = homestays
        self.mqueue = mqueue

    def create_homestay_order(self, request: CreateOrderRequest) -> str:
        """Book a homestay, schedule the unpaid-order close and return the order sn."""
        if request.live_end_time <= request.live_start_time:
            raise ServiceError(
                "must stay at least one night",
                f"live end time must be after start time, request:{request}",
            )
        try:
            homestay = self.homestays.homestay_detail(request.homestay_id)
        except Exception as exc:
            raise ServiceError(
                "failed to query homestay",
                f"homestayId:{request.homestay_id}, err:{exc}",
            ) from exc
        if homestay is None:
            raise ServiceError(
                "homestay does not exist", f"homestayId:{request.homestay_id}"
            )

        cover = homestay.banner.split(",")[0] if homestay.banner else ""
        start = datetime.fromtimestamp(request.live_start_time, timezone.utc)
        end = datetime.fromtimestamp(request.live_end_time, timezone.utc)
        live_days = int((end - start).total_seconds() / SECONDS_PER_DAY)

        order = HomestayOrder(
            sn=generate_sn(SN_PREFIX_HOMESTAY_ORDER),
            user_id=request.user_id,
            homestay_id=request.homestay_id,
            title=homestay.title,
            sub_title=homestay.sub_title,
            cover=cover,
            info=homestay.info,
            people_num=homestay.people_num,
            row_type=homestay.row_type,
            homestay_price=homestay.homestay_price,
            market_homestay_price=homestay.market_homestay_price,
            homestay_business_id=homestay.homestay_business_id,
            homestay_user_id=homestay.user_id,
            live_people_num=request.live_people_num,
            trade_state=TradeState.WAIT_PAY,
            trade_code=random_trade_code(TRADE_CODE_LENGTH),
            remark=request.remark,
            food_info=homestay.food_info,
            food_price=homestay.food_price,
            live_start_date=start,
            live_end_date=end,
            homestay_total_price=homestay.homestay_price * live_days,
        )
        if request.is_food:
            order.need_food = NEED_FOOD_YES
            order.food_total_price = homestay.food_price * request.live_people_num * live_days
        order.order_total_price = order.homestay_total_price + order.food_total_price

        try:
            self.orders.insert(order)
        except sqlite3.Error as exc:
            raise DbError(detail=f"insert order:{order}, err:{exc}") from exc

        if self.mqueue is not None:
            with suppress(Exception):
                self.mqueue.defer_homestay_order_close(order.sn)
        return order.sn

    def homestay_order_detail(self, sn: str) -> HomestayOrder | None:
        """Return the order with ``sn``, or None if there is none."""
        try:
            return self.orders.find_one_by_sn(sn)
        except NotFoundError:
            return None
        except sqlite3.Error as exc:
            raise DbError(detail=f"find order sn:{sn}, err:{exc}") from exc

    def update_trade_state(self, sn: str, trade_state: int) -> TradeStateUpdate | None:
        """Move an order to ``trade_state``.

        Returns None when the order is already in that state.
        """
        try:
            order = self.orders.find_one_by_sn(sn)
        except NotFoundError as exc:
            raise ServiceError("order does not exist", f"sn:{sn}") from exc
        except sqlite3.Error as exc:
            raise DbError(detail=f"find order sn:{sn}, err:{exc}") from exc

        if order.trade_state == trade_state:
            return None

        verify_trade_state_change(trade_state, order.trade_state)

        order.trade_state = trade_state
        try:
            self.orders.update(order)
        except sqlite3.Error as exc:
            raise ServiceError(
                "failed to update order state", f"sn:{sn}, err:{exc}"
            ) from exc

        return TradeStateUpdate(
            id=order.id,
            user_id=order.user_id,
            sn=order.sn,
            trade_code=order.trade_code,
            title=order.title,
            live_start_date=_unix(order.live_start_date),
            live_end_date=_unix(order.live_end_date),
            order_total_price=order.order_total_price,
        )

    def user_order_list(
        self, user_id: int, last_id: int, page_size: int, trade_state: int
    ) -> list[HomestayOrder]:
        """Return one page of a user's orders, newest first."""
        try:
            return self.orders.list_by_user_trade_state(last_id, page_size, user_id, trade_state)
        except NotFoundError:
            return []
        except sqlite3.Error as exc:
            raise DbError(detail=f"list orders userId:{user_id}, err:{exc}") from exc