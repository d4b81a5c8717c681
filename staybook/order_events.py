"""Consumers that react to delayed order tasks and to payment status events."""

import json
import logging
from datetime import datetime, timezone
from typing import Protocol

from .errors import ServiceError
from .mqueue import PaymentStatusMessage
from .order_api import fen_to_yuan
from .order_model import HomestayOrder, TradeState
from .order_service import TradeStateUpdate
from .payment_model import PayStatus

ORDER_PAY_SUCCESS_TEMPLATE_ID = "orderPaySuccess"
ORDER_PAY_SUCCESS_LIVE_KNOW_TEMPLATE_ID = "orderPaySuccessLiveKnow"
LIVE_KNOW_REMARK = "Please show the check-in code to the host to check in"

logger = logging.getLogger(__name__)


class OrderOperations(Protocol):
    def homestay_order_detail(self, sn: str) -> HomestayOrder | None: ...

    def update_trade_state(self, sn: str, trade_state: int) -> TradeStateUpdate | None: ...


class UserAuthLookup(Protocol):
    def wx_mini_openid(self, user_id: int) -> str | None: ...


class SubMessageSender(Protocol):
    def send_wx_mini_sub_message(
        self, openid: str, template_id: str, data: dict[str, str], page: str = ""
    ) -> object: ...


def order_state_for_pay_status(pay_status: int) -> TradeState | None:
    """Return the order state a payment status leads to, or None if it leads nowhere."""
    if pay_status == PayStatus.SUCCESS:
        return TradeState.WAIT_USE
    if pay_status == PayStatus.REFUND:
        return TradeState.REFUND
    return None


def _date(unix_seconds: int) -> str:
    return datetime.fromtimestamp(unix_seconds, timezone.utc).strftime("%Y-%m-%d")


class OrderCloseHandler:
    """Cancels an order whose close task came due while it was still unpaid."""

    def __init__(self, orders: OrderOperations) -> None:
        self.orders = orders

    def handle(self, payload: bytes | str) -> bool:
        """Process one close task; return True if the order was cancelled."""
        try:
            sn = json.loads(payload)["sn"]
        except (ValueError, TypeError, KeyError) as exc:
            raise ServiceError(
                "invalid task payload", f"payload:{payload!r}, err:{exc}"
            ) from exc
        if not isinstance(sn, str):
            raise ServiceError("invalid task payload", f"payload:{payload!r}")

        try:
            order = self.orders.homestay_order_detail(sn)
        except Exception as exc:
            raise ServiceError("failed to get order", f"sn:{sn}, err:{exc}") from exc
        if order is None:
            raise ServiceError("failed to get order", f"order does not exist sn:{sn}")

        if order.trade_state != TradeState.WAIT_PAY:
            return False
        try:
            self.orders.update_trade_state(sn, TradeState.CANCEL)
        except Exception as exc:
            raise ServiceError("failed to close order", f"sn:{sn}, err:{exc}") from exc
        return True


class PaymentStatusConsumer:
    """Applies payment status changes to orders and notifies the paying user."""

    def __init__(
        self,
        orders: OrderOperations,
        messages: SubMessageSender,
        user_auths: UserAuthLookup,
        pay_success_template_id: str = ORDER_PAY_SUCCESS_TEMPLATE_ID,
        live_know_template_id: str = ORDER_PAY_SUCCESS_LIVE_KNOW_TEMPLATE_ID,
    ) -> None:
        self.orders = orders
        self.messages = messages
        self.user_auths = user_auths
        self.pay_success_template_id = pay_success_template_id
        self.live_know_template_id = live_know_template_id

    def consume(self, key: str, value: str) -> TradeStateUpdate | None:
        """Handle one queued payment status message.

        Returns the order update, or None when nothing about the order changed.
        """
        try:
            message = PaymentStatusMessage.from_json(value)
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("payment status message unmarshal err:%s, val:%s", exc, value)
            raise ServiceError(
                "invalid payment status message", f"val:{value}, err:{exc}"
            ) from exc

        state = order_state_for_pay_status(message.pay_status)
        if state is None:
            return None
        try:
            update = self.orders.update_trade_state(message.order_sn, state)
        except Exception as exc:
            raise ServiceError(
                "failed to update order state", f"message:{message}, err:{exc}"
            ) from exc
        if update is not None:
            self._notify_user(update)
        return update

    def _notify_user(self, update: TradeStateUpdate) -> None:
        try:
            openid = self.user_auths.wx_mini_openid(update.user_id)
        except Exception as exc:
            logger.error(
                "notify user lookup err:%s, sn:%s, userId:%d", exc, update.sn, update.user_id
            )
            return
        if not openid:
            logger.error(
                "no mini program openid stored, sn:%s, userId:%d", update.sn, update.user_id
            )
            return

        start = _date(update.live_start_date)
        end = _date(update.live_end_date)
        notices = (
            (
                self.pay_success_template_id,
                {
                    "sn": update.sn,
                    "goodsName": update.title,
                    "payTotal": f"{fen_to_yuan(update.order_total_price):.2f}",
                    "liveStartDate": start,
                    "liveEndDate": end,
                },
            ),
            (
                self.live_know_template_id,
                {
                    "liveStartDate": start,
                    "liveEndDate": end,
                    "tradeCode": update.trade_code,
                    "remark": LIVE_KNOW_REMARK,
                },
            ),
        )
        for template_id, data in notices:
            try:
                self.messages.send_wx_mini_sub_message(openid, template_id, data)
            except Exception as exc:
                logger.error(
                    "failed to send subscription message template:%s data:%s err:%s",
                    template_id, data, exc,
                )