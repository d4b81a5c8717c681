"""Payment record operations: creation, lookup and trade state changes."""

import sqlite3
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from .errors import DbError, NotFoundError, ServiceError
from .order_service import generate_sn
from .payment_model import (
    SERVICE_TYPE_HOMESTAY_ORDER,
    PayStatus,
    ThirdPayment,
    ThirdPaymentModel,
)

SN_PREFIX_THIRD_PAYMENT = "PMT"


@dataclass
class UpdateTradeStateRequest:
    """A provider's report on a payment; ``pay_time`` is in Unix seconds."""

    sn: str
    pay_status: int
    trade_state: str = ""
    transaction_id: str = ""
    trade_type: str = ""
    trade_state_desc: str = ""
    pay_time: int = 0


class PaymentStatusPublisher(Protocol):
    def publish_payment_status(self, order_sn: str, pay_status: int) -> object: ...


class PaymentService:
    """Creates payment records and applies state changes reported by providers."""

    def __init__(
        self,
        payments: ThirdPaymentModel,
        mqueue: PaymentStatusPublisher | None = None,
    ) -> None:
        self.payments = payments
        self.mqueue = mqueue

    def create_payment(
        self, user_id: int, pay_mode: str, pay_total: int, order_sn: str
    ) -> str:
        """Record a new payment awaiting completion and return its sn."""
        data = ThirdPayment(
            sn=generate_sn(SN_PREFIX_THIRD_PAYMENT),
            user_id=user_id,
            pay_mode=pay_mode,
            pay_total=pay_total,
            order_sn=order_sn,
            service_type=SERVICE_TYPE_HOMESTAY_ORDER,
        )
        try:
            self.payments.insert(data)
        except sqlite3.Error as exc:
            raise DbError(detail=f"create payment data:{data}, err:{exc}") from exc
        return data.sn

    def get_payment_by_sn(self, sn: str) -> ThirdPayment | None:
        """Return the payment with ``sn``, or None if there is none."""
        try:
            return self.payments.find_one_by_sn(sn)
        except NotFoundError:
            return None
        except sqlite3.Error as exc:
            raise DbError(detail=f"find payment sn:{sn}, err:{exc}") from exc

    def get_paid_or_refunded_by_order_sn(self, order_sn: str) -> ThirdPayment | None:
        """Return the succeeded or refunded payment of an order, or None."""
        try:
            return self.payments.find_one_paid_or_refunded_by_order_sn(order_sn)
        except NotFoundError:
            return None
        except sqlite3.Error as exc:
            raise ServiceError(
                "failed to get payment", f"orderSn:{order_sn}, err:{exc}"
            ) from exc

    def update_trade_state(self, request: UpdateTradeStateRequest) -> bool:
        """Apply a reported state to a payment and notify other services.

        Returns False when the report is ignored because the payment has
        already left the waiting state.
        """
        try:
            payment = self.payments.find_one_by_sn(request.sn)
        except NotFoundError as exc:
            raise ServiceError(
                "payment record does not exist", f"sn:{request.sn}"
            ) from exc
        except sqlite3.Error as exc:
            raise DbError(detail=f"find payment sn:{request.sn}, err:{exc}") from exc

        if request.pay_status in (PayStatus.SUCCESS, PayStatus.FAIL):
            if payment.pay_status != PayStatus.WAIT:
                return False
        elif request.pay_status == PayStatus.REFUND:
            if payment.pay_status != PayStatus.SUCCESS:
                raise ServiceError(
                    "only successful payments can be refunded", f"request:{request}"
                )
        else:
            raise ServiceError("this state is not supported", f"request:{request}")

        payment.trade_state = request.trade_state
        payment.transaction_id = request.transaction_id
        payment.trade_type = request.trade_type
        payment.trade_state_desc = request.trade_state_desc
        payment.pay_status = request.pay_status
        payment.pay_time = datetime.fromtimestamp(request.pay_time, timezone.utc)
        try:
            self.payments.update(payment)
        except sqlite3.Error as exc:
            raise DbError(detail=f"update payment state err:{exc}") from exc

        if self.mqueue is not None:
            with suppress(Exception):
                self.mqueue.publish_payment_status(payment.order_sn, request.pay_status)
        return True