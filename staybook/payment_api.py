"""HTTP-facing payment endpoints: starting a WeChat payment and its callback."""

import logging
from dataclasses import dataclass, replace
from typing import Any, Protocol

from .errors import ServiceError
from .order_events import UserAuthLookup
from .order_model import HomestayOrder
from .payment_model import PAY_MODE_WECHAT_PAY, SERVICE_TYPE_HOMESTAY_ORDER, PayStatus
from .payment_service import UpdateTradeStateRequest

WX_SUCCESS = "SUCCESS"
WX_REFUND = "REFUND"
WX_NOTPAY = "NOTPAY"
WX_CLOSED = "CLOSED"
WX_REVOKED = "REVOKED"
WX_USERPAYING = "USERPAYING"
WX_PAYERROR = "PAYERROR"

RETURN_SUCCESS = "SUCCESS"
RETURN_FAIL = "FAIL"

HOMESTAY_PAY_DESCRIPTION = "homestay payment"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WxTransaction:
    """A decoded payment notification from WeChat Pay; amounts are in fen."""

    out_trade_no: str
    trade_state: str
    payer_total: int
    transaction_id: str = ""
    trade_type: str = ""
    trade_state_desc: str = ""


@dataclass(frozen=True)
class WxPayRequestParams:
    """Parameters the mini-program client needs to open the payment sheet."""

    appid: str
    nonce_str: str
    pay_sign: str
    package: str
    timestamp: str
    sign_type: str

    def to_dict(self) -> dict[str, str]:
        return {
            "appid": self.appid,
            "nonceStr": self.nonce_str,
            "paySign": self.pay_sign,
            "package": self.package,
            "timestamp": self.timestamp,
            "signType": self.sign_type,
        }


class WxPrepayClient(Protocol):
    def prepay(
        self,
        *,
        appid: str,
        mchid: str,
        description: str,
        out_trade_no: str,
        attach: str,
        notify_url: str,
        total: int,
        openid: str,
    ) -> WxPayRequestParams: ...


class PaymentOperations(Protocol):
    def create_payment(self, user_id: int, pay_mode: str, pay_total: int, order_sn: str) -> str: ...

    def get_payment_by_sn(self, sn: str) -> Any: ...

    def update_trade_state(self, request: UpdateTradeStateRequest) -> bool: ...


class OrderLookup(Protocol):
    def homestay_order_detail(self, sn: str) -> HomestayOrder | None: ...


def pay_status_for_wx_trade_state(state: str) -> PayStatus:
    """Map a WeChat Pay trade state to the platform's payment status."""
    if state == WX_SUCCESS:
        return PayStatus.SUCCESS
    if state in (WX_USERPAYING, WX_REFUND):
        return PayStatus.WAIT
    return PayStatus.FAIL


class PaymentApi:
    """Starts WeChat payments for orders and applies WeChat's notifications."""

    def __init__(
        self,
        payments: PaymentOperations,
        orders: OrderLookup,
        user_auths: UserAuthLookup,
        prepay_client: WxPrepayClient,
        app_id: str,
        mch_id: str = "",
        notify_url: str = "",
    ) -> None:
        self.payments = payments
        self.orders = orders
        self.user_auths = user_auths
        self.prepay_client = prepay_client
        self.app_id = app_id
        self.mch_id = mch_id
        self.notify_url = notify_url

    def wx_pay(self, user_id: int, order_sn: str, service_type: str) -> WxPayRequestParams:
        """Record a payment for the order and return what the client needs to pay."""
        if service_type != SERVICE_TYPE_HOMESTAY_ORDER:
            raise ServiceError(
                "payment for this service type is not supported",
                f"serviceType:{service_type}, orderSn:{order_sn}",
            )
        total, description = self._homestay_price_description(order_sn)
        params = self._create_prepay_order(user_id, order_sn, total, description)
        return replace(params, appid=self.app_id)

    def _homestay_price_description(self, order_sn: str) -> tuple[int, str]:
        try:
            order = self.orders.homestay_order_detail(order_sn)
        except Exception as exc:
            raise ServiceError(
                "wechat pay failed", f"order detail orderSn:{order_sn}, err:{exc}"
            ) from exc
        if order is None or order.id == 0:
            raise ServiceError("order does not exist", f"orderSn:{order_sn}")
        return order.order_total_price, HOMESTAY_PAY_DESCRIPTION

    def _create_prepay_order(
        self, user_id: int, order_sn: str, total: int, description: str
    ) -> WxPayRequestParams:
        try:
            openid = self.user_auths.wx_mini_openid(user_id)
        except Exception as exc:
            raise ServiceError(
                "wechat pay failed", f"openid userId:{user_id}, orderSn:{order_sn}, err:{exc}"
            ) from exc
        if not openid:
            raise ServiceError(
                "failed to get openid, please authorise with WeChat before paying",
                f"userId:{user_id}, orderSn:{order_sn}",
            )

        try:
            payment_sn = self.payments.create_payment(
                user_id, PAY_MODE_WECHAT_PAY, total, order_sn
            )
        except Exception as exc:
            raise ServiceError(
                "wechat pay failed",
                f"create payment userId:{user_id}, total:{total}, orderSn:{order_sn}, err:{exc}",
            ) from exc
        if not payment_sn:
            raise ServiceError("wechat pay failed", f"empty payment sn orderSn:{order_sn}")

        try:
            return self.prepay_client.prepay(
                appid=self.app_id,
                mchid=self.mch_id,
                description=description,
                out_trade_no=payment_sn,
                attach=description,
                notify_url=self.notify_url,
                total=total,
                openid=openid,
            )
        except Exception as exc:
            raise ServiceError(
                "wechat pay failed",
                f"prepay userId:{user_id}, orderSn:{order_sn}, err:{exc}",
            ) from exc

    def wx_pay_callback(self, transaction: WxTransaction) -> tuple[int, str]:
        """Apply a payment notification; return the HTTP status and return code."""
        try:
            self._verify_and_update(transaction)
        except ServiceError as exc:
            logger.error("wechat pay callback err:%s", exc)
            return 400, RETURN_FAIL
        return 200, RETURN_SUCCESS

    def _verify_and_update(self, transaction: WxTransaction) -> None:
        try:
            payment = self.payments.get_payment_by_sn(transaction.out_trade_no)
        except Exception as exc:
            raise ServiceError(
                "wechat pay callback failed", f"get payment err:{exc}, tx:{transaction}"
            ) from exc
        if payment is None or payment.id == 0:
            raise ServiceError("wechat pay callback failed", f"no payment for tx:{transaction}")

        if payment.pay_total != transaction.payer_total:
            raise ServiceError(
                "wechat pay callback failed",
                f"amount mismatch payerTotal:{transaction.payer_total}, tx:{transaction}",
            )

        pay_status = pay_status_for_wx_trade_state(transaction.trade_state)
        if pay_status != PayStatus.SUCCESS:
            return
        if payment.pay_status != PayStatus.WAIT:
            return
        try:
            self.payments.update_trade_state(
                UpdateTradeStateRequest(
                    sn=transaction.out_trade_no,
                    pay_status=pay_status,
                    trade_state=transaction.trade_state,
                    transaction_id=transaction.transaction_id,
                    trade_type=transaction.trade_type,
                    trade_state_desc=transaction.trade_state_desc,
                )
            )
        except Exception as exc:
            raise ServiceError(
                "wechat pay callback failed", f"update state err:{exc}, tx:{transaction}"
            ) from exc