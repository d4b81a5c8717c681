import pytest

from staybook.errors import ServiceError
from staybook.order_model import HomestayOrderModel
from staybook.order_service import CreateOrderRequest, Homestay, OrderService
from staybook.payment_api import (
    HOMESTAY_PAY_DESCRIPTION,
    RETURN_FAIL,
    RETURN_SUCCESS,
    PaymentApi,
    WxPayRequestParams,
    WxTransaction,
    pay_status_for_wx_trade_state,
)
from staybook.payment_model import (
    PAY_MODE_WECHAT_PAY,
    SERVICE_TYPE_HOMESTAY_ORDER,
    PayStatus,
    ThirdPaymentModel,
)
from staybook.payment_service import PaymentService

DAY = 86400
START = 1_700_000_000


class _Directory:
    def homestay_detail(self, homestay_id):
        return Homestay(id=homestay_id, title="Lake house", homestay_price=12000)


class _Auths:
    def __init__(self, openids):
        self.openids = openids

    def wx_mini_openid(self, user_id):
        return self.openids.get(user_id)


class _Prepay:
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def prepay(self, **kwargs):
        if self.fail:
            raise RuntimeError("gateway down")
        self.calls.append(kwargs)
        return WxPayRequestParams(
            appid="", nonce_str="nonce", pay_sign="sign",
            package="prepay_id=p1", timestamp="1700000000", sign_type="RSA",
        )


@pytest.fixture
def env():
    orders = OrderService(HomestayOrderModel(), _Directory())
    payments = PaymentService(ThirdPaymentModel())
    prepay = _Prepay()
    api = PaymentApi(payments, orders, _Auths({7: "openid-7"}), prepay,
                     app_id="wx-app", mch_id="mch", notify_url="https://pay.example.com/cb")
    return api, orders, payments, prepay


def _book(orders, user_id=7):
    return orders.create_homestay_order(
        CreateOrderRequest(homestay_id=1, live_start_time=START,
                           live_end_time=START + 2 * DAY, user_id=user_id)
    )


@pytest.mark.parametrize(
    "state, expected",
    [
        ("SUCCESS", PayStatus.SUCCESS),
        ("USERPAYING", PayStatus.WAIT),
        ("REFUND", PayStatus.WAIT),
        ("CLOSED", PayStatus.FAIL),
        ("PAYERROR", PayStatus.FAIL),
    ],
)
def test_pay_status_for_wx_trade_state(state, expected):
    assert pay_status_for_wx_trade_state(state) == expected


def test_request_params_wire_keys():
    params = WxPayRequestParams("a", "n", "s", "p", "t", "RSA")
    assert params.to_dict() == {
        "appid": "a", "nonceStr": "n", "paySign": "s",
        "package": "p", "timestamp": "t", "signType": "RSA",
    }


def test_wx_pay_creates_payment_and_prepays(env):
    api, orders, payments, prepay = env
    sn = _book(orders)
    order = orders.homestay_order_detail(sn)

    params = api.wx_pay(7, sn, SERVICE_TYPE_HOMESTAY_ORDER)

    assert params.appid == "wx-app"
    assert params.package == "prepay_id=p1"
    call = prepay.calls[0]
    assert call["total"] == order.order_total_price
    assert call["openid"] == "openid-7"
    assert call["description"] == HOMESTAY_PAY_DESCRIPTION
    payment = payments.get_payment_by_sn(call["out_trade_no"])
    assert payment.order_sn == sn
    assert payment.pay_total == order.order_total_price
    assert payment.pay_mode == PAY_MODE_WECHAT_PAY


def test_wx_pay_unsupported_service_type(env):
    api, orders, _, _ = env
    with pytest.raises(ServiceError):
        api.wx_pay(7, _book(orders), "giftCard")


def test_wx_pay_unknown_order(env):
    api, _, _, prepay = env
    with pytest.raises(ServiceError):
        api.wx_pay(7, "missing", SERVICE_TYPE_HOMESTAY_ORDER)
    assert prepay.calls == []


def test_wx_pay_without_openid(env):
    api, orders, _, prepay = env
    sn = _book(orders, user_id=8)
    with pytest.raises(ServiceError):
        api.wx_pay(8, sn, SERVICE_TYPE_HOMESTAY_ORDER)
    assert prepay.calls == []


def test_wx_pay_prepay_failure():
    orders = OrderService(HomestayOrderModel(), _Directory())
    api = PaymentApi(PaymentService(ThirdPaymentModel()), orders,
                     _Auths({7: "openid-7"}), _Prepay(fail=True), app_id="wx-app")
    with pytest.raises(ServiceError):
        api.wx_pay(7, _book(orders), SERVICE_TYPE_HOMESTAY_ORDER)


def _payment(payments, total=500):
    return payments.create_payment(7, PAY_MODE_WECHAT_PAY, total, "HSO1")


def test_callback_success_updates_payment(env):
    api, _, payments, _ = env
    sn = _payment(payments)
    tx = WxTransaction(out_trade_no=sn, trade_state="SUCCESS", payer_total=500,
                       transaction_id="tx-1", trade_type="JSAPI")
    assert api.wx_pay_callback(tx) == (200, RETURN_SUCCESS)
    payment = payments.get_payment_by_sn(sn)
    assert payment.pay_status == PayStatus.SUCCESS
    assert payment.transaction_id == "tx-1"
    assert payment.trade_type == "JSAPI"


def test_callback_amount_mismatch_fails(env):
    api, _, payments, _ = env
    sn = _payment(payments)
    tx = WxTransaction(out_trade_no=sn, trade_state="SUCCESS", payer_total=499)
    assert api.wx_pay_callback(tx) == (400, RETURN_FAIL)
    assert payments.get_payment_by_sn(sn).pay_status == PayStatus.WAIT


def test_callback_unknown_payment_fails(env):
    api, _, _, _ = env
    tx = WxTransaction(out_trade_no="missing", trade_state="SUCCESS", payer_total=1)
    assert api.wx_pay_callback(tx) == (400, RETURN_FAIL)


def test_callback_repeated_success_is_ignored(env):
    api, _, payments, _ = env
    sn = _payment(payments)
    first = WxTransaction(out_trade_no=sn, trade_state="SUCCESS", payer_total=500,
                          transaction_id="tx-1")
    again = WxTransaction(out_trade_no=sn, trade_state="SUCCESS", payer_total=500,
                          transaction_id="tx-2")
    api.wx_pay_callback(first)
    assert api.wx_pay_callback(again) == (200, RETURN_SUCCESS)
    assert payments.get_payment_by_sn(sn).transaction_id == "tx-1"


def test_callback_user_paying_leaves_payment_waiting(env):
    api, _, payments, _ = env
    sn = _payment(payments)
    tx = WxTransaction(out_trade_no=sn, trade_state="USERPAYING", payer_total=500)
    assert api.wx_pay_callback(tx) == (200, RETURN_SUCCESS)
    assert payments.get_payment_by_sn(sn).pay_status == PayStatus.WAIT