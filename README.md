# staybook

The back end of a homestay booking service. It is built from plain Python
objects that you put together in one process. You can also wire them to a
transport of your own.

## Modules

- `staybook.errors`: `ServiceError` and its subclasses `NotFoundError`,
  `DbError` and `TokenExpiredError`. `ServiceError.message` is safe to show
  to a caller. `ServiceError.detail` holds extra context for logs.
- `staybook.order_model`: the `HomestayOrder` dataclass, the `TradeState`
  enum and `HomestayOrderModel`.
  - `HomestayOrderModel` stores orders in SQLite. By default it uses an
    in-memory database.
  - Lookups by id and by sn are cached in a mapping you can pass in.
  - `delete` only marks a row as deleted, and a deleted row then reads as
    `NotFoundError`.
  - `transaction()` is a context manager that commits when the block ends and
    rolls back if the block raises.
- `staybook.payment_model`: the `ThirdPayment` dataclass, the `PayStatus`
  enum and `ThirdPaymentModel`. It works like the order model, with one
  difference: `update` uses optimistic locking on `version`, so a stale record
  changes no rows.
- `staybook.order_service`: `OrderService` and helper functions.
  - `create_homestay_order` does the following:
    - It needs at least one night.
    - It fetches the `Homestay` from a directory you supply.
    - It prices the stay by nights, plus food per person per night when asked.
    - It schedules the close of an unpaid order.
  - `homestay_order_detail`, `update_trade_state` and `user_order_list` are
    the other operations.
  - The helpers are `generate_sn`, `random_trade_code` and
    `verify_trade_state_change`.
- `staybook.payment_service`: `PaymentService`. It creates payment records,
  looks them up, and applies an `UpdateTradeStateRequest`. When a change is
  applied, it publishes the new payment status.
- `staybook.identity`: `IdentityService` issues HS256 JWTs and keeps one
  current token per user in a token store. `MemoryTokenStore` is the default
  store and has per-key expiry. The store key is `user_token_key(user_id)`.
  - `validate_token` raises `TokenExpiredError` unless the token is the
    user's current one.
  - `clear_token` revokes the current token.
- `staybook.auth_gateway`: `TokenVerifier` is the check a gateway runs before
  it forwards a request.
  - It reads the `Authorization` and `X-Original-Uri` headers.
  - Paths in `no_auth_urls` may be reached without a token. A token that is
    sent anyway must still be valid.
  - `handle` returns a status, response headers with `x-user`, and a JSON
    body. The status is 401 when the request is refused.
- `staybook.mqueue`: the message types `PaymentStatusMessage` and
  `WxMiniSubMessage`.
  - `MessageBroker` keeps JSON messages per topic, in order.
  - `DelayedTaskQueue` releases tasks once their delay has passed.
  - `MqueueService` ties them together. `defer_homestay_order_close` is due
    after 60 seconds.
- `staybook.order_api`: `OrderApi` builds the user-facing views
  `OrderListView` and `OrderDetailView`. Prices are converted to yuan with
  `fen_to_yuan`.
  - `OrderApi.handle(path, user_id, body)` serves three routes:
    - `/order/v1/homestayOrder/createHomestayOrder`
    - `/order/v1/homestayOrder/userHomestayOrderList`
    - `/order/v1/homestayOrder/userHomestayOrderDetail`
  - It returns a status and a payload.
- `staybook.wx_message`: `WxMiniSubMessageConsumer` decodes a queued
  subscription message and hands it to a sender you supply.
  - `build_subscribe_message` builds a `SubscribeMessage`.
  - Data values of the form `value#color` become a `SubscribeDataItem` with a
    colour.
- `staybook.order_events`:
  - `OrderCloseHandler` cancels an order whose close task comes due while the
    order is still unpaid.
  - `PaymentStatusConsumer` moves orders to a new state using
    `order_state_for_pay_status`, then sends two subscription messages to the
    paying user.
- `staybook.payment_api`: `PaymentApi.wx_pay` records a payment and asks a
  prepay client you supply for `WxPayRequestParams`.
  - `wx_pay_callback` takes a decoded `WxTransaction` and checks the amount.
  - A payment still waiting is marked as paid, using
    `pay_status_for_wx_trade_state`.
  - It returns `(200, "SUCCESS")` or `(400, "FAIL")`.

## Install

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Example

```python
from staybook.mqueue import MqueueService
from staybook.order_model import HomestayOrderModel
from staybook.order_service import CreateOrderRequest, Homestay, OrderService


class Directory:
    def homestay_detail(self, homestay_id):
        return Homestay(id=homestay_id, title="Lakeside room", homestay_price=29900)


service = OrderService(HomestayOrderModel(), Directory(), MqueueService())
sn = service.create_homestay_order(
    CreateOrderRequest(
        homestay_id=1,
        live_start_time=1_700_000_000,
        live_end_time=1_700_172_800,
        user_id=7,
    )
)
order = service.homestay_order_detail(sn)
print(order.homestay_total_price)  # 59800: two nights at 29900 fen
```

## Order trade states

| `TradeState` | value | meaning          |
|--------------|-------|------------------|
| CANCEL       | -1    | cancelled        |
| WAIT_PAY     | 0     | awaiting payment |
| WAIT_USE     | 1     | paid, not used   |
| USED         | 2     | used             |
| REFUND       | 3     | refunded         |
| EXPIRE       | 4     | expired          |

`verify_trade_state_change` enforces these rules:

- An order can move to CANCEL or WAIT_USE only from WAIT_PAY.
- It can move to USED, REFUND or EXPIRE only from WAIT_USE.
- It can never move to WAIT_PAY.

Asking `update_trade_state` for the state the order already has changes
nothing and returns `None`.

## Payment statuses

| `PayStatus` | value | meaning          |
|-------------|-------|------------------|
| FAIL        | -1    | payment failed   |
| WAIT        | 0     | awaiting payment |
| SUCCESS     | 1     | paid             |
| REFUND      | 2     | refunded         |

`PaymentService.update_trade_state` applies these rules:

- A SUCCESS or FAIL report is applied only to a payment that is still in
  WAIT. Otherwise the report is ignored and the method returns `False`.
- A REFUND report needs a payment in SUCCESS.
- Any other status raises `ServiceError`.

## What this package does not do

- It has no command line and runs no server. `OrderApi.handle` and
  `TokenVerifier.handle` take request data you have already parsed, and they
  return a status and a payload for you to send.
- Storage is SQLite through the standard library. There is no other database
  driver, and no external cache: the cache is an ordinary mapping.
- The message broker, the delayed-task queue and the token store are kept in
  memory. They do not talk to Kafka, Redis or any other external service.
- It does not call WeChat Pay or the mini-program platform. You supply the
  prepay client and the subscription-message sender.
- It does not check the signature of a payment notification or decrypt it.
  `wx_pay_callback` expects a `WxTransaction` that has already been verified.
- Homestay details and users' mini-program openids come from objects you
  supply. The package does not store them.