"""Storage of third-party payment records with a read-through cache."""

import dataclasses
import sqlite3
from collections.abc import Iterator, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any

from .errors import NotFoundError

DEL_STATE_NO = 0
DEL_STATE_YES = 1

SERVICE_TYPE_HOMESTAY_ORDER = "homestayOrder"
PAY_MODE_WECHAT_PAY = "WECHAT_PAY"

CACHE_ID_PREFIX = "cache:payment:thirdPayment:id:"
CACHE_SN_PREFIX = "cache:payment:thirdPayment:sn:"

TABLE = "third_payment"


class PayStatus(IntEnum):
    """Platform-side state of a payment."""

    FAIL = -1
    WAIT = 0
    SUCCESS = 1
    REFUND = 2


@dataclass
class ThirdPayment:
    """One payment made through an external provider; amounts are in fen."""

    id: int = 0
    sn: str = ""
    create_time: datetime | None = None
    update_time: datetime | None = None
    delete_time: datetime | None = None
    del_state: int = DEL_STATE_NO
    version: int = 0
    user_id: int = 0
    pay_mode: str = ""
    trade_type: str = ""
    trade_state: str = ""
    pay_total: int = 0
    transaction_id: str = ""
    trade_state_desc: str = ""
    order_sn: str = ""
    service_type: str = ""
    pay_status: int = PayStatus.WAIT
    pay_time: datetime | None = None


_FIELDS = tuple(f.name for f in fields(ThirdPayment))
_TIME_FIELDS = frozenset({"create_time", "update_time", "delete_time", "pay_time"})
_INSERT_FIELDS = (
    "sn", "user_id", "pay_mode", "pay_total", "transaction_id", "order_sn", "service_type",
)
_UPDATE_FIELDS = tuple(
    name for name in _FIELDS if name not in {"id", "create_time", "update_time", "version"}
)
_ROWS = ",".join(_FIELDS)


def _column_sql(field: dataclasses.Field) -> str:
    name = field.name
    if name == "id":
        return "id INTEGER PRIMARY KEY AUTOINCREMENT"
    if name in _TIME_FIELDS:
        return f"{name} TEXT"
    if name == "sn":
        return "sn TEXT NOT NULL UNIQUE"
    if isinstance(field.default, int):
        return f"{name} INTEGER NOT NULL DEFAULT {int(field.default)}"
    return f"{name} TEXT NOT NULL DEFAULT ''"


_SCHEMA = (
    f"CREATE TABLE IF NOT EXISTS {TABLE} ("
    + ", ".join(_column_sql(f) for f in fields(ThirdPayment))
    + ")"
)


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, int):
        return int(value)
    return value


def _from_row(columns: list[str], row: tuple) -> ThirdPayment:
    values = {
        name: (datetime.fromisoformat(value) if name in _TIME_FIELDS and value else value)
        for name, value in zip(columns, row)
    }
    return ThirdPayment(**values)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ThirdPaymentModel:
    """Reads and writes payment records in a SQLite database.

    Updates use optimistic locking on ``version``: a stale record changes nothing.
    Deleted records read as not found.
    """

    def __init__(
        self,
        conn: sqlite3.Connection | None = None,
        cache: MutableMapping[str, Any] | None = None,
    ) -> None:
        self._conn = conn if conn is not None else sqlite3.connect(":memory:")
        self.cache: MutableMapping[str, Any] = cache if cache is not None else {}
        self._conn.execute(_SCHEMA)
        self._conn.commit()

    def _execute(self, sql: str, params: list, session: sqlite3.Connection | None):
        if session is not None:
            return session.execute(sql, params)
        cursor = self._conn.execute(sql, params)
        self._conn.commit()
        return cursor

    def _query_one(self, sql: str, params: tuple) -> ThirdPayment | None:
        cursor = self._conn.execute(sql, params)
        row = cursor.fetchone()
        if row is None:
            return None
        return _from_row([d[0] for d in cursor.description], row)

    @staticmethod
    def _id_key(payment_id: Any) -> str:
        return f"{CACHE_ID_PREFIX}{payment_id}"

    def _drop_cache(self, data: ThirdPayment) -> None:
        self.cache.pop(self._id_key(data.id), None)
        self.cache.pop(f"{CACHE_SN_PREFIX}{data.sn}", None)

    def _load_by_id(self, payment_id: int) -> ThirdPayment:
        key = self._id_key(payment_id)
        cached = self.cache.get(key)
        if cached is None:
            cached = self._query_one(
                f"SELECT {_ROWS} FROM {TABLE} WHERE id = ? LIMIT 1", (payment_id,)
            )
            if cached is None:
                raise NotFoundError(detail=f"payment id {payment_id}")
            self.cache[key] = cached
        return dataclasses.replace(cached)

    def find_one_paid_or_refunded_by_order_sn(self, order_sn: str) -> ThirdPayment:
        """Return the payment of an order that succeeded or was refunded."""
        payment = self._query_one(
            f"SELECT {_ROWS} FROM {TABLE} WHERE order_sn = ? "
            "AND (pay_status = ? OR pay_status = ?) LIMIT 1",
            (order_sn, int(PayStatus.SUCCESS), int(PayStatus.REFUND)),
        )
        if payment is None or payment.del_state == DEL_STATE_YES:
            raise NotFoundError(detail=f"paid payment for order {order_sn}")
        return payment

    def find_one(self, payment_id: int) -> ThirdPayment:
        payment = self._load_by_id(payment_id)
        if payment.del_state == DEL_STATE_YES:
            raise NotFoundError(detail=f"payment id {payment_id}")
        return payment

    def find_one_by_sn(self, sn: str) -> ThirdPayment:
        index_key = f"{CACHE_SN_PREFIX}{sn}"
        payment_id = self.cache.get(index_key)
        if payment_id is None:
            payment = self._query_one(f"SELECT {_ROWS} FROM {TABLE} WHERE sn = ? LIMIT 1", (sn,))
            if payment is None:
                raise NotFoundError(detail=f"payment sn {sn}")
            self.cache[index_key] = payment.id
            self.cache[self._id_key(payment.id)] = payment
            payment = dataclasses.replace(payment)
        else:
            payment = self._load_by_id(payment_id)
        if payment.del_state == DEL_STATE_YES:
            raise NotFoundError(detail=f"payment sn {sn}")
        return payment

    def insert(self, data: ThirdPayment, session: sqlite3.Connection | None = None) -> int:
        """Store a new payment and return its id.

        Only the identifying columns are taken from ``data``; state starts fresh.
        """
        now = _now()
        columns = (*_INSERT_FIELDS, "create_time", "update_time")
        params = [_to_db(getattr(data, name)) for name in _INSERT_FIELDS] + [now, now]
        sql = (
            f"INSERT INTO {TABLE} ({','.join(columns)}) "
            f"VALUES ({','.join('?' for _ in columns)})"
        )
        cursor = self._execute(sql, params, session)
        self._drop_cache(data)
        return cursor.lastrowid

    def update(self, data: ThirdPayment, session: sqlite3.Connection | None = None) -> int:
        """Write ``data`` if its version is current; return the number of rows changed."""
        assignments = ", ".join(f"{name} = ?" for name in _UPDATE_FIELDS)
        sql = (
            f"UPDATE {TABLE} SET {assignments}, update_time = ?, version = version + 1 "
            "WHERE id = ? AND version = ?"
        )
        params = [_to_db(getattr(data, name)) for name in _UPDATE_FIELDS]
        params += [_now(), data.id, data.version]
        cursor = self._execute(sql, params, session)
        self._drop_cache(data)
        return cursor.rowcount

    def delete(self, data: ThirdPayment, session: sqlite3.Connection | None = None) -> int:
        """Mark ``data`` as deleted and store it."""
        data.del_state = DEL_STATE_YES
        return self.update(data, session)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield a session; commit when the block ends, roll back if it raises."""
        self._conn.execute("BEGIN")
        try:
            yield self._conn
        except BaseException:
            self._conn.rollback()
            raise
        self._conn.commit()