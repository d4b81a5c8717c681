"""Storage of homestay orders with a read-through cache keyed by id and sn."""

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

NEED_FOOD_NO = 0
NEED_FOOD_YES = 1

MAX_ID = 2**63 - 1

CACHE_ID_PREFIX = "cache:order:homestayOrder:id:"
CACHE_SN_PREFIX = "cache:order:homestayOrder:sn:"

TABLE = "homestay_order"


class TradeState(IntEnum):
    """Lifecycle of a homestay order."""

    CANCEL = -1
    WAIT_PAY = 0
    WAIT_USE = 1
    USED = 2
    REFUND = 3
    EXPIRE = 4


@dataclass
class HomestayOrder:
    """One booking of a homestay; prices are in fen."""

    id: int = 0
    create_time: datetime | None = None
    update_time: datetime | None = None
    delete_time: datetime | None = None
    del_state: int = DEL_STATE_NO
    sn: str = ""
    user_id: int = 0
    homestay_id: int = 0
    title: str = ""
    sub_title: str = ""
    cover: str = ""
    info: str = ""
    people_num: int = 0
    row_type: int = 0
    need_food: int = NEED_FOOD_NO
    food_info: str = ""
    food_price: int = 0
    homestay_price: int = 0
    market_homestay_price: int = 0
    homestay_business_id: int = 0
    homestay_user_id: int = 0
    live_start_date: datetime | None = None
    live_end_date: datetime | None = None
    live_people_num: int = 0
    trade_state: int = TradeState.WAIT_PAY
    trade_code: str = ""
    remark: str = ""
    order_total_price: int = 0
    food_total_price: int = 0
    homestay_total_price: int = 0


_FIELDS = tuple(f.name for f in fields(HomestayOrder))
_TIME_FIELDS = frozenset(
    {"create_time", "update_time", "delete_time", "live_start_date", "live_end_date"}
)
_INSERT_FIELDS = (
    "sn", "user_id", "homestay_id", "title", "sub_title", "cover", "info",
    "people_num", "row_type", "need_food", "food_info", "food_price",
    "homestay_price", "market_homestay_price", "homestay_business_id",
    "homestay_user_id", "live_start_date", "live_end_date", "live_people_num",
    "trade_state", "trade_code", "remark", "order_total_price",
    "food_total_price", "homestay_total_price",
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
    + ", ".join(_column_sql(f) for f in fields(HomestayOrder))
    + ")"
)


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, int):
        return int(value)
    return value


def _from_row(columns: list[str], row: tuple) -> HomestayOrder:
    values = {
        name: (datetime.fromisoformat(value) if name in _TIME_FIELDS and value else value)
        for name, value in zip(columns, row)
    }
    return HomestayOrder(**values)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class HomestayOrderModel:
    """Reads and writes homestay orders in a SQLite database.

    Lookups by id and by sn go through ``cache``; updates drop the cached entries.
    Deleting marks the row as deleted, and deleted rows read as not found.
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

    def _query_one(self, sql: str, params: tuple) -> HomestayOrder | None:
        cursor = self._conn.execute(sql, params)
        row = cursor.fetchone()
        if row is None:
            return None
        return _from_row([d[0] for d in cursor.description], row)

    @staticmethod
    def _id_key(order_id: Any) -> str:
        return f"{CACHE_ID_PREFIX}{order_id}"

    def _load_by_id(self, order_id: int) -> HomestayOrder:
        key = self._id_key(order_id)
        cached = self.cache.get(key)
        if cached is None:
            cached = self._query_one(
                f"SELECT {_ROWS} FROM {TABLE} WHERE id = ? LIMIT 1", (order_id,)
            )
            if cached is None:
                raise NotFoundError(detail=f"homestay order id {order_id}")
            self.cache[key] = cached
        return dataclasses.replace(cached)

    def list_by_user_trade_state(
        self, last_id: int, page_size: int, user_id: int, trade_state: int
    ) -> list[HomestayOrder]:
        """Return a user's live orders with id below ``last_id``, newest first.

        A ``last_id`` of 0 starts from the newest order. ``trade_state`` filters
        only when it is a known state; any other value lists every state.
        """
        if last_id == 0:
            last_id = MAX_ID
        sql = f"SELECT {_ROWS} FROM {TABLE} WHERE user_id = ? AND del_state = ? AND id < ?"
        params: list = [user_id, DEL_STATE_NO, last_id]
        if TradeState.CANCEL <= trade_state <= TradeState.EXPIRE:
            sql += " AND trade_state = ?"
            params.append(int(trade_state))
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(page_size)
        cursor = self._conn.execute(sql, params)
        columns = [d[0] for d in cursor.description]
        return [_from_row(columns, row) for row in cursor.fetchall()]

    def find_one(self, order_id: int) -> HomestayOrder:
        order = self._load_by_id(order_id)
        if order.del_state == DEL_STATE_YES:
            raise NotFoundError(detail=f"homestay order id {order_id}")
        return order

    def find_one_by_sn(self, sn: str) -> HomestayOrder:
        index_key = f"{CACHE_SN_PREFIX}{sn}"
        order_id = self.cache.get(index_key)
        if order_id is None:
            order = self._query_one(f"SELECT {_ROWS} FROM {TABLE} WHERE sn = ? LIMIT 1", (sn,))
            if order is None:
                raise NotFoundError(detail=f"homestay order sn {sn}")
            self.cache[index_key] = order.id
            self.cache[self._id_key(order.id)] = order
            order = dataclasses.replace(order)
        else:
            order = self._load_by_id(order_id)
        if order.del_state == DEL_STATE_YES:
            raise NotFoundError(detail=f"homestay order sn {sn}")
        return order

    def insert(self, data: HomestayOrder, session: sqlite3.Connection | None = None) -> int:
        """Store a new order and return its id."""
        now = _now()
        columns = (*_INSERT_FIELDS, "create_time", "update_time")
        params = [_to_db(getattr(data, name)) for name in _INSERT_FIELDS] + [now, now]
        sql = (
            f"INSERT INTO {TABLE} ({','.join(columns)}) "
            f"VALUES ({','.join('?' for _ in columns)})"
        )
        return self._execute(sql, params, session).lastrowid

    def update(self, data: HomestayOrder, session: sqlite3.Connection | None = None) -> int:
        """Write every mutable column of ``data``; return the number of rows changed."""
        assignments = ", ".join(f"{name} = ?" for name in _UPDATE_FIELDS)
        sql = f"UPDATE {TABLE} SET {assignments}, update_time = ? WHERE id = ?"
        params = [_to_db(getattr(data, name)) for name in _UPDATE_FIELDS]
        params += [_now(), data.id]
        cursor = self._execute(sql, params, session)
        self.cache.pop(self._id_key(data.id), None)
        self.cache.pop(f"{CACHE_SN_PREFIX}{data.sn}", None)
        return cursor.rowcount

    def delete(self, data: HomestayOrder, session: sqlite3.Connection | None = None) -> int:
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