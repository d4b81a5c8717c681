import pytest

from staybook.errors import DbError, NotFoundError, ServiceError, TokenExpiredError


def test_message_is_kept():
    err = ServiceError("order closed")
    assert err.message == "order closed"
    assert str(err) == "order closed"


def test_detail_is_appended_to_str_only():
    err = ServiceError("order closed", detail="sn=HSO1")
    assert err.message == "order closed"
    assert err.detail == "sn=HSO1"
    assert str(err) == "order closed: sn=HSO1"


@pytest.mark.parametrize("cls", [NotFoundError, DbError, TokenExpiredError])
def test_subclasses_use_their_default_message(cls):
    err = cls()
    assert err.message == cls.default_message
    assert isinstance(err, ServiceError)


def test_subclass_carries_detail_in_str():
    err = NotFoundError(detail="id 5")
    assert isinstance(err, ServiceError)
    assert err.detail == "id 5"
    assert err.message == NotFoundError.default_message
    assert str(err) == f"{NotFoundError.default_message}: id 5"


def test_explicit_message_overrides_default():
    assert DbError("write failed").message == "write failed"