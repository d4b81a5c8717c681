import json
import time

import pytest

from staybook.auth_gateway import TokenVerifier, VerifyResult, strip_query
from staybook.errors import TokenExpiredError
from staybook.identity import IdentityService

SECRET = "secret"
OPEN_PATH = "/travel/v1/homestay/list"
PRIVATE_PATH = "/order/v1/homestayOrder/createHomestayOrder"


@pytest.fixture
def identity():
    return IdentityService(SECRET, 3600)


@pytest.fixture
def verifier(identity):
    return TokenVerifier(SECRET, identity, [OPEN_PATH])


def headers(path, token=None):
    result = {"X-Original-Uri": path}
    if token is not None:
        result["Authorization"] = f"Bearer {token}"
    return result


def test_strip_query():
    assert strip_query("/a/b?x=1&y=2") == "/a/b"
    assert strip_query("/a/b") == "/a/b"


def test_private_path_with_valid_token(identity, verifier):
    grant = identity.generate_token(9)
    assert verifier.verify(headers(PRIVATE_PATH, grant.access_token)) == VerifyResult(9, True)


def test_private_path_query_is_ignored(identity, verifier):
    grant = identity.generate_token(9)
    result = verifier.verify(headers(PRIVATE_PATH + "?a=1", grant.access_token))
    assert result.user_id == 9


def test_private_path_without_token(verifier):
    with pytest.raises(TokenExpiredError):
        verifier.verify(headers(PRIVATE_PATH))


def test_open_path_without_token(verifier):
    assert verifier.verify(headers(OPEN_PATH + "?page=1")) == VerifyResult(0, True)


def test_open_path_with_valid_token_gives_user(identity, verifier):
    grant = identity.generate_token(3)
    assert verifier.verify(headers(OPEN_PATH, grant.access_token)).user_id == 3


def test_open_path_with_bad_token(verifier):
    with pytest.raises(TokenExpiredError):
        verifier.verify(headers(OPEN_PATH, "token"))


def test_token_with_wrong_secret(verifier):
    other = IdentityService("placeholder", 3600)
    grant = other.generate_token(9)
    with pytest.raises(TokenExpiredError):
        verifier.verify(headers(PRIVATE_PATH, grant.access_token))


def test_cleared_token_rejected(identity, verifier):
    grant = identity.generate_token(9)
    identity.clear_token(9)
    with pytest.raises(TokenExpiredError):
        verifier.verify(headers(PRIVATE_PATH, grant.access_token))


def test_expired_token_rejected(identity):
    past = IdentityService(SECRET, 60, store=identity.store, clock=lambda: time.time() - 10_000)
    grant = past.generate_token(9)
    verifier = TokenVerifier(SECRET, identity)
    with pytest.raises(TokenExpiredError):
        verifier.verify(headers(PRIVATE_PATH, grant.access_token))


def test_zero_user_rejected(identity, verifier):
    grant = identity.generate_token(0)
    with pytest.raises(TokenExpiredError):
        verifier.verify(headers(PRIVATE_PATH, grant.access_token))


def test_headers_case_insensitive_and_no_bearer(identity, verifier):
    grant = identity.generate_token(4)
    request = {"x-original-uri": PRIVATE_PATH, "authorization": grant.access_token}
    assert verifier.verify(request).user_id == 4


def test_handle_success(identity, verifier):
    grant = identity.generate_token(11)
    status, response_headers, body = verifier.handle(headers(PRIVATE_PATH, grant.access_token))
    assert status == 200
    assert response_headers["x-user"] == "11"
    assert json.loads(body) == {"userId": 11, "ok": True}


def test_handle_refused(verifier):
    status, response_headers, body = verifier.handle(headers(PRIVATE_PATH))
    assert status == 401
    assert response_headers["x-user"] == "0"
    assert json.loads(body)["msg"] == TokenExpiredError.default_message