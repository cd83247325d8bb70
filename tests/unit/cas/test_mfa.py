"""Unit tests for the phone-code MFA challenge.

Coverage:
* masked phone fetched once, gid cached
* send_code requires the phone to be fetched first
* verify_code: non-zero code -> MfaVerificationFailed with the server message
* consumed challenges refuse further calls
* non-JSON answers -> UnexpectedResponse
"""

from __future__ import annotations

import pytest

from campus_sso.cas.errors import MfaError, MfaVerificationFailed, UnexpectedResponse
from campus_sso.cas.mfa import MfaChallenge

SEND_URL = "https://login.xjtu.edu.cn/attest/api/guard/securephone/send"
VALID_URL = "https://login.xjtu.edu.cn/attest/api/guard/securephone/valid"


def test_masked_phone_cached(fake_session, cas) -> None:
    cas.mfa_phone(phone="138****1234", gid="g-9")
    challenge = MfaChallenge(fake_session, "st-1")

    assert challenge.get_masked_phone() == "138****1234"
    assert challenge.get_masked_phone() == "138****1234"
    assert challenge.gid == "g-9"
    calls = fake_session.calls_to("initByType/securephone")
    assert len(calls) == 1
    assert calls[0].url.endswith("?state=st-1")


def test_phone_lookup_failure(fake_session, respond) -> None:
    fake_session.route(
        "GET",
        "https://login.xjtu.edu.cn/cas/mfa/initByType",
        respond(json_body={"code": 1, "message": "no phone bound"}),
    )
    with pytest.raises(MfaError, match="no phone bound"):
        MfaChallenge(fake_session, "st-1").get_masked_phone()


def test_send_requires_phone(fake_session) -> None:
    with pytest.raises(MfaError):
        MfaChallenge(fake_session, "st-1").send_code()
    assert fake_session.calls == []


def test_send_and_verify(fake_session, cas, respond) -> None:
    cas.mfa_phone()
    fake_session.route("POST", SEND_URL, respond(json_body={"code": 0, "message": "ok"}))
    fake_session.route("POST", VALID_URL, respond(json_body={"code": 0, "message": "ok"}))
    challenge = MfaChallenge(fake_session, "st-1")
    challenge.get_masked_phone()

    assert challenge.send_code() == "138****0000"
    challenge.verify_code("123456")

    assert challenge.verified is True
    assert fake_session.calls_to(SEND_URL)[0].json == {"gid": "gid-1"}
    assert fake_session.calls_to(VALID_URL)[0].json == {"gid": "gid-1", "code": "123456"}


def test_verify_rejected(fake_session, cas, respond) -> None:
    cas.mfa_phone()
    fake_session.route("POST", VALID_URL, respond(json_body={"code": 1, "message": "验证码错误"}))
    challenge = MfaChallenge(fake_session, "st-1")
    challenge.get_masked_phone()

    with pytest.raises(MfaVerificationFailed, match="验证码错误") as exc_info:
        challenge.verify_code("000000")
    assert exc_info.value.endpoint == "login.xjtu.edu.cn/attest/api/guard/securephone/valid"
    assert challenge.verified is False


def test_consumed_challenge_refuses_calls(fake_session) -> None:
    challenge = MfaChallenge(fake_session, "st-1")
    challenge.gid, challenge.masked_phone = "g", "138****0000"
    challenge.consumed = True
    with pytest.raises(MfaError):
        challenge.send_code()
    with pytest.raises(MfaError):
        challenge.verify_code("1")


def test_non_json_answer(fake_session, cas, respond) -> None:
    cas.mfa_phone()
    fake_session.route("POST", SEND_URL, respond(502, text="<html>Bad gateway</html>"))
    challenge = MfaChallenge(fake_session, "st-1")
    challenge.get_masked_phone()
    with pytest.raises(UnexpectedResponse):
        challenge.send_code()
