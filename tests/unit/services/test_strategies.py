"""Unit tests for the token extraction strategies.

Coverage:
* token= parsing stops at '&' and '#'
* at most one probe request per strategy before TokenExtractionFailed
* JWT ticket decoding with stripped base64url padding
* cookie strategy falls back to the legacy CAS only with stored credentials
* embedded JWT and stateless services
"""

from __future__ import annotations

import base64
import json
from types import SimpleNamespace

import pytest

from campus_sso.cas.errors import MarkupPatternMissing, TokenExtractionFailed
from campus_sso.cas.models import Credential, TokenKind
from campus_sso.services.strategies import (
    CookieTokenStrategy,
    EmbeddedJwtStrategy,
    JwtTicketStrategy,
    QueryParamTokenStrategy,
    StatelessStrategy,
    decode_jwt_payload,
    extract_query_token,
    find_cookie,
)

LOGIN_URL = "https://org.xjtu.edu.cn/openplatform/oauth/authorize?appId=1370"


def _jwt(claims: dict) -> str:
    body = base64.urlsafe_b64encode(json.dumps(claims).encode("utf-8")).rstrip(b"=").decode("ascii")
    return f"eyJhbGciOiJub25lIn0.{body}.c2ln"


def _machine(fake_session, credential=None) -> SimpleNamespace:
    return SimpleNamespace(session=fake_session, login_url=LOGIN_URL, credential=credential)


# --------------------------------------------------------------------------- #
# Query parameter                                                             #
# --------------------------------------------------------------------------- #
@pytest.mark.parametrize(
    "url, expected",
    [
        ("http://jwapp.xjtu.edu.cn/app/index?token=ABC&x=1", "ABC"),
        ("http://jwapp.xjtu.edu.cn/app/index?token=ABC#frag", "ABC"),
        ("http://bkkq.xjtu.edu.cn/#/home?state=1&token=T-9", "T-9"),
        ("http://jwapp.xjtu.edu.cn/app/index?mytoken=ABC", None),
        ("http://jwapp.xjtu.edu.cn/app/index?token=", None),
        (None, None),
    ],
)
def test_extract_query_token(url, expected) -> None:
    assert extract_query_token(url) == expected


def test_query_token_from_final_url(fake_session, respond) -> None:
    grant = QueryParamTokenStrategy().extract(
        _machine(fake_session), respond(url="http://jwapp.xjtu.edu.cn/app/index?token=TK&state=1")
    )
    assert grant.value == "TK"
    assert grant.expires_at is None
    assert fake_session.calls == []


def test_query_token_single_probe(fake_session, respond) -> None:
    fake_session.route("GET", LOGIN_URL, respond(url="http://jwapp.xjtu.edu.cn/app/index?token=P1"))
    grant = QueryParamTokenStrategy().extract(_machine(fake_session), respond(url="http://x/landing"))
    assert grant.value == "P1"
    assert len(fake_session.calls) == 1


def test_query_token_missing_after_probe(fake_session, respond) -> None:
    fake_session.route("GET", LOGIN_URL, respond(url="http://jwapp.xjtu.edu.cn/app/index"))
    with pytest.raises(TokenExtractionFailed) as exc_info:
        QueryParamTokenStrategy().extract(_machine(fake_session), respond(url="http://x/landing?a=1"))
    assert exc_info.value.endpoint == "x/landing"
    assert len(fake_session.calls) == 1


# --------------------------------------------------------------------------- #
# JWT ticket                                                                  #
# --------------------------------------------------------------------------- #
def test_decode_jwt_payload_restores_padding() -> None:
    # zero, one and two stripped '=' characters
    for claims in ({"a": 1}, {"ab": 12}, {"abc": 123}):
        assert decode_jwt_payload(_jwt(claims)) == claims


@pytest.mark.parametrize("token", ["only.two", "a.%%%.c", "a.W10.c"])
def test_decode_jwt_payload_rejects(token: str) -> None:
    with pytest.raises(TokenExtractionFailed):
        decode_jwt_payload(token)


def test_jwt_ticket_strategy(fake_session, respond) -> None:
    ticket = _jwt({"idToken": "ID-77", "exp": 1_700_000_000})
    grant = JwtTicketStrategy().extract(
        _machine(fake_session), respond(url=f"https://ywtb.xjtu.edu.cn/?ticket={ticket}")
    )
    assert grant.value == "ID-77"
    assert grant.expires_at == 1_700_000_000


def test_jwt_ticket_without_claim(fake_session, respond) -> None:
    ticket = _jwt({"sub": "x"})
    with pytest.raises(TokenExtractionFailed, match="idToken"):
        JwtTicketStrategy().extract(
            _machine(fake_session), respond(url=f"https://ywtb.xjtu.edu.cn/?ticket={ticket}")
        )


def test_jwt_ticket_missing_after_probe(fake_session, respond) -> None:
    fake_session.route("GET", LOGIN_URL, respond(url="https://ywtb.xjtu.edu.cn/"))
    with pytest.raises(TokenExtractionFailed):
        JwtTicketStrategy().extract(_machine(fake_session), respond(url="https://ywtb.xjtu.edu.cn/"))
    assert len(fake_session.calls) == 1


# --------------------------------------------------------------------------- #
# Cookie                                                                      #
# --------------------------------------------------------------------------- #
class _LegacyStub:
    def __init__(self, on_auth=None) -> None:
        self.calls = []
        self.on_auth = on_auth

    def authenticate(self, session, credential) -> bool:
        self.calls.append(credential.username)
        if self.on_auth:
            self.on_auth(session)
        return True


def _cookie_strategy(legacy=None, probe_url=None) -> CookieTokenStrategy:
    return CookieTokenStrategy(
        cookie_name="hallticket", cookie_host="card.xjtu.edu.cn", probe_url=probe_url, legacy=legacy
    )


def test_find_cookie_respects_domain(fake_session) -> None:
    fake_session.set_cookie("hallticket", "H1", "card.xjtu.edu.cn")
    fake_session.set_cookie("hallticket", "OTHER", "pay.xjtu.edu.cn")
    assert find_cookie(fake_session, "hallticket", "card.xjtu.edu.cn") == "H1"
    assert find_cookie(fake_session, "hallticket", "ywtb.xjtu.edu.cn") is None


def test_cookie_present(fake_session, respond) -> None:
    fake_session.set_cookie("hallticket", "H1", "card.xjtu.edu.cn")
    legacy = _LegacyStub()
    grant = _cookie_strategy(legacy).extract(_machine(fake_session), respond())
    assert grant.value == "H1"
    assert _cookie_strategy().kind is TokenKind.COOKIE
    assert legacy.calls == []


def test_cookie_via_legacy_cas(fake_session, respond) -> None:
    legacy = _LegacyStub(on_auth=lambda s: s.cookies.set("hallticket", "H2", domain="card.xjtu.edu.cn"))
    machine = _machine(fake_session, Credential("2231000001", "pw"))
    grant = _cookie_strategy(legacy).extract(machine, respond())
    assert grant.value == "H2"
    assert legacy.calls == ["2231000001"]


def test_cookie_legacy_skipped_without_credentials_then_probe(fake_session, respond) -> None:
    legacy = _LegacyStub()
    probe = "http://card.xjtu.edu.cn/Page/Page"
    fake_session.route(
        "GET", probe, fake_session.with_cookie("hallticket", "H3", "card.xjtu.edu.cn", respond())
    )
    grant = _cookie_strategy(legacy, probe).extract(_machine(fake_session), respond())
    assert grant.value == "H3"
    assert legacy.calls == []


def test_cookie_missing(fake_session, respond) -> None:
    with pytest.raises(TokenExtractionFailed, match="hallticket"):
        _cookie_strategy().extract(_machine(fake_session), respond(url="http://card.xjtu.edu.cn/"))


# --------------------------------------------------------------------------- #
# Embedded JWT / stateless                                                    #
# --------------------------------------------------------------------------- #
def test_embedded_jwt(fake_session, respond) -> None:
    jwt = _jwt({"exp": 1_700_000_123})
    page = f"<script>sessionStorage.Authorization = '{jwt}';</script>"
    grant = EmbeddedJwtStrategy().extract(_machine(fake_session), respond(text=page))
    assert grant.value == jwt
    assert grant.expires_at == 1_700_000_123


def test_embedded_jwt_missing(fake_session, respond) -> None:
    fake_session.route("GET", LOGIN_URL, respond(text="<html>no script</html>"))
    with pytest.raises(MarkupPatternMissing):
        EmbeddedJwtStrategy().extract(
            _machine(fake_session), respond(text="<html/>", url="https://pay.xjtu.edu.cn/ThirdWeb/CasQrcode")
        )
    assert len(fake_session.calls) == 1


def test_stateless(fake_session, cas, respond) -> None:
    assert StatelessStrategy().extract(_machine(fake_session), respond(text=cas.service_page())) is None
    with pytest.raises(TokenExtractionFailed):
        StatelessStrategy().extract(_machine(fake_session), respond(text=cas.login_page()))
