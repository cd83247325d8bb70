"""Unit tests for the HTTP helpers."""

from __future__ import annotations

import pytest
import requests

from campus_sso.cas.errors import NetworkFailure
from campus_sso.utils.environment import SsoSettings
from campus_sso.utils.http import CasSession, build_session, endpoint_of, send
from campus_sso.utils.webvpn import WebVpnSession


def test_endpoint_of_drops_query() -> None:
    assert endpoint_of("https://login.xjtu.edu.cn/cas/login?service=x&ticket=ST-1") == (
        "login.xjtu.edu.cn/cas/login"
    )
    assert endpoint_of("http://card.xjtu.edu.cn") == "card.xjtu.edu.cn/"


def test_build_session() -> None:
    plain = build_session(SsoSettings(connect_timeout=3, read_timeout=9))
    assert type(plain) is CasSession
    assert plain.default_timeout == (3, 9)
    assert "Mozilla" in plain.headers["User-Agent"]

    vpn = build_session(SsoSettings(use_webvpn=True, cas_base_url="https://cas.example.edu"))
    assert isinstance(vpn, WebVpnSession)
    assert vpn.bypass_hosts == frozenset({"cas.example.edu"})


def test_default_timeout_and_override(monkeypatch) -> None:
    timeouts = []

    def fake_request(self, method, url, *args, **kwargs):
        timeouts.append(kwargs.get("timeout"))
        return requests.Response()

    monkeypatch.setattr(requests.Session, "request", fake_request)
    session = CasSession(timeout=(1.0, 2.0))
    session.request("GET", "http://x/")
    session.request("GET", "http://x/", timeout=60)
    assert timeouts == [(1.0, 2.0), 60]


def test_send_maps_transport_errors(fake_session) -> None:
    fake_session.route("GET", "https://login.xjtu.edu.cn/", requests.Timeout("read timed out"))

    with pytest.raises(NetworkFailure) as exc_info:
        send(fake_session, "GET", "https://login.xjtu.edu.cn/cas/login?ticket=secret")

    exc = exc_info.value
    assert exc.endpoint == "login.xjtu.edu.cn/cas/login"
    assert "secret" not in str(exc)
    assert isinstance(exc.__cause__, requests.Timeout)


def test_send_returns_error_statuses(fake_session, respond) -> None:
    fake_session.route("GET", "http://x/", respond(503))
    assert send(fake_session, "GET", "http://x/").status_code == 503
