"""Shared fixtures: a scripted ``requests.Session`` and a fake CAS server.

``FakeSession`` subclasses the real ``requests.Session`` so the cookie jar is
the genuine ``RequestsCookieJar``; only :meth:`request` is replaced by a
router that answers from pre-registered routes and records every call.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Union
from urllib.parse import urlencode

import pytest
import requests
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from campus_sso.utils.environment import SsoSettings

CAS = "https://login.xjtu.edu.cn"
CAS_LOGIN = f"{CAS}/cas/login?service=http%3A%2F%2Fjwapp.xjtu.edu.cn%2Fapp%2Findex"


def pytest_configure(config):
    """Register the live marker."""
    config.addinivalue_line(
        "markers", "live: talks to the real CAS server (opt-in, needs credentials)"
    )


def pytest_addoption(parser):
    parser.addoption(
        "--live",
        action="store_true",
        default=False,
        help="run smoke tests against the real CAS server",
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless ``--live`` is given."""
    if config.getoption("--live", default=False):
        return
    skip_live = pytest.mark.skip(reason="Need --live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# --------------------------------------------------------------------------- #
# Scripted HTTP                                                               #
# --------------------------------------------------------------------------- #
def build_response(
    status: int = 200,
    *,
    text: str = "",
    url: str = "",
    json_body: Any = None,
    content: bytes | None = None,
) -> requests.Response:
    """Return a fully-read ``requests.Response``."""
    resp = requests.Response()
    resp.status_code = status
    if json_body is not None:
        content = json.dumps(json_body).encode("utf-8")
    resp._content = content if content is not None else text.encode("utf-8")
    resp._content_consumed = True
    resp.encoding = "utf-8"
    resp.url = url
    return resp


@dataclass
class RecordedCall:
    method: str
    url: str
    data: Any = None
    json: Any = None
    headers: dict[str, str] = field(default_factory=dict)

    def wire_text(self) -> str:
        """Everything this call would put on the wire, as one string."""
        return f"{self.url} {self.data!r} {self.json!r} {self.headers!r}"


Answer = Union[requests.Response, BaseException, Callable[[RecordedCall], requests.Response]]


class FakeSession(requests.Session):
    """``requests.Session`` whose transport is a list of scripted routes.

    A route answers calls whose method matches and whose URL starts with its
    prefix; answers are consumed in order and the last one repeats.
    Routes registered first win.
    """

    def __init__(self) -> None:
        super().__init__()
        self.calls: list[RecordedCall] = []
        self._routes: list[tuple[str, str, list[Answer]]] = []

    def route(self, method: str, url_prefix: str, *answers: Answer) -> "FakeSession":
        self._routes.append((method.upper(), url_prefix, list(answers)))
        return self

    def request(self, method, url, params=None, data=None, json=None, headers=None, **kwargs):  # type: ignore[override]
        full_url = f"{url}?{urlencode(params)}" if params else url
        call = RecordedCall(method.upper(), full_url, data, json, dict(headers or {}))
        self.calls.append(call)
        for route_method, prefix, answers in self._routes:
            if route_method != call.method or not full_url.startswith(prefix):
                continue
            answer = answers.pop(0) if len(answers) > 1 else answers[0]
            if isinstance(answer, BaseException):
                raise answer
            resp = answer(call) if callable(answer) else answer
            if not resp.url:
                resp.url = full_url
            return resp
        raise AssertionError(f"unexpected {call.method} {full_url}")

    def calls_to(self, fragment: str, method: str | None = None) -> list[RecordedCall]:
        return [
            c for c in self.calls if fragment in c.url and (method is None or c.method == method.upper())
        ]

    def set_cookie(self, name: str, value: str, domain: str) -> None:
        self.cookies.set(name, value, domain=domain, path="/")

    def with_cookie(
        self, name: str, value: str, domain: str, response: requests.Response
    ) -> Callable[[RecordedCall], requests.Response]:
        """Answer that sets a cookie (as a ``Set-Cookie`` would) and returns *response*."""

        def _answer(_call: RecordedCall) -> requests.Response:
            self.set_cookie(name, value, domain)
            return response

        return _answer


# --------------------------------------------------------------------------- #
# Fake CAS                                                                    #
# --------------------------------------------------------------------------- #
class FakeCas:
    """HTML/JSON fixtures of the CAS server plus helpers to script it."""

    base = CAS
    login_url = CAS_LOGIN

    def __init__(self, session: FakeSession, private_key: rsa.RSAPrivateKey) -> None:
        self.session = session
        self.private_key = private_key
        self.public_pem = (
            private_key.public_key()
            .public_bytes(serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo)
            .decode("ascii")
        )

    # pages ------------------------------------------------------------- #
    @staticmethod
    def login_page(execution: str = "e1s1", mfa_enabled: bool = False) -> str:
        flag = "true" if mfa_enabled else "false"
        return (
            "<html><head><title>统一身份认证</title>"
            f'<script>var globalConfig = {{"mfaEnabled": {flag}, "captcha": false}};</script>'
            "</head><body><form id='fm1' method='post'>"
            "<input name='username'/><input type='password' name='password'/>"
            f"<input type='hidden' name='execution' value='{execution}'/>"
            "</form></body></html>"
        )

    @staticmethod
    def error_page(message: str = "用户名或密码错误", execution: str = "e2s1") -> str:
        return (
            f"<html><body><el-alert title='{message}' type='error'></el-alert>"
            f"<input type='hidden' name='execution' value='{execution}'/></body></html>"
        )

    @staticmethod
    def account_choice_page(execution: str = "e3s1") -> str:
        return (
            "<html><body>"
            f"<input type='hidden' name='execution' value='{execution}'/>"
            "<div class='account-wrap'><div class='name'>本科生 张三</div>"
            "<el-radio class='checkbox-radio' label='U2019001'></el-radio></div>"
            "<div class='account-wrap'><div class='name'>研究生 张三</div>"
            "<el-radio class='checkbox-radio' label='G2023001'></el-radio></div>"
            "</body></html>"
        )

    @staticmethod
    def service_page(title: str = "jwapp") -> str:
        return f"<html><head><title>{title}</title></head><body>ok</body></html>"

    # scripting --------------------------------------------------------- #
    def serve_public_key(self, *bodies: str) -> None:
        answers = [build_response(text=b) for b in bodies] or [build_response(text=self.public_pem)]
        self.session.route("GET", f"{self.base}/cas/jwt/publicKey", *answers)

    def mfa_detect(self, need: bool, state: str = "mfa-state-1") -> None:
        self.session.route(
            "POST",
            f"{self.base}/cas/mfa/detect",
            build_response(json_body={"code": 0, "data": {"state": state, "need": need}}),
        )

    def mfa_phone(self, phone: str = "138****0000", gid: str = "gid-1") -> None:
        self.session.route(
            "GET",
            f"{self.base}/cas/mfa/initByType/securephone",
            build_response(json_body={"code": 0, "data": {"gid": gid, "securePhone": phone}}),
        )

    def grant_tgc(self, value: str = "TGT-1") -> None:
        self.session.set_cookie("CASTGC", value, "login.xjtu.edu.cn")

    def decrypt(self, field_value: str) -> str:
        assert field_value.startswith("__RSA__")
        raw = base64.b64decode(field_value[len("__RSA__"):])
        return self.private_key.decrypt(raw, padding.PKCS1v15()).decode("utf-8")


# --------------------------------------------------------------------------- #
# Fixtures                                                                    #
# --------------------------------------------------------------------------- #
@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture()
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture()
def cas(fake_session: FakeSession, rsa_private_key: rsa.RSAPrivateKey) -> FakeCas:
    return FakeCas(fake_session, rsa_private_key)


@pytest.fixture()
def settings() -> SsoSettings:
    return SsoSettings()


@pytest.fixture()
def respond() -> Callable[..., requests.Response]:
    """Expose :func:`build_response` to test modules."""
    return build_response
