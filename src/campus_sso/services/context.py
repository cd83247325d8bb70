"""Caller-owned container for everything one signed-in user shares across services.

>>> with SsoContext(SsoSettings()) as ctx:           # doctest: +SKIP
...     jwapp = ctx.adapter("jwapp")
...     jwapp.login("2231****", "secret").raise_for_state()
...     ywtb = ctx.adapter("ywtb")                  # silent SSO via the shared cookie jar
"""

from __future__ import annotations

import logging
import threading
from types import TracebackType
from typing import Optional, Type

import requests

from campus_sso.cas.cipher import RsaPasswordCipher
from campus_sso.cas.clock import Clock, default_clock
from campus_sso.cas.errors import UnexpectedResponse
from campus_sso.cas.login import LoginStateMachine, generate_fp_visitor_id
from campus_sso.cas.models import AccountChoice, AccountType, LoginOutcome, LoginState
from campus_sso.services.adapter import ServiceAdapter
from campus_sso.services.catalog import ServiceProfile, get_profile
from campus_sso.utils.environment import SsoSettings
from campus_sso.utils.http import build_session, endpoint_of
from campus_sso.utils.webvpn import WEBVPN_LOGIN_URL, is_webvpn_url

_LOG = logging.getLogger("campus-sso.services.context")


def _require_webvpn_landing(machine: LoginStateMachine, response: requests.Response) -> None:
    final_url = response.url or ""
    if not is_webvpn_url(final_url):
        raise UnexpectedResponse(
            "WebVPN login did not return to the gateway", endpoint=endpoint_of(final_url)
        )


class SsoContext:
    """One cookie jar, one device fingerprint, one RSA key cache, many adapters."""

    def __init__(
        self,
        settings: SsoSettings | None = None,
        *,
        session: requests.Session | None = None,
        visitor_id: str | None = None,
        cached_rsa_key: str | None = None,
        clock: Clock = default_clock,
    ) -> None:
        self.settings = settings or SsoSettings.from_env()
        self.session = session if session is not None else build_session(self.settings)
        self.fp_visitor_id = visitor_id or generate_fp_visitor_id()
        self.cipher = RsaPasswordCipher(
            self.session,
            public_key_url=self.settings.cas_url("/cas/jwt/publicKey"),
            cached_key=cached_rsa_key,
        )
        self.clock = clock
        self._adapters: dict[str, ServiceAdapter] = {}
        self.webvpn_machine: LoginStateMachine | None = None
        self._lock = threading.Lock()
        self._closed = False

    def adapter(self, service: str | ServiceProfile) -> ServiceAdapter:
        """Return the adapter for *service*, creating it on first use."""
        profile = service if isinstance(service, ServiceProfile) else get_profile(service)
        with self._lock:
            if self._closed:
                raise RuntimeError("SsoContext is closed")
            existing = self._adapters.get(profile.name)
            if existing is not None:
                return existing
            adapter = ServiceAdapter(
                profile,
                session=self.session,
                settings=self.settings,
                visitor_id=self.fp_visitor_id,
                cipher=self.cipher,
                clock=self.clock,
            )
            self._adapters[profile.name] = adapter
            _LOG.debug("Created adapter %s", profile.name)
            return adapter

    @property
    def adapters(self) -> dict[str, ServiceAdapter]:
        with self._lock:
            return dict(self._adapters)

    # ------------------------------------------------------------------ #
    # WebVPN gateway                                                     #
    # ------------------------------------------------------------------ #
    @property
    def webvpn_authenticated(self) -> bool:
        machine = self.webvpn_machine
        return machine is not None and machine.authenticated

    def login_webvpn(
        self,
        username: str | None = None,
        password: str | None = None,
        *,
        captcha: str = "",
        account: AccountType | AccountChoice | str = AccountType.UNDERGRADUATE,
        trust_agent: bool = True,
    ) -> LoginOutcome:
        """Sign the shared session into the WebVPN gateway.

        Routed requests only reach internal hosts once the gateway has its own
        session cookie.  Call again to continue after a CAPTCHA or MFA outcome;
        an account choice is resolved with *account* straight away.
        """
        if not self.settings.use_webvpn:
            raise RuntimeError("WebVPN login requires use_webvpn")
        with self._lock:
            if self._closed:
                raise RuntimeError("SsoContext is closed")
            if self.webvpn_machine is None:
                self.webvpn_machine = LoginStateMachine(
                    WEBVPN_LOGIN_URL,
                    session=self.session,
                    on_login_success=_require_webvpn_landing,
                    settings=self.settings,
                    visitor_id=self.fp_visitor_id,
                    cipher=self.cipher,
                    service="webvpn",
                )
            machine = self.webvpn_machine

        outcome = machine.login(
            username, password, captcha=captcha, account_type=account, trust_agent=trust_agent
        )
        if outcome.state is LoginState.REQUIRE_ACCOUNT_CHOICE:
            outcome = machine.finish_account_choice(account, trust_agent=trust_agent)
        if outcome.ok:
            _LOG.info("WebVPN gateway authenticated")
        return outcome

    def logout(self) -> None:
        """Forget every cookie, token and stored credential."""
        with self._lock:
            self.session.cookies.clear()
            if self.webvpn_machine is not None:
                self.webvpn_machine.forget()
                self.webvpn_machine = None
            for adapter in self._adapters.values():
                adapter.token.clear()
                adapter.machine.forget()
        _LOG.info("Logged out (%d adapters reset)", len(self._adapters))

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._adapters.clear()
        self.session.close()

    def __enter__(self) -> "SsoContext":
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        self.close()
