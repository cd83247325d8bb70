"""Per-service session owner.

A :class:`ServiceAdapter` composes a :class:`LoginStateMachine`, the token
strategy chosen by its :class:`ServiceProfile`, the :class:`ServiceToken` it
fills, and a :class:`ReauthManager` that refreshes it.
"""

from __future__ import annotations

from typing import Any

import requests

from campus_sso.cas.cipher import RsaPasswordCipher
from campus_sso.cas.clock import Clock, default_clock
from campus_sso.cas.errors import SessionExpired
from campus_sso.cas.log_utils import get_auth_logger
from campus_sso.cas.login import LoginStateMachine
from campus_sso.cas.models import (
    AccountChoice,
    AccountType,
    LoginOutcome,
    ServiceToken,
    TokenKind,
)
from campus_sso.services.catalog import ServiceProfile
from campus_sso.services.reauth import ReauthManager
from campus_sso.utils.environment import SsoSettings
from campus_sso.utils.http import send
from campus_sso.utils.logging import mask_sensitive

_RETRY_STATUSES = frozenset({401, 403})


class ServiceAdapter:
    """Authenticated access to one downstream system."""

    def __init__(
        self,
        profile: ServiceProfile,
        *,
        session: requests.Session | None = None,
        settings: SsoSettings | None = None,
        visitor_id: str | None = None,
        cipher: RsaPasswordCipher | None = None,
        clock: Clock = default_clock,
    ) -> None:
        self.profile = profile
        self.settings = settings or SsoSettings()
        self.clock = clock
        self.strategy = profile.build_strategy(self.settings)
        self.token = ServiceToken(kind=self.strategy.kind)
        self._log = get_auth_logger(base_logger_name="campus-sso.services.adapter", service=profile.name)

        login_url = profile.resolve_login_url(self.settings)
        # The machine may run the success hook during construction (silent SSO).
        self.machine = LoginStateMachine(
            login_url,
            session=session,
            on_login_success=self._on_login_success,
            settings=self.settings,
            visitor_id=visitor_id,
            cipher=cipher,
            service=profile.name,
        )
        self.reauth = ReauthManager(
            machine=self.machine,
            strategy=self.strategy,
            token=self.token,
            login_url=login_url,
            service_url=profile.resolve_service_url(self.settings),
            clock=clock,
            logger=self._log,
        )

    def __repr__(self) -> str:
        return f"ServiceAdapter({self.profile.name!r}, state={self.machine.state.value})"

    @property
    def name(self) -> str:
        return self.profile.name

    @property
    def session(self) -> requests.Session:
        return self.machine.session

    @property
    def ttl_seconds(self) -> float:
        if self.profile.token_ttl_seconds is not None:
            return self.profile.token_ttl_seconds
        return self.settings.token_ttl_seconds

    def _on_login_success(self, machine: LoginStateMachine, response: requests.Response) -> None:
        grant = self.strategy.extract(machine, response)
        if grant is not None:
            self.token.update(grant, clock=self.clock)
            self._log.info("Token acquired (%s)", mask_sensitive(grant.value))

    # ------------------------------------------------------------------ #
    # Login                                                              #
    # ------------------------------------------------------------------ #
    def login(
        self,
        username: str | None = None,
        password: str | None = None,
        captcha: str = "",
        account_type: AccountType | AccountChoice | str = AccountType.POSTGRADUATE,
        trust_agent: bool = True,
    ) -> LoginOutcome:
        return self.machine.login(
            username=username,
            password=password,
            captcha=captcha,
            account_type=account_type,
            trust_agent=trust_agent,
        )

    def finish_account_choice(
        self,
        account: AccountType | AccountChoice | str = AccountType.POSTGRADUATE,
        *,
        trust_agent: bool = True,
    ) -> LoginOutcome:
        return self.machine.finish_account_choice(account, trust_agent=trust_agent)

    # ------------------------------------------------------------------ #
    # Token state                                                        #
    # ------------------------------------------------------------------ #
    def is_token_valid(self) -> bool:
        """True while the CAS cookie is present and the token is not (nearly) expired."""
        if not self.machine.has_cas_session():
            return False
        if self.token.kind is TokenKind.STATELESS:
            return self.machine.authenticated
        return self.token.is_valid(
            ttl_seconds=self.ttl_seconds,
            margin_seconds=self.settings.expiry_margin_seconds,
            clock=self.clock,
        )

    def reauthenticate(self) -> bool:
        return self.reauth.reauthenticate()

    # ------------------------------------------------------------------ #
    # Requests                                                           #
    # ------------------------------------------------------------------ #
    def _request(self, method: str, url: str, kwargs: dict[str, Any]) -> requests.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers.update(self.profile.auth_headers(self.token.value))
        return send(self.session, method, url, headers=headers, **kwargs)

    def authenticated_request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """Send one request carrying the current token; no retry."""
        if self.profile.header_name and not self.token.value:
            raise SessionExpired(f"{self.name} is not logged in")
        return self._request(method, url, dict(kwargs))

    def execute_with_reauth(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """Send with the current token; on 401/403 re-authenticate and retry exactly once."""
        if self.token.has_known_expiry and not self.is_token_valid():
            self._log.info("Token past its expiry; refreshing before the request")
            self.reauth.reauthenticate(observed_generation=self.reauth.generation)

        generation = self.reauth.generation
        response = self._request(method, url, dict(kwargs))
        if response.status_code not in _RETRY_STATUSES:
            return response

        self._log.info("HTTP %s from %s; re-authenticating", response.status_code, self.name)
        response.close()
        if not self.reauth.reauthenticate(observed_generation=generation):
            return response
        return self._request(method, url, dict(kwargs))
