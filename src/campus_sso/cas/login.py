"""CAS login state machine.

One :class:`LoginStateMachine` drives the ``login.xjtu.edu.cn`` protocol for
one target login URL::

    INIT ──GET login_url──► NEEDS_CREDENTIALS ──login()──► AWAITING_MFA
      │                          │   ▲                        │ verify_code()
      │ no form + cookies        │   └──── FAIL ◄─────────────┘ login()
      ▼                          ▼
    SSO_AUTHENTICATED        AWAITING_ACCOUNT_CHOICE ──finish_account_choice()──► AUTHENTICATED

Expected business branches are returned as :class:`LoginOutcome` values.
Transport failures raise :class:`~campus_sso.cas.errors.NetworkFailure`.

Service-specific token extraction is injected as *on_login_success*, called
with the machine and the final response of every successful login.
"""

from __future__ import annotations

import enum
import hashlib
import platform
import uuid
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import urlencode

import requests

from campus_sso.cas import forms
from campus_sso.cas.cipher import RsaPasswordCipher
from campus_sso.cas.errors import (
    AccountAmbiguous,
    CasError,
    NetworkFailure,
    SessionExpired,
    UnexpectedResponse,
)
from campus_sso.cas.log_utils import get_auth_logger
from campus_sso.cas.mfa import MfaChallenge
from campus_sso.cas.models import (
    AccountChoice,
    AccountType,
    Credential,
    LoginOutcome,
    LoginState,
)
from campus_sso.utils.environment import SsoSettings
from campus_sso.utils.http import build_session, endpoint_of, send

LoginHook = Callable[["LoginStateMachine", requests.Response], None]

_LOGIN_PATH = "/cas/login"
_MFA_DETECT_PATH = "/cas/mfa/detect"
_PUBLIC_KEY_PATH = "/cas/jwt/publicKey"
_CAPTCHA_PATH = "/cas/captcha.jpg"


class MachineState(str, enum.Enum):
    INIT = "init"
    NEEDS_CREDENTIALS = "needs_credentials"
    SSO_AUTHENTICATED = "sso_authenticated"
    AWAITING_MFA = "awaiting_mfa"
    AWAITING_ACCOUNT_CHOICE = "awaiting_account_choice"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class CasAuthResult:
    """Outcome of :meth:`LoginStateMachine.cas_authenticate`."""

    response: requests.Response
    authenticated: bool
    submitted: bool = False

    @property
    def final_url(self) -> str:
        return self.response.url or ""


def generate_fp_visitor_id() -> str:
    """Random device fingerprint: 32 hex chars of SHA-256 over platform + UUID."""
    raw = f"{platform.system()}|{platform.machine()}|{uuid.uuid4()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def _select_label(
    choices: list[AccountChoice], wanted: AccountType | AccountChoice | str
) -> str | None:
    if isinstance(wanted, AccountChoice):
        matches = [c for c in choices if c.label == wanted.label]
    elif isinstance(wanted, AccountType):
        matches = [c for c in choices if wanted.keyword in c.name]
    else:
        matches = [c for c in choices if wanted == c.label or wanted in c.name]
    return matches[0].label if matches else None


def _describe(wanted: AccountType | AccountChoice | str) -> str:
    if isinstance(wanted, AccountType):
        return wanted.name.lower()
    if isinstance(wanted, AccountChoice):
        return wanted.name
    return wanted


class LoginStateMachine:
    """Drive one CAS login, keeping credentials for later re-authentication.

    Parameters
    ----------
    login_url:
        URL whose redirect chain ends on the CAS login page (or, with a live
        ticket-granting cookie, directly on the target service).
    session:
        Shared ``requests.Session``.  When supplied and already carrying
        cookies, a login URL that answers without a login form is taken as
        silent SSO success.
    on_login_success:
        Hook ``(machine, response) -> None`` run after every successful login.
    """

    def __init__(
        self,
        login_url: str,
        *,
        session: requests.Session | None = None,
        on_login_success: Optional[LoginHook] = None,
        settings: SsoSettings | None = None,
        visitor_id: str | None = None,
        cipher: RsaPasswordCipher | None = None,
        service: str | None = None,
    ) -> None:
        self.settings = settings or SsoSettings()
        self._session_supplied = session is not None
        self.session = session if session is not None else build_session(self.settings)
        self.login_url = login_url
        self.post_url = login_url
        self.on_login_success = on_login_success
        self.fp_visitor_id = visitor_id or generate_fp_visitor_id()
        self.cipher = cipher or RsaPasswordCipher(
            self.session, public_key_url=self.settings.cas_url(_PUBLIC_KEY_PATH)
        )
        self.service = service

        self.state = MachineState.INIT
        self.fail_count = 0
        self.mfa_enabled = True
        self.mfa: MfaChallenge | None = None
        self._mfa_was_required = False
        self._credential: Credential | None = None
        self._encrypted_with: str | None = None
        self._execution: str | None = None
        self._account_choice_body: str | None = None
        self._pending_hook: requests.Response | None = None
        self._log = get_auth_logger(
            base_logger_name="campus-sso.cas.login",
            service=service,
            visitor_id=self.fp_visitor_id,
        )

        self._open_login_page()

    # ------------------------------------------------------------------ #
    # Introspection                                                      #
    # ------------------------------------------------------------------ #
    @property
    def authenticated(self) -> bool:
        """True once logged in *and* the success hook has completed."""
        return (
            self.state in (MachineState.SSO_AUTHENTICATED, MachineState.AUTHENTICATED)
            and self._pending_hook is None
        )

    @property
    def credential(self) -> Credential | None:
        return self._credential

    @property
    def rsa_public_key(self) -> str | None:
        return self.cipher.public_key

    def is_captcha_required(self) -> bool:
        return self.fail_count >= self.settings.captcha_threshold

    def has_cas_session(self) -> bool:
        """True while the cookie jar holds the ticket-granting cookie for the CAS host."""
        host = self.settings.cas_host
        name = self.settings.tgc_cookie_name
        for cookie in self.session.cookies:
            if cookie.name != name:
                continue
            domain = (cookie.domain or "").lstrip(".")
            if domain and (host == domain or host.endswith("." + domain)):
                return True
        return False

    def get_captcha_image(self) -> bytes:
        url = self.settings.cas_url(_CAPTCHA_PATH)
        response = send(self.session, "GET", url)
        if response.status_code != 200:
            raise NetworkFailure(
                f"captcha endpoint returned {response.status_code}",
                endpoint=endpoint_of(url),
                status_code=response.status_code,
            )
        return response.content

    # ------------------------------------------------------------------ #
    # Transitions                                                        #
    # ------------------------------------------------------------------ #
    def _open_login_page(self) -> None:
        had_cookies = self._session_supplied and len(self.session.cookies) > 0
        response = send(self.session, "GET", self.login_url)
        self.post_url = response.url or self.login_url
        self.cipher.referer = self.post_url
        body = response.text
        self._execution = forms.extract_csrf_token(body)

        if self._execution is None and had_cookies:
            self.state = MachineState.SSO_AUTHENTICATED
            self.mfa_enabled = False
            try:
                self._run_hook(response)
                self._log.info("Silent SSO succeeded")
            except CasError as exc:
                self._log.warning("SSO hook failed (%s); will retry on login()", exc.code)
            return

        if self._execution is None:
            self._log.warning(
                "No login form at %s (HTTP %s, title=%r)",
                endpoint_of(self.post_url),
                response.status_code,
                forms.extract_title(body),
            )
        else:
            self.mfa_enabled = forms.extract_mfa_enabled(body)
        self.state = MachineState.NEEDS_CREDENTIALS

    def _refresh_form(self) -> str | None:
        response = send(self.session, "GET", self.login_url)
        self.post_url = response.url or self.login_url
        self._execution = forms.extract_csrf_token(response.text)
        if self._execution is not None:
            self.mfa_enabled = forms.extract_mfa_enabled(response.text)
        return self._execution

    def _run_hook(self, response: requests.Response) -> None:
        self._pending_hook = response
        if self.on_login_success is not None:
            self.on_login_success(self, response)
        self._pending_hook = None

    def _store_credential(self, username: str, password: str, captcha: str) -> None:
        current = self._credential
        if current is not None and current.username == username and current.password == password:
            current.captcha = captcha or current.captcha
            return
        self._credential = Credential(username=username, password=password, captcha=captcha)
        self._encrypted_with = None
        self.mfa = None
        self._log = get_auth_logger(
            base_logger_name="campus-sso.cas.login",
            service=self.service,
            username=username,
            visitor_id=self.fp_visitor_id,
        )

    def _encrypted_password(self, credential: Credential) -> str:
        if credential.encrypted_password is None or self._encrypted_with != self.cipher.public_key:
            credential.encrypted_password = self.cipher.encrypt(credential.password)
            self._encrypted_with = self.cipher.public_key
        return credential.encrypted_password

    def mark_authenticated(self) -> None:
        """Record a login completed outside :meth:`login` (re-authentication)."""
        self._pending_hook = None
        self._account_choice_body = None
        self.state = MachineState.AUTHENTICATED

    def forget(self) -> None:
        """Drop credentials and authentication state (used on logout)."""
        self._credential = None
        self._encrypted_with = None
        self.mfa = None
        self._account_choice_body = None
        self._pending_hook = None
        self._execution = None
        self.fail_count = 0
        self.state = MachineState.NEEDS_CREDENTIALS

    def login(
        self,
        username: str | None = None,
        password: str | None = None,
        captcha: str = "",
        account_type: AccountType | AccountChoice | str = AccountType.POSTGRADUATE,
        trust_agent: bool = True,
    ) -> LoginOutcome:
        """Advance the protocol by one step and report where it stands."""
        if self._account_choice_body is not None:
            return self.finish_account_choice(account_type, trust_agent=trust_agent)

        if username is not None and password is not None:
            self._store_credential(username, password, captcha)
        elif captcha and self._credential is not None:
            self._credential.captcha = captcha

        if self.state in (MachineState.SSO_AUTHENTICATED, MachineState.AUTHENTICATED):
            if self._pending_hook is not None:
                self._run_hook(self._pending_hook)
            return LoginOutcome(LoginState.SUCCESS, "already authenticated")

        credential = self._credential
        if credential is None:
            return LoginOutcome(LoginState.FAIL, "username and password are required")

        if self.is_captcha_required() and not credential.captcha:
            return LoginOutcome(
                LoginState.REQUIRE_CAPTCHA,
                f"captcha required after {self.fail_count} failed attempts",
            )

        if self.mfa_enabled:
            if self.mfa is None or self.mfa.consumed:
                self.mfa = self._detect_mfa(credential)
                if self.mfa.required:
                    self.mfa.get_masked_phone()
                    self.state = MachineState.AWAITING_MFA
                    self._log.info("MFA required")
                    return LoginOutcome(LoginState.REQUIRE_MFA, "phone verification required", mfa=self.mfa)
            elif self.mfa.required and not self.mfa.verified:
                return LoginOutcome(LoginState.REQUIRE_MFA, "verify the phone code first", mfa=self.mfa)

        return self._submit(credential, trust_agent)

    def _detect_mfa(self, credential: Credential) -> MfaChallenge:
        url = self.settings.cas_url(_MFA_DETECT_PATH)
        response = send(
            self.session,
            "POST",
            url,
            data={
                "username": credential.username,
                "password": self._encrypted_password(credential),
                "fpVisitorId": self.fp_visitor_id,
            },
            headers={"Referer": self.post_url},
        )
        try:
            data = response.json()["data"]
            state = str(data["state"])
            need = data["need"] in (True, "true", 1)
        except (ValueError, KeyError, TypeError):
            raise UnexpectedResponse(
                f"malformed MFA detect answer (HTTP {response.status_code})",
                endpoint=endpoint_of(url),
            ) from None
        return MfaChallenge(self.session, state, required=need, settings=self.settings)

    def _submit(self, credential: Credential, trust_agent: bool) -> LoginOutcome:
        execution = self._execution or self._refresh_form()
        if execution is None:
            return LoginOutcome(LoginState.FAIL, "CAS did not present a login form")

        mfa = self.mfa
        self._mfa_was_required = bool(mfa and mfa.required)
        form = {
            "username": credential.username,
            "password": self._encrypted_password(credential),
            "execution": execution,
            "_eventId": "submit",
            "submit1": "Login1",
            "fpVisitorId": self.fp_visitor_id,
            "captcha": credential.captcha,
            "currentMenu": "1",
            "failN": str(self.fail_count),
            "mfaState": mfa.state if mfa else "",
            "geolocation": "",
            "trustAgent": self._trust_agent_value(trust_agent),
        }
        response = send(self.session, "POST", self.post_url, data=form)
        if mfa is not None:
            mfa.consumed = True
            self.mfa = None

        body = response.text
        if response.status_code == 401:
            return self._fail(body, "invalid username or password")
        if response.status_code >= 400:
            raise NetworkFailure(
                f"login submit returned {response.status_code}",
                endpoint=endpoint_of(self.post_url),
                status_code=response.status_code,
            )
        banner = forms.extract_error_banner(body)
        if banner:
            return self._fail(body, f"login failed: {banner}")

        choices = forms.extract_account_choices(body)
        if choices:
            self.fail_count = 0
            credential.captcha = ""
            self._account_choice_body = body
            self.state = MachineState.AWAITING_ACCOUNT_CHOICE
            self._log.info("Credential maps to %d identities", len(choices))
            return LoginOutcome(
                LoginState.REQUIRE_ACCOUNT_CHOICE,
                "choose an identity",
                account_choices=tuple(choices),
            )
        if forms.extract_csrf_token(body) is not None:
            return self._fail(body, "CAS returned the login form again")

        self.fail_count = 0
        credential.captcha = ""
        self.state = MachineState.AUTHENTICATED
        self._run_hook(response)
        self._log.info("Login succeeded")
        return LoginOutcome(LoginState.SUCCESS, "login succeeded")

    def _trust_agent_value(self, trust_agent: bool) -> str:
        if not self._mfa_was_required:
            return ""
        return "true" if trust_agent else "false"

    def _fail(self, body: str, message: str) -> LoginOutcome:
        self.fail_count += 1
        if self._credential is not None:
            self._credential.captcha = ""
        self._execution = forms.extract_csrf_token(body)
        self.state = MachineState.NEEDS_CREDENTIALS
        self._log.warning("Login rejected (attempt %d)", self.fail_count)
        return LoginOutcome(LoginState.FAIL, message)

    def finish_account_choice(
        self,
        account: AccountType | AccountChoice | str = AccountType.POSTGRADUATE,
        *,
        trust_agent: bool = True,
    ) -> LoginOutcome:
        """Resubmit the parked account-choice page with the identity matching *account*."""
        body = self._account_choice_body
        if body is None:
            raise ValueError("no account choice is pending")
        choices = forms.extract_account_choices(body)
        label = _select_label(choices, account)
        if label is None:
            raise AccountAmbiguous(
                f"no identity matches {_describe(account)!r}", choices=choices
            )

        form = {
            "execution": forms.extract_csrf_token(body) or "",
            "_eventId": "submit",
            "geolocation": "",
            "fpVisitorId": self.fp_visitor_id,
            "trustAgent": self._trust_agent_value(trust_agent),
            "username": label,
            "useDefault": "false",
        }
        response = send(self.session, "POST", self.post_url, data=form)
        self._account_choice_body = None
        if response.status_code >= 400:
            self.state = MachineState.NEEDS_CREDENTIALS
            raise NetworkFailure(
                f"account choice returned {response.status_code}",
                endpoint=endpoint_of(self.post_url),
                status_code=response.status_code,
            )
        banner = forms.extract_error_banner(response.text)
        if banner:
            self.state = MachineState.NEEDS_CREDENTIALS
            return LoginOutcome(LoginState.FAIL, f"account choice failed: {banner}")

        self.state = MachineState.AUTHENTICATED
        self._run_hook(response)
        self._log.info("Identity %s selected", _describe(account))
        return LoginOutcome(LoginState.SUCCESS, "login succeeded")

    # ------------------------------------------------------------------ #
    # Re-authentication primitive                                        #
    # ------------------------------------------------------------------ #
    def cas_authenticate(self, service_url: str) -> CasAuthResult:
        """Obtain a ticket for *service_url*, reposting stored credentials if needed.

        Raises ``SessionExpired`` when CAS shows its login form and no
        credentials are stored.
        """
        url = f"{self.settings.cas_url(_LOGIN_PATH)}?{urlencode({'service': service_url})}"
        response = send(self.session, "GET", url)
        execution = forms.extract_csrf_token(response.text)
        if execution is None:
            self._log.debug("CAS redirected without a form; ticket-granting cookie live")
            return CasAuthResult(response, authenticated=True)

        credential = self._credential
        if credential is None:
            raise SessionExpired(
                "CAS session expired and no credentials are stored",
                endpoint=endpoint_of(url),
            )

        self._log.info("Ticket-granting cookie expired; reposting stored credentials")
        post_url = response.url or url
        form = {
            "username": credential.username,
            "password": self._encrypted_password(credential),
            "execution": execution,
            "_eventId": "submit",
            "submit1": "Login1",
            "fpVisitorId": self.fp_visitor_id,
            "currentMenu": "1",
            "failN": "0",
            "mfaState": "",
            "geolocation": "",
        }
        posted = send(self.session, "POST", post_url, data=form)
        if posted.status_code >= 400 and posted.status_code != 401:
            raise NetworkFailure(
                f"credential repost returned {posted.status_code}",
                endpoint=endpoint_of(post_url),
                status_code=posted.status_code,
            )
        ok = (
            posted.status_code != 401
            and not forms.extract_error_banner(posted.text)
            and forms.extract_csrf_token(posted.text) is None
        )
        if not ok:
            self._log.warning("Credential repost rejected")
        return CasAuthResult(posted, authenticated=ok, submitted=True)
