"""Typed records shared by the CAS login engine and the service adapters."""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from campus_sso.cas.clock import Clock, default_clock
from campus_sso.cas.errors import (
    AccountAmbiguous,
    CaptchaRequired,
    InvalidCredentials,
    MfaRequired,
)

if TYPE_CHECKING:  # pragma: no cover
    from campus_sso.cas.mfa import MfaChallenge


class LoginState(str, enum.Enum):
    """Result of one step of the login protocol."""

    REQUIRE_MFA = "require_mfa"
    REQUIRE_CAPTCHA = "require_captcha"
    SUCCESS = "success"
    FAIL = "fail"
    REQUIRE_ACCOUNT_CHOICE = "require_account_choice"


class AccountType(enum.Enum):
    """Institutional identities a single credential may map to."""

    UNDERGRADUATE = "本科"
    POSTGRADUATE = "研究"

    @property
    def keyword(self) -> str:
        """Substring of the CAS display name that identifies this identity."""
        return self.value


@dataclass(frozen=True, slots=True)
class AccountChoice:
    """One selectable identity on the CAS account-choice page."""

    name: str
    label: str


@dataclass(frozen=True, slots=True)
class LoginOutcome:
    """Explicit outcome value returned by every login transition."""

    state: LoginState
    message: str = ""
    mfa: MfaChallenge | None = None
    account_choices: tuple[AccountChoice, ...] = ()

    @property
    def ok(self) -> bool:
        return self.state is LoginState.SUCCESS

    def raise_for_state(self) -> None:
        """Raise the exception matching a non-success outcome (no-op on success)."""
        if self.state is LoginState.SUCCESS:
            return
        if self.state is LoginState.REQUIRE_MFA:
            raise MfaRequired(self.message or None)
        if self.state is LoginState.REQUIRE_CAPTCHA:
            raise CaptchaRequired(self.message or None)
        if self.state is LoginState.REQUIRE_ACCOUNT_CHOICE:
            raise AccountAmbiguous(self.message or None, choices=self.account_choices)
        raise InvalidCredentials(self.message or None)


@dataclass(slots=True)
class Credential:
    """Login material kept in memory for re-authentication; never serialised."""

    username: str
    password: str = field(repr=False)
    captcha: str = ""
    # Cached ciphertext; reset whenever the RSA key or the password changes.
    encrypted_password: str | None = field(default=None, repr=False)


class TokenKind(str, enum.Enum):
    """How a downstream service carries its credential."""

    QUERY_PARAM = "query_param"
    JWT_TICKET = "jwt_ticket"
    COOKIE = "cookie"
    EMBEDDED_JWT = "embedded_jwt"
    STATELESS = "stateless"


@dataclass(frozen=True, slots=True)
class TokenGrant:
    """Value produced by a token-extraction strategy."""

    value: str = field(repr=False)
    expires_at: int | None = None


@dataclass(eq=False)
class ServiceToken:
    """Mutable token slot owned by one service adapter.

    Refreshes happen in place through :meth:`update`, so every holder of the
    object sees the new value.
    """

    kind: TokenKind
    value: str | None = field(default=None, repr=False)
    obtained_at: float = 0.0
    # UNIX seconds from a JWT ``exp`` claim, when the token carries one.
    expires_at: int | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def update(self, grant: TokenGrant, *, clock: Clock = default_clock) -> None:
        with self._lock:
            self.value = grant.value
            self.expires_at = grant.expires_at
            self.obtained_at = clock()

    def clear(self) -> None:
        with self._lock:
            self.value = None
            self.expires_at = None
            self.obtained_at = 0.0

    @property
    def has_known_expiry(self) -> bool:
        return bool(self.expires_at)

    def is_valid(
        self,
        *,
        ttl_seconds: float,
        margin_seconds: float,
        clock: Clock = default_clock,
    ) -> bool:
        """Return *True* while the token is present and not (nearly) expired.

        A known ``exp`` wins: the token is invalid once ``now >= exp - margin``.
        Without one, the token is assumed to live *ttl_seconds* after it was
        obtained.
        """
        with self._lock:
            value, expires_at, obtained_at = self.value, self.expires_at, self.obtained_at
        if not value:
            return False
        now = clock()
        if expires_at:
            return now < expires_at - margin_seconds
        if obtained_at:
            return now - obtained_at < ttl_seconds
        return True
