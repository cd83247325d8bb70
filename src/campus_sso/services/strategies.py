"""Token extraction strategies, one per way a downstream system carries its credential.

A strategy is handed the login machine and the final response of a successful
CAS login and returns a :class:`~campus_sso.cas.models.TokenGrant` (or
``None`` when the service keeps no token of its own).  Every strategy makes
at most one extra probe request of its own before giving up with
:class:`~campus_sso.cas.errors.TokenExtractionFailed`.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional, Protocol
from urllib.parse import parse_qs, urlsplit

import jwt
import requests

from campus_sso.cas import forms
from campus_sso.cas.errors import TokenExtractionFailed
from campus_sso.cas.models import TokenGrant, TokenKind
from campus_sso.utils.http import endpoint_of, send
from campus_sso.utils.logging import mask_sensitive

if TYPE_CHECKING:  # pragma: no cover
    from campus_sso.cas.login import LoginStateMachine
    from campus_sso.services.legacy_cas import LegacyCasAuthenticator

_LOG = logging.getLogger("campus-sso.services.strategies")

_QUERY_TOKEN_RE = re.compile(r"(?:^|[?&#/])token=([^&#]*)")


class TokenExtractionStrategy(Protocol):
    kind: TokenKind

    def extract(
        self, machine: "LoginStateMachine", response: requests.Response
    ) -> Optional[TokenGrant]: ...


# --------------------------------------------------------------------------- #
# Helpers                                                                     #
# --------------------------------------------------------------------------- #
def extract_query_token(url: str | None) -> str | None:
    """Value of a ``token=`` parameter in *url*, ending at ``&`` or ``#``.

    >>> extract_query_token("http://x/app?token=ABC&x=1")
    'ABC'
    >>> extract_query_token("http://x/app?token=ABC#frag")
    'ABC'
    """
    match = _QUERY_TOKEN_RE.search(url or "")
    if match is None or not match.group(1):
        return None
    return match.group(1)


def decode_jwt_payload(token: str) -> dict[str, Any]:
    """Decode the claims of a JWT without verifying its signature or expiry."""
    try:
        return jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as exc:
        raise TokenExtractionFailed(f"value is not a decodable JWT: {exc}") from None


def _exp_claim(payload: dict[str, Any]) -> int | None:
    try:
        exp = int(payload.get("exp") or 0)
    except (TypeError, ValueError):
        return None
    return exp or None


def _cookie_matches(cookie_domain: str | None, host: str) -> bool:
    domain = (cookie_domain or "").lstrip(".")
    return bool(domain) and (host == domain or host.endswith("." + domain))


def find_cookie(session: requests.Session, name: str, host: str) -> str | None:
    """Value of cookie *name* that the jar would send to *host*."""
    for cookie in session.cookies:
        if cookie.name == name and cookie.value and _cookie_matches(cookie.domain, host):
            return cookie.value
    return None


# --------------------------------------------------------------------------- #
# Strategies                                                                  #
# --------------------------------------------------------------------------- #
@dataclass
class QueryParamTokenStrategy:
    """``token=`` in the URL the redirect chain settles on (jwapp, attendance)."""

    probe_url: str | None = None
    kind: TokenKind = field(default=TokenKind.QUERY_PARAM, init=False)

    def extract(self, machine: "LoginStateMachine", response: requests.Response) -> TokenGrant:
        token = extract_query_token(response.url)
        if token is None:
            url = self.probe_url or machine.login_url
            _LOG.debug("No token in %s; probing %s", endpoint_of(response.url), endpoint_of(url))
            token = extract_query_token(send(machine.session, "GET", url).url)
        if token is None:
            raise TokenExtractionFailed(
                "no token= parameter after the redirect chain", endpoint=endpoint_of(response.url)
            )
        _LOG.debug("Query token extracted (%s)", mask_sensitive(token))
        return TokenGrant(token)


@dataclass
class JwtTicketStrategy:
    """CAS ``ticket`` that is itself a JWT carrying ``idToken`` and ``exp`` (ywtb)."""

    claim: str = "idToken"
    probe_url: str | None = None
    kind: TokenKind = field(default=TokenKind.JWT_TICKET, init=False)

    @staticmethod
    def _ticket(url: str | None) -> str | None:
        values = parse_qs(urlsplit(url or "").query).get("ticket")
        return values[0] if values and values[0] else None

    def extract(self, machine: "LoginStateMachine", response: requests.Response) -> TokenGrant:
        ticket = self._ticket(response.url)
        if ticket is None:
            url = self.probe_url or machine.login_url
            ticket = self._ticket(send(machine.session, "GET", url).url)
        if ticket is None:
            raise TokenExtractionFailed("no ticket in redirect URL", endpoint=endpoint_of(response.url))

        payload = decode_jwt_payload(ticket)
        id_token = payload.get(self.claim)
        if not id_token:
            raise TokenExtractionFailed(f"JWT has no {self.claim} claim")
        exp = _exp_claim(payload)
        _LOG.debug("%s extracted (%s), exp=%s", self.claim, mask_sensitive(str(id_token)), exp)
        return TokenGrant(str(id_token), expires_at=exp)


@dataclass
class CookieTokenStrategy:
    """Named session cookie set by the service (campus card ``hallticket``).

    When the cookie is missing after the CAS login and credentials are stored,
    the service's own legacy CAS is tried once before a final probe.
    """

    cookie_name: str
    cookie_host: str
    probe_url: str | None = None
    legacy: Optional["LegacyCasAuthenticator"] = None
    kind: TokenKind = field(default=TokenKind.COOKIE, init=False)

    def _lookup(self, machine: "LoginStateMachine") -> str | None:
        return find_cookie(machine.session, self.cookie_name, self.cookie_host)

    def extract(self, machine: "LoginStateMachine", response: requests.Response) -> TokenGrant:
        value = self._lookup(machine)
        if value is None and self.legacy is not None:
            if machine.credential is not None:
                self.legacy.authenticate(machine.session, machine.credential)
                value = self._lookup(machine)
            else:
                _LOG.debug("No %s yet and no stored credentials; skipping legacy CAS", self.cookie_name)
        if value is None and self.probe_url:
            send(machine.session, "GET", self.probe_url)
            value = self._lookup(machine)
        if value is None:
            raise TokenExtractionFailed(
                f"cookie {self.cookie_name} not set for {self.cookie_host}",
                endpoint=endpoint_of(response.url),
            )
        _LOG.debug("%s cookie found (%s)", self.cookie_name, mask_sensitive(value, 8))
        return TokenGrant(value)


@dataclass
class EmbeddedJwtStrategy:
    """JWT assigned in an inline script of the service landing page (payment QR)."""

    probe_url: str | None = None
    kind: TokenKind = field(default=TokenKind.EMBEDDED_JWT, init=False)

    def extract(self, machine: "LoginStateMachine", response: requests.Response) -> TokenGrant:
        token = forms.extract_embedded_jwt(response.text)
        if token is None:
            token = forms.extract_embedded_jwt(
                send(machine.session, "GET", self.probe_url or machine.login_url).text
            )
        token = forms.require(token, "embedded_jwt", endpoint=endpoint_of(response.url))
        try:
            exp = _exp_claim(decode_jwt_payload(token))
        except TokenExtractionFailed:
            exp = None
        return TokenGrant(token, expires_at=exp)


@dataclass
class StatelessStrategy:
    """Cookie-only services: nothing to extract beyond leaving the CAS form behind."""

    kind: TokenKind = field(default=TokenKind.STATELESS, init=False)

    def extract(self, machine: "LoginStateMachine", response: requests.Response) -> None:
        if forms.extract_csrf_token(response.text) is not None:
            raise TokenExtractionFailed(
                "service redirect ended on a CAS login form", endpoint=endpoint_of(response.url)
            )
        return None
