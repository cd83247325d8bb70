"""Phone-code second factor.

Flow, driven by the caller after ``login()`` returned ``REQUIRE_MFA``::

    challenge = outcome.mfa
    challenge.get_masked_phone()   # already cached by login()
    challenge.send_code()
    challenge.verify_code("123456")
    machine.login()                # submits with mfaState, consumes the challenge

A challenge is single use: once the form submit that carries its state has
been made, the state machine discards it.
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from campus_sso.cas.errors import MfaError, MfaVerificationFailed, UnexpectedResponse
from campus_sso.utils.environment import SsoSettings
from campus_sso.utils.http import endpoint_of, send

_LOG = logging.getLogger("campus-sso.cas.mfa")

_INIT_PATH = "/cas/mfa/initByType/securephone"
_SEND_PATH = "/attest/api/guard/securephone/send"
_VALID_PATH = "/attest/api/guard/securephone/valid"


def _json_body(response: requests.Response, url: str) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        raise UnexpectedResponse(
            f"non-JSON answer (HTTP {response.status_code})", endpoint=endpoint_of(url)
        ) from None
    if not isinstance(body, dict):
        raise UnexpectedResponse("JSON answer is not an object", endpoint=endpoint_of(url))
    return body


def _code_of(body: dict[str, Any]) -> int | None:
    try:
        return int(body.get("code"))
    except (TypeError, ValueError):
        return None


class MfaChallenge:
    """Server-side MFA context identified by *state*."""

    def __init__(
        self,
        session: requests.Session,
        state: str,
        *,
        required: bool = True,
        settings: SsoSettings | None = None,
    ) -> None:
        self.session = session
        self.state = state
        self.required = required
        self.settings = settings or SsoSettings()
        self.gid: str | None = None
        self.masked_phone: str | None = None
        self.verified = False
        self.consumed = False

    def __repr__(self) -> str:
        return (
            f"MfaChallenge(required={self.required}, phone={self.masked_phone!r}, "
            f"verified={self.verified}, consumed={self.consumed})"
        )

    def _ensure_live(self) -> None:
        if self.consumed:
            raise MfaError("MFA challenge already used; log in again for a new one")

    def get_masked_phone(self) -> str:
        """Return the bound phone number with its middle digits hidden."""
        if self.masked_phone is not None:
            return self.masked_phone
        self._ensure_live()
        url = self.settings.cas_url(_INIT_PATH)
        response = send(self.session, "GET", url, params={"state": self.state})
        body = _json_body(response, url)
        data = body.get("data") or {}
        if _code_of(body) != 0 or not data.get("gid"):
            raise MfaError(
                body.get("message") or "could not load the bound phone number",
                endpoint=endpoint_of(url),
            )
        self.gid = str(data["gid"])
        self.masked_phone = str(data.get("securePhone") or "")
        _LOG.debug("MFA phone loaded (%s)", self.masked_phone)
        return self.masked_phone

    def send_code(self) -> str:
        """Dispatch an SMS code; returns the masked phone it went to."""
        self._ensure_live()
        if self.gid is None or self.masked_phone is None:
            raise MfaError("phone number must be fetched before a code can be sent")
        url = self.settings.cas_url(_SEND_PATH)
        response = send(self.session, "POST", url, json={"gid": self.gid})
        body = _json_body(response, url)
        if _code_of(body) != 0:
            raise MfaError(body.get("message") or "code dispatch refused", endpoint=endpoint_of(url))
        _LOG.info("MFA code sent to %s", self.masked_phone)
        return self.masked_phone

    def verify_code(self, code: str) -> None:
        """Validate *code*; raises ``MfaVerificationFailed`` when the server rejects it."""
        self._ensure_live()
        if self.gid is None:
            raise MfaError("a code must be sent before it can be verified")
        url = self.settings.cas_url(_VALID_PATH)
        response = send(self.session, "POST", url, json={"gid": self.gid, "code": code})
        body = _json_body(response, url)
        if _code_of(body) != 0:
            raise MfaVerificationFailed(
                body.get("message") or "verification code rejected", endpoint=endpoint_of(url)
            )
        self.verified = True
        _LOG.info("MFA code accepted")
