"""Exception types raised by the CAS client core.

Expected business branches of a login (wrong password, CAPTCHA needed, MFA
needed, several identities) are returned as :class:`~campus_sso.cas.models.LoginOutcome`
values.  The exceptions below are for genuine failures, and for callers that
prefer raise-style handling via ``LoginOutcome.raise_for_state()``.

All exceptions are **data-carrying** and never hold secrets, so outer layers
can turn them into user-facing messages with :meth:`CasError.to_payload`.
"""

from __future__ import annotations

from typing import Any, Sequence


class CasError(RuntimeError):
    """Base class; *endpoint* names the host/path that failed, when known."""

    code = "cas_error"

    def __init__(self, message: str | None = None, *, endpoint: str | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.endpoint: str | None = endpoint

    def to_payload(self) -> dict[str, Any]:
        """Return a JSON-serialisable payload **without secrets**."""
        payload: dict[str, Any] = {"error": self.code, "message": str(self)}
        if self.endpoint:
            payload["endpoint"] = self.endpoint
        return payload


class InvalidCredentials(CasError):
    """The CAS server rejected the username/password."""

    code = "invalid_credentials"


class CaptchaRequired(CasError):
    """Too many failed attempts; a CAPTCHA answer must accompany the next login."""

    code = "captcha_required"


class MfaRequired(CasError):
    """The account requires a phone-code second factor."""

    code = "mfa_required"


class AccountAmbiguous(CasError):
    """The credential maps to several identities and none was selected."""

    code = "account_ambiguous"

    def __init__(
        self,
        message: str | None = None,
        *,
        choices: Sequence[Any] = (),
        endpoint: str | None = None,
    ) -> None:
        super().__init__(message, endpoint=endpoint)
        self.choices = tuple(choices)

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["choices"] = [getattr(c, "name", str(c)) for c in self.choices]
        return payload


class TokenExtractionFailed(CasError):
    """A service token could not be extracted after a successful CAS login."""

    code = "token_extraction_failed"


class MarkupPatternMissing(TokenExtractionFailed):
    """An HTML extraction rule found nothing where a match was mandatory."""

    code = "markup_pattern_missing"

    def __init__(self, rule: str, *, endpoint: str | None = None) -> None:
        super().__init__(f"HTML pattern not found: {rule}", endpoint=endpoint)
        self.rule = rule


class RsaKeyParseFailure(CasError):
    """The CAS RSA public key could not be parsed, even after a refetch."""

    code = "rsa_key_parse_failure"


class SessionExpired(CasError):
    """The CAS session is gone and cannot be restored without user input."""

    code = "session_expired"


class NetworkFailure(CasError):
    """Transport-level failure (connection, timeout, unexpected HTTP status)."""

    code = "network_failure"

    def __init__(
        self,
        message: str | None = None,
        *,
        endpoint: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, endpoint=endpoint)
        self.status_code = status_code

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        if self.status_code is not None:
            payload["status_code"] = self.status_code
        return payload


class UnexpectedResponse(CasError):
    """The server answered, but not in the documented shape (e.g. non-JSON)."""

    code = "unexpected_response"


class MfaError(CasError):
    """An MFA call failed or was made out of order."""

    code = "mfa_error"


class MfaVerificationFailed(MfaError):
    """The server rejected the submitted phone verification code."""

    code = "mfa_verification_failed"
