"""CAS login core.

Building blocks for signing in to ``login.xjtu.edu.cn``, independent of any
particular downstream service.

Sub-modules
-----------
clock
    Test-friendly time abstraction.
cipher
    RSA transport encryption of the password.
forms
    Extraction rules over CAS-served HTML.
mfa
    Phone-code second factor.
login
    The login state machine.
models
    Outcome values, credentials and token slots.
errors
    Exception types used by the login logic.
log_utils
    Structured logging helpers (thin wrapper around :pymod:`logging`).

The network-free objects are re-exported here for convenience; import
``cipher``, ``mfa`` and ``login`` from their modules.
"""

from __future__ import annotations

from .clock import Clock, default_clock  # noqa: F401
from .errors import (  # noqa: F401
    AccountAmbiguous,
    CaptchaRequired,
    CasError,
    InvalidCredentials,
    MarkupPatternMissing,
    MfaError,
    MfaRequired,
    MfaVerificationFailed,
    NetworkFailure,
    RsaKeyParseFailure,
    SessionExpired,
    TokenExtractionFailed,
    UnexpectedResponse,
)
from .models import (  # noqa: F401
    AccountChoice,
    AccountType,
    Credential,
    LoginOutcome,
    LoginState,
    ServiceToken,
    TokenGrant,
    TokenKind,
)
from .log_utils import get_auth_logger  # noqa: F401

__all__ = [
    # clock
    "Clock",
    "default_clock",
    # errors
    "CasError",
    "InvalidCredentials",
    "CaptchaRequired",
    "MfaRequired",
    "AccountAmbiguous",
    "TokenExtractionFailed",
    "MarkupPatternMissing",
    "RsaKeyParseFailure",
    "SessionExpired",
    "NetworkFailure",
    "UnexpectedResponse",
    "MfaError",
    "MfaVerificationFailed",
    # models
    "AccountChoice",
    "AccountType",
    "Credential",
    "LoginOutcome",
    "LoginState",
    "ServiceToken",
    "TokenGrant",
    "TokenKind",
    # logging helpers
    "get_auth_logger",
]
