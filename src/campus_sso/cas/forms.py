"""Extraction rules over CAS-served HTML.

Every rule is a small pure function: no network, no exceptions on malformed
markup.  When a rule finds nothing it logs its name at DEBUG and returns an
empty value; callers for whom a match is mandatory wrap the result in
:func:`require`, which raises :class:`~campus_sso.cas.errors.MarkupPatternMissing`.

Two markup dialects are served by the CAS: the current Vue/Element one
(``<el-alert>``, ``div.account-wrap``) and the older Bootstrap one
(``.alert-danger``, radio inputs).  Both are checked, newest first.
"""

from __future__ import annotations

import logging
import re
from typing import TypeVar

from bs4 import BeautifulSoup
from bs4.builder import ParserRejectedMarkup

from campus_sso.cas.errors import MarkupPatternMissing
from campus_sso.cas.models import AccountChoice

_LOG = logging.getLogger("campus-sso.cas.forms")

T = TypeVar("T")

_MFA_ENABLED_RE = re.compile(r"""["']?mfaEnabled["']?\s*[:=]\s*["']?(true|false)["']?""")
_EMBEDDED_JWT_RE = re.compile(
    r"""sessionStorage\.Authorization\s*=\s*['"](eyJ[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]*)['"]"""
)


def _soup(html: str | None) -> BeautifulSoup | None:
    if not html:
        return None
    try:
        return BeautifulSoup(html, "html.parser")
    except ParserRejectedMarkup:
        _LOG.warning("Markup rejected by parser (%d chars)", len(html))
        return None


def _missing(rule: str) -> None:
    _LOG.debug("Extraction rule %s matched nothing", rule)


def extract_csrf_token(html: str | None) -> str | None:
    """Value of the ``execution`` hidden field, or ``None`` (already signed in)."""
    soup = _soup(html)
    node = soup.select_one("input[name=execution]") if soup else None
    value = node.get("value") if node else None
    if not value:
        _missing("csrf_token")
        return None
    return str(value)


def extract_mfa_enabled(html: str | None) -> bool:
    """Read ``mfaEnabled`` from the page's JS config; ``True`` when absent."""
    match = _MFA_ENABLED_RE.search(html or "")
    if match is None:
        _LOG.info("mfaEnabled flag not found; assuming MFA is enabled")
        return True
    return match.group(1) == "true"


def extract_error_banner(html: str | None) -> str | None:
    soup = _soup(html)
    if soup is None:
        return None
    alert = soup.select_one("el-alert")
    if alert is not None:
        title = (alert.get("title") or "").strip()
        if title:
            return title
        text = alert.get_text(" ", strip=True)
        if text:
            return text
    legacy = soup.select_one(".alert-danger, .errors, #errorMessage")
    if legacy is not None:
        text = legacy.get_text(" ", strip=True)
        if text:
            return text
    return None


def extract_account_choices(html: str | None) -> list[AccountChoice]:
    """Identities offered on the account-choice page, in page order."""
    soup = _soup(html)
    if soup is None:
        return []

    choices: list[AccountChoice] = []
    for wrap in soup.select("div.account-wrap"):
        name_node = wrap.select_one("div.name")
        radio = wrap.select_one("el-radio.checkbox-radio")
        label = (radio.get("label") or "").strip() if radio else ""
        if not label:
            continue
        name = name_node.get_text(strip=True) if name_node else ""
        choices.append(AccountChoice(name=name or label, label=label))
    if choices:
        return choices

    for node in soup.select("input[name=username][type=radio], input[name=username][type=hidden]"):
        label = (node.get("value") or "").strip()
        if not label:
            continue
        parent_text = node.parent.get_text(" ", strip=True) if node.parent else ""
        choices.append(AccountChoice(name=parent_text or label, label=label))
    return choices


def extract_hidden_fields(html: str | None, form_selector: str = "form") -> dict[str, str]:
    """Hidden ``<input>`` values of the first form matching *form_selector*."""
    soup = _soup(html)
    form = soup.select_one(form_selector) if soup else None
    if form is None:
        _missing(f"hidden_fields({form_selector})")
        return {}
    fields: dict[str, str] = {}
    for node in form.select("input[type=hidden][name]"):
        fields[str(node["name"])] = str(node.get("value") or "")
    return fields


def extract_title(html: str | None) -> str | None:
    soup = _soup(html)
    if soup is None or soup.title is None:
        return None
    return soup.title.get_text(strip=True) or None


def extract_embedded_jwt(html: str | None) -> str | None:
    """JWT assigned to ``sessionStorage.Authorization`` in an inline script."""
    match = _EMBEDDED_JWT_RE.search(html or "")
    if match is None:
        _missing("embedded_jwt")
        return None
    return match.group(1)


def require(value: T | None, rule: str, *, endpoint: str | None = None) -> T:
    """Return *value*, or raise ``MarkupPatternMissing`` naming *rule* if it is empty."""
    if not value:
        _LOG.warning("Mandatory extraction rule %s matched nothing", rule)
        raise MarkupPatternMissing(rule, endpoint=endpoint)
    return value
