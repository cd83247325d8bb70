"""WebVPN URL codec.

Off-campus clients reach internal systems through ``webvpn.xjtu.edu.cn``,
which expects the target hostname AES-128-CFB encrypted (public key and IV
``wrdvpnisthebest!``) and hex-encoded into the path::

    http://bkkq.xjtu.edu.cn/path
    -> https://webvpn.xjtu.edu.cn/http/<iv-hex><encrypted-host-hex>/path

A non-default port is appended to the scheme segment (``http-8086``).
The CAS host itself is public and is reached directly so that its
ticket-granting cookie stays usable for SSO.
"""

from __future__ import annotations

from typing import Any, Final, Iterable
from urllib.parse import urlsplit

import requests
from cryptography.hazmat.decrepit.ciphers.modes import CFB
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms

from campus_sso.utils.http import CasSession

INSTITUTION: Final[str] = "webvpn.xjtu.edu.cn"
WEBVPN_LOGIN_URL: Final[str] = f"https://{INSTITUTION}/login?cas_login=true"

_KEY: Final[bytes] = b"wrdvpnisthebest!"
_IV: Final[bytes] = b"wrdvpnisthebest!"
_IV_HEX: Final[str] = _IV.hex()


def _cipher() -> Cipher:
    return Cipher(algorithms.AES(_KEY), CFB(_IV))


def encrypt_hostname(hostname: str) -> str:
    encryptor = _cipher().encryptor()
    return (encryptor.update(hostname.encode("utf-8")) + encryptor.finalize()).hex()


def decrypt_hostname(hex_text: str) -> str:
    decryptor = _cipher().decryptor()
    raw = bytes.fromhex(hex_text)
    return (decryptor.update(raw) + decryptor.finalize()).decode("utf-8")


def is_webvpn_url(url: str) -> bool:
    return url.startswith(f"https://{INSTITUTION}") or url.startswith(f"http://{INSTITUTION}")


def encrypt_url(url: str) -> str:
    """Translate a plain URL to its WebVPN form (WebVPN URLs pass through)."""
    if is_webvpn_url(url):
        return url
    parts = urlsplit(url)
    if not parts.scheme or not parts.hostname:
        return url
    port_suffix = f"-{parts.port}" if parts.port else ""
    tail = parts.path.lstrip("/")
    if parts.query:
        tail += f"?{parts.query}"
    if parts.fragment:
        tail += f"#{parts.fragment}"
    return (
        f"https://{INSTITUTION}/{parts.scheme}{port_suffix}/"
        f"{_IV_HEX}{encrypt_hostname(parts.hostname)}/{tail}"
    )


def decrypt_url(vpn_url: str) -> str | None:
    """Inverse of :func:`encrypt_url`; ``None`` when *vpn_url* is not decodable."""
    if not is_webvpn_url(vpn_url):
        return None
    path = vpn_url.split(INSTITUTION, 1)[1].lstrip("/")
    segments = path.split("/", 2)
    if len(segments) < 2 or len(segments[1]) <= len(_IV_HEX):
        return None
    protocol, _, port = segments[0].partition("-")
    try:
        domain = decrypt_hostname(segments[1][len(_IV_HEX):])
    except ValueError:
        return None
    rest = f"/{segments[2]}" if len(segments) > 2 and segments[2] else ""
    port_part = f":{port}" if port else ""
    return f"{protocol}://{domain}{port_part}{rest}"


class WebVpnSession(CasSession):
    """Session that routes every request through WebVPN, except *bypass_hosts*."""

    def __init__(
        self,
        timeout: tuple[float, float] = (30.0, 30.0),
        bypass_hosts: Iterable[str] = ("login.xjtu.edu.cn",),
    ) -> None:
        super().__init__(timeout=timeout)
        self.bypass_hosts = frozenset(bypass_hosts)

    def request(self, method: str, url: str, *args: Any, **kwargs: Any) -> requests.Response:  # type: ignore[override]
        host = url.split("://", 1)[-1].split("/", 1)[0].split(":", 1)[0]
        if host not in self.bypass_hosts:
            url = encrypt_url(url)
        return super().request(method, url, *args, **kwargs)
