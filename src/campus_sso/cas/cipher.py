"""RSA transport encryption of the CAS password.

The CAS login page encrypts the password with the server's RSA public key
(PKCS#1 v1.5) and posts ``__RSA__<base64 ciphertext>``.  The key is served as
text from ``/cas/jwt/publicKey``; the server has been seen to return either a
regular X.509 ``PUBLIC KEY`` PEM or a bare PKCS#1 ``RSAPublicKey`` blob, so
both are accepted.  Bare PKCS#1 material is wrapped into an X.509
SubjectPublicKeyInfo before parsing.

The plaintext password is never logged and never leaves this module except as
ciphertext.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import threading
from typing import Final

import requests
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from campus_sso.cas.errors import NetworkFailure, RsaKeyParseFailure
from campus_sso.utils.http import endpoint_of, send

_LOG = logging.getLogger("campus-sso.cas.cipher")

RSA_PREFIX: Final[str] = "__RSA__"

# AlgorithmIdentifier { rsaEncryption, NULL }
_RSA_ALGORITHM_ID: Final[bytes] = bytes.fromhex("300d06092a864886f70d0101010500")
_PEM_ARMOR_RE = re.compile(r"-----(BEGIN|END)[^-]*-----")


def _der_length(n: int) -> bytes:
    if n < 0x80:
        return bytes([n])
    raw = n.to_bytes((n.bit_length() + 7) // 8, "big")
    return bytes([0x80 | len(raw)]) + raw


def _der(tag: int, content: bytes) -> bytes:
    return bytes([tag]) + _der_length(len(content)) + content


def wrap_pkcs1_public_key(pkcs1_der: bytes) -> bytes:
    """Wrap a PKCS#1 ``RSAPublicKey`` DER blob into X.509 SubjectPublicKeyInfo."""
    bit_string = _der(0x03, b"\x00" + pkcs1_der)
    return _der(0x30, _RSA_ALGORITHM_ID + bit_string)


def load_public_key(text: str) -> rsa.RSAPublicKey:
    """Parse *text* into an RSA public key.

    Accepts PEM (``PUBLIC KEY`` or ``RSA PUBLIC KEY``) and unarmored base64 DER
    of either structure.

    Raises
    ------
    RsaKeyParseFailure
        If no interpretation yields an RSA public key.
    """
    text = (text or "").strip()
    if not text:
        raise RsaKeyParseFailure("RSA public key is empty")

    if "-----BEGIN" in text:
        try:
            key = serialization.load_pem_public_key(text.encode("ascii"))
        except (ValueError, UnsupportedAlgorithm, UnicodeEncodeError):
            key = None
        if isinstance(key, rsa.RSAPublicKey):
            return key

    body = re.sub(r"\s+", "", _PEM_ARMOR_RE.sub("", text))
    try:
        der = base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError):
        raise RsaKeyParseFailure("RSA public key is not valid base64") from None

    for candidate in (der, wrap_pkcs1_public_key(der)):
        try:
            key = serialization.load_der_public_key(candidate)
        except (ValueError, UnsupportedAlgorithm):
            continue
        if isinstance(key, rsa.RSAPublicKey):
            return key
    raise RsaKeyParseFailure("RSA public key could not be parsed as X.509 or PKCS#1")


class RsaPasswordCipher:
    """Fetch, cache and apply the CAS RSA public key."""

    def __init__(
        self,
        session: requests.Session,
        *,
        public_key_url: str,
        referer: str | None = None,
        cached_key: str | None = None,
    ) -> None:
        self.session = session
        self.public_key_url = public_key_url
        self.referer = referer
        self._pem: str | None = cached_key
        self._lock = threading.Lock()

    @property
    def public_key(self) -> str | None:
        """Cached PEM text (``None`` until fetched), e.g. for callers that persist it."""
        return self._pem

    def clear(self) -> None:
        with self._lock:
            self._pem = None

    def get_public_key(self, force_refresh: bool = False) -> str:
        """Return the PEM text, fetching it once and caching it."""
        with self._lock:
            if force_refresh or self._pem is None:
                self._pem = self._fetch()
            return self._pem

    def _fetch(self) -> str:
        headers = {"Referer": self.referer} if self.referer else {}
        response = send(self.session, "GET", self.public_key_url, headers=headers)
        if response.status_code != 200:
            raise NetworkFailure(
                f"public key endpoint returned {response.status_code}",
                endpoint=endpoint_of(self.public_key_url),
                status_code=response.status_code,
            )
        _LOG.debug("Fetched RSA public key (%d chars)", len(response.text))
        return response.text.strip()

    def _replace_bad_key(self, bad_pem: str) -> str:
        """Refetch unless another caller already replaced *bad_pem*."""
        with self._lock:
            if self._pem is None or self._pem == bad_pem:
                _LOG.warning("Cached RSA key unparsable; refetching once")
                self._pem = None
                self._pem = self._fetch()
            return self._pem

    def encrypt(self, password: str, key: str | None = None) -> str:
        """Encrypt *password* and return ``__RSA__<base64>``.

        With no explicit *key*, the cached server key is used; if it fails to
        parse, the cache is dropped and the key refetched exactly once, even
        when several callers hit the same bad key concurrently.
        """
        if key is not None:
            public_key = load_public_key(key)
        else:
            pem = self.get_public_key()
            try:
                public_key = load_public_key(pem)
            except RsaKeyParseFailure:
                try:
                    public_key = load_public_key(self._replace_bad_key(pem))
                except RsaKeyParseFailure as exc:
                    raise RsaKeyParseFailure(
                        f"{exc} (after refetch)", endpoint=endpoint_of(self.public_key_url)
                    ) from exc

        ciphertext = public_key.encrypt(password.encode("utf-8"), padding.PKCS1v15())
        return RSA_PREFIX + base64.b64encode(ciphertext).decode("ascii")
