"""Digest access authentication (RFC 7616).

Covers the three pieces a client needs:

- parsing a ``WWW-Authenticate: Digest ...`` challenge into its fields,
- keeping those fields (plus the credentials) on a :class:`Digest` auth value,
- computing the ``Authorization: Digest ...`` header for one request.

The nonce count lives on the :class:`Digest` value as private state: it is
bumped by the executor before every send and is never serialized.
"""

from __future__ import annotations

import hashlib
import secrets
from enum import Enum
from typing import Literal, NamedTuple

from pydantic import BaseModel, PrivateAttr

from reqkit.errors import (
    DigestHeaderSyntaxError,
    InvalidAlgorithmError,
    InvalidBooleanError,
    InvalidCharsetError,
    InvalidQopError,
)


class DigestAlgorithm(str, Enum):
    MD5 = "MD5"
    MD5_SESS = "MD5-sess"
    SHA256 = "SHA-256"
    SHA256_SESS = "SHA-256-sess"
    SHA512_256 = "SHA-512-256"
    SHA512_256_SESS = "SHA-512-256-sess"

    @classmethod
    def parse(cls, text: str) -> DigestAlgorithm:
        for algorithm in cls:
            if algorithm.value.lower() == text.strip().lower():
                return algorithm
        raise InvalidAlgorithmError(text)

    @property
    def is_session(self) -> bool:
        return self.value.endswith("-sess")

    @property
    def hash_name(self) -> str:
        return _HASH_NAMES[self.value.removesuffix("-sess")]


_HASH_NAMES = {
    "MD5": "md5",
    "SHA-256": "sha256",
    "SHA-512-256": "sha512_256",
}


class DigestQop(str, Enum):
    NONE = "None"
    AUTH = "auth"
    AUTH_INT = "auth-int"


class DigestCharset(str, Enum):
    ASCII = "ASCII"
    UTF8 = "UTF8"

    @classmethod
    def parse(cls, text: str) -> DigestCharset:
        normalized = text.strip().upper().replace("-", "")
        if normalized == "UTF8":
            return cls.UTF8
        if normalized in ("ASCII", "USASCII"):
            return cls.ASCII
        raise InvalidCharsetError(text)


class DigestChallenge(NamedTuple):
    domains: str
    realm: str
    nonce: str
    opaque: str
    stale: bool
    algorithm: DigestAlgorithm
    qop: DigestQop
    user_hash: bool
    charset: DigestCharset


class Digest(BaseModel):
    type: Literal["digest"] = "digest"
    username: str = ""
    password: str = ""

    domains: str = ""
    realm: str = ""
    nonce: str = ""
    opaque: str = ""
    stale: bool = False

    algorithm: DigestAlgorithm = DigestAlgorithm.MD5
    qop: DigestQop = DigestQop.NONE
    user_hash: bool = False
    charset: DigestCharset = DigestCharset.ASCII

    _nonce_count: int = PrivateAttr(default=0)

    @property
    def nonce_count(self) -> int:
        return self._nonce_count

    def next_nonce_count(self) -> int:
        self._nonce_count += 1
        return self._nonce_count

    def reset_nonce_count(self) -> None:
        self._nonce_count = 0

    def apply_challenge(self, challenge: DigestChallenge) -> None:
        """Replace the server-supplied fields, keeping the credentials."""
        if challenge.nonce != self.nonce:
            self.reset_nonce_count()
        self.domains = challenge.domains
        self.realm = challenge.realm
        self.nonce = challenge.nonce
        self.opaque = challenge.opaque
        self.stale = challenge.stale
        self.algorithm = challenge.algorithm
        self.qop = challenge.qop
        self.user_hash = challenge.user_hash
        self.charset = challenge.charset

    def update_from_www_authenticate(self, headers: list[tuple[str, str]]) -> bool:
        """Apply the first Digest challenge found in response headers.

        Returns True when a challenge was applied.
        """
        for name, value in headers:
            if name.lower() == "www-authenticate" and value.lstrip().lower().startswith("digest"):
                self.apply_challenge(extract_challenge(value))
                return True
        return False


def parse_challenge_params(header_value: str) -> dict[str, str]:
    """Split `key=value, key="quoted value"` pairs into a dict with lowercased keys."""
    text = header_value.strip()
    scheme, _, rest = text.partition(" ")
    if scheme.lower() == "digest":
        text = rest

    params: dict[str, str] = {}
    i, n = 0, len(text)
    while i < n:
        while i < n and text[i] in " \t,":
            i += 1
        if i >= n:
            break

        start = i
        while i < n and (text[i].isalnum() or text[i] in "-_"):
            i += 1
        key = text[start:i].lower()
        if not key:
            raise DigestHeaderSyntaxError(text[start:])

        while i < n and text[i] in " \t":
            i += 1
        if i >= n or text[i] != "=":
            raise DigestHeaderSyntaxError(f"expected '=' after {key}")
        i += 1
        while i < n and text[i] in " \t":
            i += 1

        if i < n and text[i] == '"':
            i += 1
            chars: list[str] = []
            while True:
                if i >= n:
                    raise DigestHeaderSyntaxError(f"unterminated quoted value for {key}")
                char = text[i]
                if char == "\\":
                    if i + 1 >= n:
                        raise DigestHeaderSyntaxError(f"dangling escape in {key}")
                    chars.append(text[i + 1])
                    i += 2
                    continue
                if char == '"':
                    i += 1
                    break
                chars.append(char)
                i += 1
            value = "".join(chars)

            while i < n and text[i] in " \t":
                i += 1
            if i < n and text[i] != ",":
                raise DigestHeaderSyntaxError(f"unexpected text after {key}: {text[i:]}")
        else:
            start = i
            while i < n and text[i] != ",":
                i += 1
            value = text[start:i].strip()
            if any(c in value for c in ' \t"'):
                raise DigestHeaderSyntaxError(f"{key}={value}")

        params[key] = value

    return params


def _parse_bool(field: str, value: str | None) -> bool:
    if value is None:
        return False
    lowered = value.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    raise InvalidBooleanError(field, value)


def _parse_qop(value: str | None) -> DigestQop:
    if value is None:
        return DigestQop.NONE
    options = [option.strip() for option in value.split(",") if option.strip()]
    if not options:
        return DigestQop.NONE
    if "auth-int" in options:
        return DigestQop.AUTH_INT
    if "auth" in options:
        return DigestQop.AUTH
    raise InvalidQopError(value)


def extract_challenge(header_value: str) -> DigestChallenge:
    """Parse a `WWW-Authenticate: Digest ...` value.

    Absent keys take their defaults; a key that is present but malformed
    raises the matching DigestError.
    """
    params = parse_challenge_params(header_value)

    algorithm = params.get("algorithm")
    charset = params.get("charset")

    return DigestChallenge(
        domains=params.get("domain", ""),
        realm=params.get("realm", ""),
        nonce=params.get("nonce", ""),
        opaque=params.get("opaque", ""),
        stale=_parse_bool("stale", params.get("stale")),
        algorithm=DigestAlgorithm.parse(algorithm) if algorithm is not None else DigestAlgorithm.MD5,
        qop=_parse_qop(params.get("qop")),
        user_hash=_parse_bool("userhash", params.get("userhash")),
        charset=DigestCharset.parse(charset) if charset is not None else DigestCharset.ASCII,
    )


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def authorization_header(
    digest: Digest,
    method: str,
    uri: str,
    body: bytes = b"",
    cnonce: str | None = None,
) -> str:
    """Compute the `Authorization` header value answering the stored challenge."""
    algorithm = digest.algorithm
    encoding = "utf-8" if digest.charset == DigestCharset.UTF8 else "latin-1"

    def h(data: str | bytes) -> str:
        if isinstance(data, str):
            data = data.encode(encoding, errors="replace")
        return hashlib.new(algorithm.hash_name, data).hexdigest()

    cnonce = cnonce or secrets.token_hex(8)
    nc = f"{digest.nonce_count:08x}"

    ha1 = h(f"{digest.username}:{digest.realm}:{digest.password}")
    if algorithm.is_session:
        ha1 = h(f"{ha1}:{digest.nonce}:{cnonce}")

    if digest.qop == DigestQop.AUTH_INT:
        ha2 = h(f"{method}:{uri}:{h(body)}")
    else:
        ha2 = h(f"{method}:{uri}")

    if digest.qop == DigestQop.NONE:
        response = h(f"{ha1}:{digest.nonce}:{ha2}")
    else:
        response = h(f"{ha1}:{digest.nonce}:{nc}:{cnonce}:{digest.qop.value}:{ha2}")

    username = h(f"{digest.username}:{digest.realm}") if digest.user_hash else digest.username

    parts = [
        f"username={_quote(username)}",
        f"realm={_quote(digest.realm)}",
        f"nonce={_quote(digest.nonce)}",
        f"uri={_quote(uri)}",
        f"algorithm={algorithm.value}",
        f"response={_quote(response)}",
    ]
    if digest.opaque:
        parts.append(f"opaque={_quote(digest.opaque)}")
    if digest.qop != DigestQop.NONE:
        parts.extend([f"qop={digest.qop.value}", f"nc={nc}", f"cnonce={_quote(cnonce)}"])
    if digest.user_hash:
        parts.append("userhash=true")
    if digest.charset == DigestCharset.UTF8:
        parts.append("charset=UTF-8")

    return "Digest " + ", ".join(parts)
