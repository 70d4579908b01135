"""reqkit curl import - turn saved curl invocations into requests."""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from reqkit.body import NoBody, from_content_type
from reqkit.core import split_query_params, walk_files
from reqkit.digest import Digest, extract_challenge
from reqkit.errors import (
    CouldNotParseCurlError,
    CouldNotReadCurlFileError,
    CurlUrlError,
    UnknownMethodError,
)
from reqkit.key_value import KeyValue
from reqkit.models import (
    Auth,
    BasicAuth,
    BearerToken,
    HttpRequest,
    Method,
    NoAuth,
    Request,
    SharedRequest,
)

logger = logging.getLogger(__name__)

DATA_FLAGS = ("-d", "--data", "--data-raw", "--data-binary", "--data-ascii", "--data-urlencode")

# Flags that take a value, by every spelling curl accepts
_VALUE_FLAGS = {
    "-X": "method",
    "--request": "method",
    "-H": "header",
    "--header": "header",
    "-u": "user",
    "--user": "user",
    "--url": "url",
    "--json": "json",
    "-F": "form",
    "--form": "form",
    **{flag: "data" for flag in DATA_FLAGS},
}

# Flags known to stand alone, so the URL after them is never taken as their value
_SWITCHES = {
    "-k", "--insecure", "-L", "--location", "-s", "--silent", "-S", "--show-error",
    "-v", "--verbose", "-i", "--include", "-f", "--fail", "-g", "--globoff",
    "-G", "--get", "--compressed", "--http1.1", "--http2", "-N", "--no-buffer",
}


@dataclass
class ParsedCurl:
    """Flags of one curl invocation that matter to a request."""

    method: str = "GET"
    url: str = ""
    headers: list[tuple[str, str]] = field(default_factory=list)
    data: list[str] = field(default_factory=list)
    forms: list[str] = field(default_factory=list)
    user: str | None = None
    digest: bool = False
    explicit_method: bool = False


def parse_curl(curl_command: str) -> ParsedCurl:
    """Tokenize a curl command line.

    Handles quoted strings, escaped newlines, `--flag=value` and glued short
    flags such as `-XPOST`. Raises CouldNotParseCurlError on shell syntax
    errors or a missing URL.
    """
    cmd = curl_command.replace("\\\r\n", " ").replace("\\\n", " ").strip()

    try:
        tokens = shlex.split(cmd)
    except ValueError as e:
        raise CouldNotParseCurlError(str(e)) from e

    if tokens and tokens[0] == "curl":
        tokens = tokens[1:]

    result = ParsedCurl()
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        value: str | None = None
        kind: str | None = None

        if tok.startswith("--") and "=" in tok and tok.split("=", 1)[0] in _VALUE_FLAGS:
            flag, value = tok.split("=", 1)
            kind = _VALUE_FLAGS[flag]
            i += 1
        elif tok in _VALUE_FLAGS:
            if i + 1 >= len(tokens):
                raise CouldNotParseCurlError(f"{tok} expects a value")
            kind, value = _VALUE_FLAGS[tok], tokens[i + 1]
            i += 2
        elif not tok.startswith("--") and len(tok) > 2 and tok[:2] in _VALUE_FLAGS:
            kind, value = _VALUE_FLAGS[tok[:2]], tok[2:]
            i += 1
        elif tok in ("-I", "--head") or _is_switch_cluster(tok):
            # -sSI and friends: each letter is a standalone switch
            if tok == "--head" or "I" in tok:
                result.method = "HEAD"
                result.explicit_method = True
            i += 1
            continue
        elif tok == "--digest":
            result.digest = True
            i += 1
            continue
        elif tok.startswith("-") and len(tok) > 1:
            # Skip unknown flags; consume next token if it looks like a value
            nxt = tokens[i + 1] if i + 1 < len(tokens) else None
            if tok not in _SWITCHES and nxt is not None and not nxt.startswith("-") and "://" not in nxt:
                i += 2
            else:
                i += 1
            continue
        else:
            # Positional argument = URL
            if not result.url:
                result.url = tok
            i += 1
            continue

        _apply_flag(result, kind, value)

    if not result.url:
        raise CouldNotParseCurlError("no URL specified")
    return result


def _is_switch_cluster(tok: str) -> bool:
    if not tok.startswith("-") or tok.startswith("--") or len(tok) < 3:
        return False
    return all(letter == "I" or f"-{letter}" in _SWITCHES for letter in tok[1:])


def _apply_flag(result: ParsedCurl, kind: str, value: str) -> None:
    if kind == "method":
        result.method = value.upper()
        result.explicit_method = True
    elif kind == "header":
        name, sep, header_value = value.partition(":")
        if sep:
            result.headers.append((name.strip().lower(), header_value.strip()))
    elif kind == "user":
        result.user = value
    elif kind == "url":
        result.url = value
    elif kind == "form":
        result.forms.append(value)
    elif kind in ("data", "json"):
        result.data.append(value)
        if kind == "json":
            names = {name for name, _ in result.headers}
            if "content-type" not in names:
                result.headers.append(("content-type", "application/json"))
            if "accept" not in names:
                result.headers.append(("accept", "application/json"))
        if not result.explicit_method:
            result.method = "POST"


def _split_user(user: str) -> tuple[str, str]:
    username, _, password = user.partition(":")
    return username, password


def _resolve_auth(parsed: ParsedCurl) -> Auth:
    # -u without --digest wins over any Authorization header
    if parsed.user is not None and not parsed.digest:
        username, password = _split_user(parsed.user)
        return BasicAuth(username=username, password=password)

    digest_credentials = _split_user(parsed.user) if parsed.user is not None else None
    authorization = next((value for name, value in parsed.headers if name == "authorization"), None)

    if authorization is None:
        if digest_credentials is None:
            return NoAuth()
        username, password = digest_credentials
        return Digest(username=username, password=password)

    if authorization.startswith("Bearer "):
        return BearerToken(token=authorization.removeprefix("Bearer "))

    if authorization.startswith("Digest "):
        username, password = digest_credentials or ("", "")
        digest = Digest(username=username, password=password)
        digest.apply_challenge(extract_challenge(authorization))
        return digest

    return NoAuth()


def build_request(parsed: ParsedCurl, request_name: str) -> Request:
    """Map a tokenized curl invocation onto a Request."""
    try:
        url, params = split_query_params(parsed.url)
    except ValueError as e:
        raise CurlUrlError(str(e)) from e

    try:
        method = Method.parse(parsed.method)
    except ValueError as e:
        raise UnknownMethodError(str(e)) from e

    headers = [KeyValue.of(name, value) for name, value in parsed.headers if name != "authorization"]
    auth = _resolve_auth(parsed)

    if parsed.forms:
        logger.warning("%s: -F/--form is not supported, form fields are dropped", request_name)

    # Without a content-type header the payload is dropped
    body = NoBody()
    if parsed.data:
        content_type = next((kv.value for kv in headers if kv.name == "content-type"), None)
        if content_type is not None:
            body = from_content_type(content_type, "\n".join(parsed.data))

    return Request(
        name=request_name,
        url=url,
        params=params,
        headers=headers,
        auth=auth,
        protocol=HttpRequest(method=method, body=body),
    )


def parse_request(path: str | Path, request_name: str) -> SharedRequest:
    """Import one curl file as a request named `request_name`."""
    try:
        curl_text = Path(path).read_text()
    except (OSError, UnicodeDecodeError) as e:
        raise CouldNotReadCurlFileError(str(e)) from e

    logger.info("Request name: %s", request_name)

    return SharedRequest(build_request(parse_curl(curl_text), request_name))


def parse_requests_recursively(
    path: str | Path,
    recursive: bool,
    max_depth: int,
) -> list[SharedRequest]:
    """Import every file under `path`; file names become request names.

    The first failing file aborts the whole import.
    """
    return [parse_request(file, file.name) for file in walk_files(path, recursive, max_depth)]
