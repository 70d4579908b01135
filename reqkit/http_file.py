"""reqkit .http import - block-structured request files.

A file holds blocks separated by `###` lines (an optional request name
follows the hashes). Each block is a request line `METHOD URL [VERSION]`,
header lines up to the first blank line, then a body running to the next
separator. `#` and `//` lines are comments everywhere except the body.
"""

from __future__ import annotations

import base64
import binascii
import logging
from pathlib import Path
from urllib.parse import urlsplit

from reqkit.body import NoBody, Raw, from_content_type
from reqkit.core import split_query_params, walk_files
from reqkit.errors import (
    CouldNotParseMethodError,
    CouldNotReadHttpFileError,
    HttpFileUrlError,
    NoRequestsFoundError,
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
    WsRequest,
)

logger = logging.getLogger(__name__)

SEPARATOR = "###"
WEBSOCKET_METHOD = "WEBSOCKET"


def parse_http_files_recursively(
    path: str | Path,
    recursive: bool,
    max_depth: int,
) -> list[SharedRequest]:
    """Import every `*.http` file under `path`, aborting on the first error."""
    requests: list[SharedRequest] = []
    for file in walk_files(path, recursive, max_depth):
        if file.suffix == ".http":
            requests.extend(parse_http_file(file))
    return requests


def parse_http_file(path: str | Path) -> list[SharedRequest]:
    try:
        content = Path(path).read_text()
    except (OSError, UnicodeDecodeError) as e:
        raise CouldNotReadHttpFileError(str(e)) from e
    return parse_http_content(content)


def _is_comment(line: str) -> bool:
    # ### is a separator, not a comment
    if line.startswith(SEPARATOR):
        return False
    return line.startswith("#") or line.startswith("//")


def parse_http_content(content: str) -> list[SharedRequest]:
    """Parse `.http` text into requests. Raises NoRequestsFoundError when empty."""
    lines = content.splitlines()
    requests: list[SharedRequest] = []

    i = 0
    while i < len(lines):
        line = lines[i].strip()
        if not line or _is_comment(line):
            i += 1
            continue

        request_name = None
        if line.startswith(SEPARATOR):
            request_name = line.lstrip("#").strip() or None
            i += 1

        while i < len(lines):
            stripped = lines[i].strip()
            if stripped and not _is_comment(stripped):
                break
            i += 1

        if i >= len(lines):
            break

        request_line = lines[i].strip()
        # Another separator: let the outer loop handle it
        if request_line.startswith(SEPARATOR):
            continue

        parts = request_line.split(None, 2)
        if len(parts) < 2:
            i += 1
            continue

        method_text, url_text = parts[0], parts[1]
        is_websocket = method_text == WEBSOCKET_METHOD
        method = None
        if not is_websocket:
            try:
                method = Method.parse(method_text)
            except ValueError as e:
                raise CouldNotParseMethodError(str(e)) from e
        i += 1

        raw_headers: list[tuple[str, str]] = []
        while i < len(lines):
            stripped = lines[i].strip()
            if not stripped or stripped.startswith(SEPARATOR):
                break
            if not _is_comment(stripped):
                name, sep, value = stripped.partition(":")
                if sep:
                    raw_headers.append((name.strip(), value.strip()))
            i += 1

        # Blank line between headers and body
        if i < len(lines) and not lines[i].strip():
            i += 1

        body_lines: list[str] = []
        while i < len(lines) and not lines[i].strip().startswith(SEPARATOR):
            body_lines.append(lines[i])
            i += 1
        while body_lines and not body_lines[-1].strip():
            body_lines.pop()
        body_text = "\n".join(body_lines)

        try:
            url, params = split_query_params(url_text)
        except ValueError as e:
            raise HttpFileUrlError(str(e)) from e

        name = request_name or f"{method_text} {urlsplit(url).path or '/'}"
        headers = [
            KeyValue.of(header_name, header_value)
            for header_name, header_value in raw_headers
            if header_name.lower() != "authorization"
        ]

        if is_websocket:
            protocol = WsRequest()
        else:
            protocol = HttpRequest(method=method, body=_resolve_body(raw_headers, body_text))

        logger.info("Request name: %s", name)
        requests.append(
            SharedRequest(
                Request(
                    name=name,
                    url=url,
                    params=params,
                    headers=headers,
                    auth=_extract_auth_from_headers(raw_headers),
                    protocol=protocol,
                ),
            ),
        )

    if not requests:
        raise NoRequestsFoundError()
    return requests


def _resolve_body(raw_headers: list[tuple[str, str]], body_text: str):
    if not body_text:
        return NoBody()
    content_type = next((value for name, value in raw_headers if name.lower() == "content-type"), None)
    # Unlike curl import, a body without content-type is kept as text
    if content_type is None:
        return Raw(content=body_text)
    return from_content_type(content_type, body_text)


def _extract_auth_from_headers(raw_headers: list[tuple[str, str]]) -> Auth:
    value = next((value for name, value in raw_headers if name.lower() == "authorization"), None)
    if value is None:
        return NoAuth()
    if value.startswith("Bearer "):
        return BearerToken(token=value.removeprefix("Bearer "))
    if value.startswith("Basic "):
        credentials = _decode_basic(value.removeprefix("Basic "))
        if credentials is not None:
            username, password = credentials
            return BasicAuth(username=username, password=password)
    return NoAuth()


def _decode_basic(encoded: str) -> tuple[str, str] | None:
    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, _, password = decoded.partition(":")
    return username, password
