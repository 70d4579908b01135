"""reqkit executor - send one request and classify its outcome.

Every send ends in exactly one of: a response, a transport error
(reported as body text), a timeout or a cancellation. Only failures to
build the request propagate as exceptions.
"""

from __future__ import annotations

import asyncio
import io
import json
import logging
import ssl
import time
from collections.abc import Coroutine
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import httpx
from PIL import Image
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import InvalidStatus, WebSocketException
from websockets.http11 import Response as HandshakeResponse

from reqkit.body import (
    TEXT_BODIES,
    File,
    Form,
    Multipart,
    NoBody,
    find_file_format_in_content_type,
)
from reqkit.cancellation import CancellationToken
from reqkit.core import build_auth_headers, substitute
from reqkit.digest import Digest
from reqkit.errors import (
    CouldNotOpenFileError,
    DigestError,
    InvalidUrlError,
    PrepareRequestError,
    UnsupportedProtocolError,
)
from reqkit.key_value import enabled_pairs
from reqkit.models import (
    Body,
    Environment,
    GraphqlRequest,
    HttpRequest,
    ImageResponse,
    Request,
    RequestResponse,
    RequestSettings,
    SharedRequest,
    WsRequest,
)

logger = logging.getLogger(__name__)

TIMEOUT = "TIMEOUT"
CANCELED = "CANCELED"

# Multipart values starting with this prefix name a file to upload
FILE_VALUE_PREFIX = "!!"

# Seconds allowed for the closing handshake after a WebSocket upgrade
WS_CLOSE_TIMEOUT = 2

_WS_SCHEMES = {"http": "ws", "https": "wss"}
_HTTP_SCHEMES = {"ws": "http", "wss": "https"}

HTTP_TRANSPORT_ERRORS = (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError)
WS_TRANSPORT_ERRORS = (OSError, WebSocketException)


@dataclass
class PreparedRequest:
    """Keyword arguments for ``httpx.AsyncClient.build_request``."""

    method: str
    url: str
    params: list[tuple[str, str]] = field(default_factory=list)
    headers: list[tuple[str, str]] = field(default_factory=list)
    content: bytes | None = None
    data: dict[str, list[str]] | None = None
    files: list[tuple[str, tuple[str | None, bytes]]] | None = None

    def as_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "method": self.method,
            "url": self.url,
            "headers": self.headers,
        }
        if self.params:
            kwargs["params"] = self.params
        if self.content is not None:
            kwargs["content"] = self.content
        if self.data is not None:
            kwargs["data"] = self.data
        if self.files is not None:
            kwargs["files"] = self.files
        return kwargs


def format_duration(seconds: float) -> str:
    """Render an elapsed time the way a person would read it."""
    if seconds >= 1:
        return f"{seconds:.2f}s"
    if seconds >= 1e-3:
        return f"{seconds * 1e3:.2f}ms"
    return f"{seconds * 1e6:.2f}µs"


def format_cookies(cookies: httpx.Cookies) -> str:
    return "\n".join(f"{cookie.name}: {cookie.value}" for cookie in cookies.jar)


# ── Preparation ──────────────────────────────────────────────────────────


async def _read_file(path: str) -> bytes:
    try:
        return await asyncio.to_thread(Path(path).read_bytes)
    except OSError as e:
        raise CouldNotOpenFileError(f"{path}: {e.strerror or e}") from e


async def _build_multipart(
    form: list[tuple[str, str]],
) -> list[tuple[str, tuple[str | None, bytes]]]:
    parts: list[tuple[str, tuple[str | None, bytes]]] = []
    for name, value in form:
        if value.startswith(FILE_VALUE_PREFIX):
            file_path = value.removeprefix(FILE_VALUE_PREFIX)
            parts.append((name, (Path(file_path).name, await _read_file(file_path))))
        else:
            # No filename: sent as a plain form field
            parts.append((name, (None, value.encode())))
    return parts


def _group_form(form: list[tuple[str, str]]) -> dict[str, list[str]]:
    grouped: dict[str, list[str]] = {}
    for name, value in form:
        grouped.setdefault(name, []).append(value)
    return grouped


def _graphql_payload(graphql: GraphqlRequest, env: Environment | None) -> bytes:
    variables_text = substitute(graphql.variables, env).strip()
    try:
        variables = json.loads(variables_text) if variables_text else {}
    except ValueError as e:
        raise PrepareRequestError(f"GraphQL variables are not valid JSON: {e}") from e
    payload: dict[str, Any] = {"query": substitute(graphql.query, env), "variables": variables}
    if graphql.operation_name:
        payload["operationName"] = graphql.operation_name
    return json.dumps(payload).encode()


async def prepare_request(request: Request, env: Environment | None = None) -> PreparedRequest:
    """Resolve a request snapshot into what goes on the wire.

    Substitutes {{KEY}} placeholders, fills `{name}` path params, applies
    auth and encodes the body. The request itself is not modified.
    """
    protocol = request.protocol
    if isinstance(protocol, HttpRequest):
        method = protocol.method.value
    elif isinstance(protocol, GraphqlRequest):
        method = "POST"
    elif isinstance(protocol, WsRequest):
        # The upgrade is a bodiless GET
        method = "GET"
    else:
        raise UnsupportedProtocolError(protocol.type)

    # Params named {like_this} fill the path, the rest form the query string
    params = [(substitute(k, env), substitute(v, env)) for k, v in enabled_pairs(request.params)]
    url = substitute(request.url, env)
    query: list[tuple[str, str]] = []
    for name, value in params:
        if name.startswith("{") and name.endswith("}"):
            url = url.replace(name, value)
        else:
            query.append((name, value))

    parts = urlsplit(url.strip())
    if not parts.scheme or not parts.netloc:
        raise InvalidUrlError(url)

    prepared = PreparedRequest(method=method, url=url.strip(), params=query)

    media_type = ""
    if isinstance(protocol, GraphqlRequest):
        prepared.content = _graphql_payload(protocol, env)
        media_type = "application/json"
    elif isinstance(protocol, HttpRequest):
        body = protocol.body
        if isinstance(body, NoBody):
            pass
        elif isinstance(body, Multipart):
            form = [(substitute(k, env), substitute(v, env)) for k, v in enabled_pairs(body.form)]
            prepared.files = await _build_multipart(form)
        elif isinstance(body, Form):
            form = [(substitute(k, env), substitute(v, env)) for k, v in enabled_pairs(body.form)]
            prepared.data = _group_form(form)
        elif isinstance(body, File):
            prepared.content = await _read_file(substitute(body.path, env))
            media_type = body.to_content_type()
        elif isinstance(body, TEXT_BODIES):
            prepared.content = substitute(body.content, env).encode()
            media_type = body.to_content_type()
        else:
            raise TypeError(f"Unknown body variant: {body!r}")

    auth_headers = build_auth_headers(
        request.auth,
        env,
        method=method,
        uri=parts.path or "/",
        body=prepared.content or b"",
    )
    prepared.headers.extend(auth_headers.items())
    for name, value in enabled_pairs(request.headers):
        prepared.headers.append((substitute(name, env), substitute(value, env)))

    # httpx writes the multipart/urlencoded type itself, boundary included
    if media_type and not any(name.lower() == "content-type" for name, _ in prepared.headers):
        prepared.headers.append(("Content-Type", media_type))

    return prepared


# ── Client ───────────────────────────────────────────────────────────────


def _verify_option(settings: RequestSettings) -> bool | ssl.SSLContext:
    if settings.get_bool("accept_invalid_certs"):
        return False
    if settings.get_bool("accept_invalid_hostnames"):
        context = ssl.create_default_context()
        context.check_hostname = False
        return context
    return True


def build_client(
    settings: RequestSettings,
    config: dict | None = None,
    cookies: httpx.Cookies | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create a client honoring the redirect, certificate and proxy settings."""
    verify = _verify_option(settings)

    mounts: dict[str, httpx.AsyncBaseTransport] = {}
    if transport is None and settings.get_bool("use_config_proxy"):
        proxy = (config or {}).get("proxy") or {}
        if proxy.get("http_proxy"):
            mounts["http://"] = httpx.AsyncHTTPTransport(proxy=proxy["http_proxy"], verify=verify)
        if proxy.get("https_proxy"):
            mounts["https://"] = httpx.AsyncHTTPTransport(proxy=proxy["https_proxy"], verify=verify)

    return httpx.AsyncClient(
        follow_redirects=settings.get_bool("allow_redirects"),
        verify=verify,
        timeout=None,
        cookies=cookies,
        transport=transport,
        mounts=mounts or None,
    )


# ── Response ─────────────────────────────────────────────────────────────

_JSON_WHITESPACE = " \t\r\n"
_JSON_DELIMITERS = frozenset(_JSON_WHITESPACE + ',:{}[]"')


def reindent_json(text: str, indent: int = 2) -> str:
    """Re-indent a JSON document without re-encoding its values.

    Strings and numbers are copied as written, so `1.50` stays `1.50`,
    `1e2` is not turned into `100.0` and repeated keys all survive. The
    input must already be valid JSON.
    """
    out: list[str] = []
    depth = 0
    i = 0
    n = len(text)

    def newline() -> None:
        out.append("\n" + " " * (indent * depth))

    while i < n:
        char = text[i]
        if char in _JSON_WHITESPACE:
            i += 1
        elif char == '"':
            end = i + 1
            while text[end] != '"':
                end += 2 if text[end] == "\\" else 1
            out.append(text[i : end + 1])
            i = end + 1
        elif char in "{[":
            closer = "}" if char == "{" else "]"
            j = i + 1
            while j < n and text[j] in _JSON_WHITESPACE:
                j += 1
            if j < n and text[j] == closer:
                out.append(char + closer)
                i = j + 1
            else:
                depth += 1
                out.append(char)
                newline()
                i += 1
        elif char in "}]":
            depth -= 1
            newline()
            out.append(char)
            i += 1
        elif char == ",":
            out.append(",")
            newline()
            i += 1
        elif char == ":":
            out.append(": ")
            i += 1
        else:
            end = i
            while end < n and text[end] not in _JSON_DELIMITERS:
                end += 1
            out.append(text[i:end])
            i = end
    return "".join(out)


def _decode_image(data: bytes) -> Any:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        logger.debug("Could not decode image response: %s", e)
        return None
    return image


def _classify_content(
    headers: list[tuple[str, str]],
    data: bytes,
    pretty_print: bool,
) -> ImageResponse | Body:
    if any(name == "content-type" and value.startswith("image/") for name, value in headers):
        return ImageResponse(data=data, image=_decode_image(data))

    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return Body(text=data.hex(" ").upper())
    if pretty_print and find_file_format_in_content_type(headers) == "json":
        try:
            json.loads(text)
        except ValueError:
            pass
        else:
            text = reindent_json(text)
    return Body(text=text)


def classify_response(
    response: httpx.Response,
    pretty_print: bool,
    cookies: httpx.Cookies | None = None,
) -> RequestResponse:
    """Turn an HTTP response into status, headers, cookies and content."""
    headers = list(response.headers.multi_items())
    return RequestResponse(
        status_code=f"{response.status_code} {response.reason_phrase}".rstrip(),
        content=_classify_content(headers, response.content, pretty_print),
        cookies=format_cookies(cookies) if cookies is not None else None,
        headers=headers,
    )


def classify_handshake(
    handshake: HandshakeResponse,
    url: str,
    pretty_print: bool,
    cookies: httpx.Cookies | None = None,
) -> RequestResponse:
    """Turn a WebSocket upgrade response into status, headers and cookies.

    A successful upgrade (101) has no content. A rejected one is shown
    like any HTTP response. Received cookies are added to `cookies`.
    """
    headers = [(name.lower(), value) for name, value in handshake.headers.raw_items()]
    if cookies is not None:
        cookies.extract_cookies(
            httpx.Response(
                handshake.status_code,
                headers=headers,
                request=httpx.Request("GET", _http_url(url)),
            )
        )

    content = None
    if handshake.status_code != 101:
        content = _classify_content(headers, handshake.body or b"", pretty_print)

    return RequestResponse(
        status_code=f"{handshake.status_code} {handshake.reason_phrase}".rstrip(),
        content=content,
        cookies=format_cookies(cookies) if cookies is not None else None,
        headers=headers,
    )


# ── WebSocket ────────────────────────────────────────────────────────────


def websocket_url(prepared: PreparedRequest) -> str:
    """The ws:// or wss:// URL of an upgrade request, query included."""
    try:
        url = str(httpx.URL(prepared.url).copy_merge_params(prepared.params))
    except httpx.InvalidURL as e:
        raise InvalidUrlError(str(e)) from e
    scheme, sep, rest = url.partition("://")
    return _WS_SCHEMES.get(scheme, scheme) + sep + rest


def _http_url(url: str) -> str:
    scheme, sep, rest = url.partition("://")
    return _HTTP_SCHEMES.get(scheme, scheme) + sep + rest


def _cookie_header(url: str, cookies: httpx.Cookies) -> str | None:
    carrier = httpx.Request("GET", _http_url(url))
    cookies.set_cookie_header(carrier)
    return carrier.headers.get("cookie")


def websocket_options(settings: RequestSettings, config: dict | None, url: str) -> dict[str, Any]:
    """Connection options for the certificate, hostname and proxy settings."""
    options: dict[str, Any] = {}
    secure = url.startswith("wss://")
    if secure:
        verify = _verify_option(settings)
        if verify is False:
            context = ssl.create_default_context()
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
            options["ssl"] = context
        elif isinstance(verify, ssl.SSLContext):
            options["ssl"] = verify

    if settings.get_bool("use_config_proxy"):
        proxy = ((config or {}).get("proxy") or {}).get("https_proxy" if secure else "http_proxy")
        if proxy:
            options["proxy"] = proxy
    return options


async def _websocket_handshake(
    url: str,
    headers: list[tuple[str, str]],
    options: dict[str, Any],
) -> HandshakeResponse:
    try:
        async with ws_connect(
            url,
            additional_headers=headers,
            open_timeout=None,
            close_timeout=WS_CLOSE_TIMEOUT,
            **options,
        ) as websocket:
            return websocket.response
    except InvalidStatus as e:
        return e.response


# ── Sending ──────────────────────────────────────────────────────────────


async def _race(
    operation: Coroutine[Any, Any, Any],
    timeout_ms: int,
    token: CancellationToken,
    transport_errors: tuple[type[BaseException], ...] = HTTP_TRANSPORT_ERRORS,
) -> tuple[str, Any]:
    """Wait for whichever comes first: the operation, timeout or cancellation."""
    send = asyncio.create_task(operation)
    timer = asyncio.create_task(asyncio.sleep(timeout_ms / 1000))
    cancelled = asyncio.create_task(token.cancelled())
    tasks = {send, timer, cancelled}
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    if cancelled in done:
        return CANCELED, None
    if timer in done:
        return TIMEOUT, None
    error = send.exception()
    if isinstance(error, transport_errors):
        return "error", error
    if error is not None:
        raise error
    return "response", send.result()


def _unanswered(outcome: str, result: Any) -> RequestResponse:
    if outcome == "error":
        logger.warning("Sending error: %s", result)
        return RequestResponse(content=Body(text=str(result) or type(result).__name__))
    logger.info("Request ended without a response: %s", outcome)
    return RequestResponse(status_code=outcome)


async def _send_http(
    prepared: PreparedRequest,
    settings: RequestSettings,
    config: dict | None,
    cookie_store: httpx.Cookies | None,
    token: CancellationToken,
    transport: httpx.AsyncBaseTransport | None,
) -> RequestResponse:
    store_cookies = settings.get_bool("store_received_cookies")
    async with build_client(
        settings,
        config,
        cookies=(cookie_store if cookie_store is not None else httpx.Cookies()) if store_cookies else None,
        transport=transport,
    ) as client:
        try:
            http_request = client.build_request(**prepared.as_kwargs())
        except httpx.InvalidURL as e:
            raise InvalidUrlError(str(e)) from e
        except UnicodeEncodeError as e:
            raise PrepareRequestError(str(e)) from e

        start = time.perf_counter()
        outcome, result = await _race(client.send(http_request), settings.get_u32("timeout"), token)
        elapsed = time.perf_counter() - start

        if outcome == "response":
            logger.info("Response received: %s", result.status_code)
            if store_cookies and cookie_store is not None:
                cookie_store.update(client.cookies)
            response = classify_response(
                result,
                settings.get_bool("pretty_print_response_content"),
                client.cookies if store_cookies else None,
            )
        else:
            response = _unanswered(outcome, result)
        response.duration = format_duration(elapsed)
        return response


async def _send_websocket(
    prepared: PreparedRequest,
    settings: RequestSettings,
    config: dict | None,
    cookie_store: httpx.Cookies | None,
    token: CancellationToken,
) -> RequestResponse:
    """Perform the opening handshake, then close the connection."""
    url = websocket_url(prepared)
    headers = list(prepared.headers)

    jar = None
    if settings.get_bool("store_received_cookies"):
        jar = httpx.Cookies(cookie_store) if cookie_store is not None else httpx.Cookies()
        cookie_header = _cookie_header(url, jar)
        if cookie_header and not any(name.lower() == "cookie" for name, _ in headers):
            headers.append(("Cookie", cookie_header))

    start = time.perf_counter()
    outcome, result = await _race(
        _websocket_handshake(url, headers, websocket_options(settings, config, url)),
        settings.get_u32("timeout"),
        token,
        WS_TRANSPORT_ERRORS,
    )
    elapsed = time.perf_counter() - start

    if outcome == "response":
        logger.info("Handshake response received: %s", result.status_code)
        response = classify_handshake(
            result,
            url,
            settings.get_bool("pretty_print_response_content"),
            jar,
        )
        if jar is not None and cookie_store is not None:
            cookie_store.update(jar)
    else:
        response = _unanswered(outcome, result)
    response.duration = format_duration(elapsed)
    return response


# ── Pipeline ─────────────────────────────────────────────────────────────


async def execute_request(
    handle: SharedRequest,
    env: Environment | None = None,
    *,
    config: dict | None = None,
    cookie_store: httpx.Cookies | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> RequestResponse:
    """Send the request behind `handle` once and store the response on it.

    HTTP and GraphQL requests are sent as-is. A WebSocket request performs
    the opening handshake and reports its status. `cookie_store` is shared
    across sends; received cookies are merged into it when the request
    stores cookies. `transport` replaces the HTTP network, mainly for tests.
    """
    with handle.lock() as request:
        request.is_pending = True
        token = request.reset_cancellation_token()
        if isinstance(request.auth, Digest):
            request.get_digest().next_nonce_count()
        snapshot = request.model_copy(deep=True)

    try:
        prepared = await prepare_request(snapshot, env)
        logger.info("Sending request %s", snapshot.name or prepared.url)
        if isinstance(snapshot.protocol, WsRequest):
            response = await _send_websocket(prepared, snapshot.settings, config, cookie_store, token)
        else:
            response = await _send_http(prepared, snapshot.settings, config, cookie_store, token, transport)

        with handle.lock() as request:
            request.response = response
            if isinstance(request.auth, Digest) and response.headers:
                try:
                    request.get_digest().update_from_www_authenticate(response.headers)
                except DigestError as e:
                    logger.warning("Ignoring malformed digest challenge: %s", e)
        return response
    finally:
        with handle.lock() as request:
            request.is_pending = False
