"""reqkit models - canonical request, response, auth and settings types."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator, model_validator

from reqkit.body import ContentType, NoBody
from reqkit.cancellation import CancellationToken
from reqkit.digest import Digest
from reqkit.key_value import KeyValue

U32_MAX = 2**32 - 1


class Method(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    OPTIONS = "OPTIONS"
    HEAD = "HEAD"
    TRACE = "TRACE"
    CONNECT = "CONNECT"

    @classmethod
    def parse(cls, text: str) -> Method:
        """Exact, case-sensitive lookup; raises ValueError for unknown tokens."""
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f"Matching variant not found: {text!r}") from None


# ── Auth ─────────────────────────────────────────────────────────────────


class NoAuth(BaseModel):
    type: Literal["no_auth"] = "no_auth"


class BasicAuth(BaseModel):
    type: Literal["basic_auth"] = "basic_auth"
    username: str = ""
    password: str = ""


class BearerToken(BaseModel):
    type: Literal["bearer_token"] = "bearer_token"
    token: str = ""


class JwtToken(BaseModel):
    type: Literal["jwt_token"] = "jwt_token"
    algorithm: str = "HS256"
    secret: str = ""
    payload: str = "{}"


Auth = Annotated[
    Union[NoAuth, BasicAuth, BearerToken, JwtToken, Digest],
    Field(discriminator="type"),
]


# ── Protocols ────────────────────────────────────────────────────────────


class HttpRequest(BaseModel):
    type: Literal["http"] = "http"
    method: Method = Method.GET
    body: ContentType = Field(default_factory=NoBody)


class WsRequest(BaseModel):
    type: Literal["websocket"] = "websocket"
    messages: list[str] = []


class GraphqlRequest(BaseModel):
    type: Literal["graphql"] = "graphql"
    query: str = ""
    variables: str = ""
    operation_name: str | None = None


class GrpcRequest(BaseModel):
    """A gRPC call described by a .proto file, service, method and JSON message."""

    type: Literal["grpc"] = "grpc"
    proto_file: str = ""
    import_paths: list[str] = []
    service: str = ""
    method: str = ""
    message: str = ""


Protocol = Annotated[
    Union[HttpRequest, WsRequest, GraphqlRequest, GrpcRequest],
    Field(discriminator="type"),
]


# ── Settings ─────────────────────────────────────────────────────────────

SettingValue = Union[bool, Annotated[int, Field(ge=0, le=U32_MAX)]]

SETTING_NAMES = (
    "use_config_proxy",
    "allow_redirects",
    "timeout",
    "store_received_cookies",
    "pretty_print_response_content",
    "accept_invalid_certs",
    "accept_invalid_hostnames",
)

_U32_SETTINGS = frozenset({"timeout"})


class RequestSettings(BaseModel):
    use_config_proxy: SettingValue = True
    allow_redirects: SettingValue = True
    timeout: SettingValue = 30000
    store_received_cookies: SettingValue = True
    pretty_print_response_content: SettingValue = True
    accept_invalid_certs: SettingValue = False
    accept_invalid_hostnames: SettingValue = False

    @model_validator(mode="after")
    def _normalize(self) -> RequestSettings:
        """Coerce each field to its expected kind.

        A boolean slot holding 0/1 (hand-edited collection files) becomes
        False/True, any other integer there falls back to the default. The
        timeout slot falls back to its default when it holds a boolean.
        """
        for name in SETTING_NAMES:
            value = getattr(self, name)
            default = type(self).model_fields[name].default
            if name in _U32_SETTINGS:
                if isinstance(value, bool):
                    setattr(self, name, default)
            elif not isinstance(value, bool):
                coerced = {0: False, 1: True}.get(value, default)
                setattr(self, name, coerced)
        return self

    def get_bool(self, name: str) -> bool:
        value = getattr(self, name)
        if not isinstance(value, bool):
            raise TypeError(f"Setting {name!r} is not a boolean: {value!r}")
        return value

    def get_u32(self, name: str) -> int:
        value = getattr(self, name)
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"Setting {name!r} is not an integer: {value!r}")
        return value



def parse_setting_value(text: str) -> bool | int:
    lowered = text.strip().lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    try:
        value = int(lowered)
    except ValueError:
        value = -1
    if 0 <= value <= U32_MAX:
        return value
    raise ValueError("Value should either be a boolean or a positive int")


# ── Response ─────────────────────────────────────────────────────────────


class Body(BaseModel):
    type: Literal["body"] = "body"
    text: str = ""


class ImageResponse(BaseModel):
    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    type: Literal["image"] = "image"
    data: bytes = b""
    # Decoded PIL image, rebuilt from `data` by whoever needs it after a load
    image: Any = Field(default=None, exclude=True)


ResponseContent = Annotated[Union[Body, ImageResponse], Field(discriminator="type")]


class RequestResponse(BaseModel):
    duration: str | None = None
    status_code: str | None = None
    content: ResponseContent | None = None
    cookies: str | None = None
    headers: list[tuple[str, str]] = []


# ── Request ──────────────────────────────────────────────────────────────



class Request(BaseModel):
    name: str = ""
    url: str = ""
    headers: list[KeyValue] = []
    params: list[KeyValue] = []
    settings: RequestSettings = Field(default_factory=RequestSettings)
    auth: Auth = Field(default_factory=NoAuth)
    protocol: Protocol = Field(default_factory=HttpRequest)
    response: RequestResponse = Field(default_factory=RequestResponse)

    is_pending: bool = Field(default=False, exclude=True)

    _cancellation_token: CancellationToken = PrivateAttr(default_factory=CancellationToken)

    @field_validator("is_pending", mode="before")
    @classmethod
    def _never_pending_when_built(cls, value: Any) -> bool:
        return False

    @property
    def cancellation_token(self) -> CancellationToken:
        return self._cancellation_token

    def reset_cancellation_token(self) -> CancellationToken:
        self._cancellation_token = CancellationToken()
        return self._cancellation_token

    def get_digest(self) -> Digest:
        """Return the active Digest auth for in-place updates.

        Callers must already know the auth is Digest; anything else is a
        programming error.
        """
        if not isinstance(self.auth, Digest):
            raise TypeError(f"Auth is {self.auth.type}, not digest")
        return self.auth



class Environment(BaseModel):
    name: str = "default"
    values: dict[str, str] = {}


class SharedRequest:
    """A Request shared between an executing task and its observers.

    All access goes through ``lock()``; take one acquisition per logically
    consistent read or write.
    """

    def __init__(self, request: Request):
        self._request = request
        self._lock = threading.RLock()

    def __repr__(self) -> str:
        with self.lock() as request:
            return f"SharedRequest({request.name!r})"

    @contextmanager
    def lock(self) -> Iterator[Request]:
        with self._lock:
            yield self._request

    def snapshot(self) -> Request:
        with self.lock() as request:
            return request.model_copy(deep=True)

    def cancel(self) -> None:
        with self.lock() as request:
            token = request.cancellation_token
        token.cancel()

    @property
    def is_pending(self) -> bool:
        with self.lock() as request:
            return request.is_pending

    @property
    def response(self) -> RequestResponse:
        with self.lock() as request:
            return request.response.model_copy(deep=True)
