"""Request body variants and Content-Type resolution."""

from __future__ import annotations

import re
from typing import Annotated, ClassVar, Literal, Union

from pydantic import BaseModel, Field

from reqkit.key_value import KeyValue

# Regex that likely catches the file format of `type/format`
_FILE_FORMAT_RE = re.compile(r"\w+/(?P<file_format>\w+)")


class NoBody(BaseModel):
    type: Literal["no_body"] = "no_body"

    media_type: ClassVar[str] = ""

    def to_content_type(self) -> str:
        return self.media_type


class File(BaseModel):
    type: Literal["file"] = "file"
    path: str = ""

    media_type: ClassVar[str] = "application/octet-stream"

    def to_content_type(self) -> str:
        return self.media_type


class Multipart(BaseModel):
    type: Literal["multipart"] = "multipart"
    form: list[KeyValue] = []

    media_type: ClassVar[str] = "multipart/form-data"

    def to_content_type(self) -> str:
        return self.media_type


class Form(BaseModel):
    type: Literal["form"] = "form"
    form: list[KeyValue] = []

    media_type: ClassVar[str] = "application/x-www-form-urlencoded"

    def to_content_type(self) -> str:
        return self.media_type


class _TextBody(BaseModel):
    content: str = ""

    def to_content_type(self) -> str:
        return self.media_type


class Raw(_TextBody):
    type: Literal["raw"] = "raw"

    media_type: ClassVar[str] = "text/plain"


class Json(_TextBody):
    type: Literal["json"] = "json"

    media_type: ClassVar[str] = "application/json"


class Xml(_TextBody):
    type: Literal["xml"] = "xml"

    media_type: ClassVar[str] = "application/xml"


class Html(_TextBody):
    type: Literal["html"] = "html"

    media_type: ClassVar[str] = "text/html"


class Javascript(_TextBody):
    type: Literal["javascript"] = "javascript"

    media_type: ClassVar[str] = "application/javascript"


ContentType = Annotated[
    Union[NoBody, File, Multipart, Form, Raw, Json, Xml, Html, Javascript],
    Field(discriminator="type"),
]

TEXT_BODIES = (Raw, Json, Xml, Html, Javascript)


def from_content_type(content_type: str, body: str) -> ContentType:
    """Map a Content-Type header value and body text to a body variant.

    Matching is a substring test on the media subtype, so
    ``application/vnd.api+json`` is JSON and ``text/javascript`` is
    Javascript. Anything unrecognised carrying a body becomes Raw.
    """
    if not body:
        return NoBody()

    media_type = content_type.split(";", 1)[0].strip().lower()
    subtype = media_type.split("/", 1)[1] if "/" in media_type else media_type

    # json must be tested before js
    if "json" in subtype:
        return Json(content=body)
    if "xml" in subtype:
        return Xml(content=body)
    if "html" in subtype:
        return Html(content=body)
    if "javascript" in subtype or "js" in subtype:
        return Javascript(content=body)
    return Raw(content=body)


def find_file_format_in_content_type(headers: list[tuple[str, str]]) -> str | None:
    """Return the `<format>` of the first `content-type: <type>/<format>` header."""
    for name, value in headers:
        if name == "content-type":
            match = _FILE_FORMAT_RE.search(value)
            return match.group("file_format") if match else None
    return None
