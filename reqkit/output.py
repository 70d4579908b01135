"""reqkit output - plain-text rendering of requests and responses for the CLI."""

from __future__ import annotations

import json

from reqkit.models import Body, HttpRequest, ImageResponse, Request, RequestResponse


def describe_request(request: Request) -> str:
    """One-line summary: name, method and URL."""
    protocol = request.protocol
    method = protocol.method.value if isinstance(protocol, HttpRequest) else protocol.type.upper()
    return f"{request.name}  {method} {request.url}"


def format_output(
    response: RequestResponse,
    verbose: bool = False,
    raw: bool = False,
) -> str:
    """Format a response for CLI output.

    Shows STATUS, TIME, COOKIES and BODY; HEADERS only when verbose. `raw`
    prints the body alone, for piping.
    """
    content = response.content

    if raw:
        if isinstance(content, Body):
            return content.text
        if isinstance(content, ImageResponse):
            return f"<image: {len(content.data)} bytes>"
        return ""

    lines: list[str] = []

    if response.status_code is not None:
        lines.append(f"STATUS: {response.status_code}")
    else:
        lines.append("ERROR: no response")

    if response.duration is not None:
        lines.append(f"TIME: {response.duration}")

    if verbose and response.headers:
        lines.append("HEADERS:")
        for key, value in response.headers:
            lines.append(f"  {key}: {value}")

    if response.cookies:
        lines.append("COOKIES:")
        for line in response.cookies.splitlines():
            lines.append(f"  {line}")

    if isinstance(content, Body):
        lines.append("BODY:")
        lines.append(content.text)
    elif isinstance(content, ImageResponse):
        lines.append("BODY:")
        if content.image is not None:
            width, height = content.image.size
            lines.append(f"<image {content.image.format} {width}x{height}, {len(content.data)} bytes>")
        else:
            lines.append(f"<undecodable image, {len(content.data)} bytes>")

    return "\n".join(lines)


def dump_requests(requests: list[Request]) -> str:
    """Serialize requests the way a collection file stores them."""
    return json.dumps([request.model_dump(mode="json") for request in requests], indent=2)
