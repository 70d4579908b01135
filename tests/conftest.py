"""Shared fixtures for reqkit scenario tests."""

import httpx
import pytest
from click.testing import CliRunner

from reqkit import core
from reqkit.models import HttpRequest, Request, RequestResponse, SharedRequest


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def global_reqkit_dir(tmp_path, monkeypatch):
    """Override the global ~/.reqkit directory to a temp location."""
    fake_global = tmp_path / "fake_home" / ".reqkit"
    fake_global.mkdir(parents=True)
    monkeypatch.setattr(core, "GLOBAL_DIR", fake_global)
    monkeypatch.setattr(core, "GLOBAL_CONFIG", fake_global / "config.yaml")
    return fake_global


@pytest.fixture
def workdir(tmp_path, monkeypatch, global_reqkit_dir):
    """Run the test from an empty directory with no global config."""
    work = tmp_path / "work"
    work.mkdir()
    monkeypatch.chdir(work)
    return work


def make_handle(url="https://api.example.com/users", **fields):
    """Factory for a SharedRequest around an HTTP GET request."""
    fields.setdefault("name", "test request")
    fields.setdefault("protocol", HttpRequest())
    return SharedRequest(Request(url=url, **fields))


def make_response(status_code="200 OK", text="", headers=None, duration="42.00ms", cookies=None):
    """Factory for RequestResponse objects with a text body."""
    from reqkit.models import Body

    return RequestResponse(
        status_code=status_code,
        content=Body(text=text),
        headers=headers or [],
        duration=duration,
        cookies=cookies,
    )


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it saw."""

    def __init__(self, handler):
        self.requests: list[httpx.Request] = []

        def _record(request):
            self.requests.append(request)
            return handler(request)

        super().__init__(_record)
