"""CLI integration tests: importing, listing, dumping and sending requests."""

import json
from unittest.mock import AsyncMock, patch

import yaml

from reqkit.cli import main
from reqkit.errors import InvalidUrlError
from tests.conftest import make_response


def _write_curl(directory, name="login.curl", text="curl -X POST https://api.example.com/login"):
    path = directory / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


def _write_http(directory, name="api.http"):
    path = directory / name
    path.write_text(
        "### List users\n"
        "GET https://api.example.com/users?page=1\n"
        "\n"
        "### Create user\n"
        "POST https://api.example.com/users\n"
        "Content-Type: application/json\n"
        "\n"
        '{"name": "{{USER}}"}\n',
    )
    return path


# ── Import and list ──────────────────────────────────────────────────────


class TestList:
    def test_no_import_shows_help(self, runner, workdir):
        result = runner.invoke(main, [])
        assert result.exit_code == 1
        assert "--import-curl" in result.output

    def test_lists_curl_request(self, runner, workdir):
        _write_curl(workdir)
        result = runner.invoke(main, ["--import-curl", "login.curl"])
        assert result.exit_code == 0
        assert "login.curl  POST https://api.example.com/login" in result.output

    def test_lists_http_requests_in_order(self, runner, workdir):
        _write_http(workdir)
        result = runner.invoke(main, ["--import-http", "api.http"])
        assert result.exit_code == 0
        lines = result.output.strip().splitlines()
        assert lines == [
            "List users  GET https://api.example.com/users",
            "Create user  POST https://api.example.com/users",
        ]

    def test_both_importers(self, runner, workdir):
        _write_curl(workdir)
        _write_http(workdir)
        result = runner.invoke(main, ["--import-curl", "login.curl", "--import-http", "api.http"])
        assert result.exit_code == 0
        assert len(result.output.strip().splitlines()) == 3

    def test_directory_recursion(self, runner, workdir):
        _write_curl(workdir / "reqs", "a.curl", "curl https://x.io/a")
        _write_curl(workdir / "reqs" / "nested", "b.curl", "curl https://x.io/b")

        flat = runner.invoke(main, ["--import-curl", "reqs"])
        deep = runner.invoke(main, ["--import-curl", "reqs", "-r"])

        assert "b.curl" not in flat.output
        assert "a.curl" in deep.output
        assert "b.curl" in deep.output

    def test_empty_directory(self, runner, workdir):
        (workdir / "empty").mkdir()
        result = runner.invoke(main, ["--import-curl", "empty"])
        assert result.exit_code == 0
        assert "No requests imported." in result.output


class TestImportErrors:
    def test_missing_path(self, runner, workdir):
        result = runner.invoke(main, ["--import-curl", "nope.curl"])
        assert result.exit_code == 1
        assert "ERROR: No such file or directory: nope.curl" in result.output

    def test_unknown_method(self, runner, workdir):
        _write_curl(workdir, text="curl -X FETCH https://x.io")
        result = runner.invoke(main, ["--import-curl", "login.curl"])
        assert result.exit_code == 1
        assert "ERROR: Unknown method" in result.output

    def test_http_file_without_requests(self, runner, workdir):
        (workdir / "empty.http").write_text("# nothing here\n")
        result = runner.invoke(main, ["--import-http", "empty.http"])
        assert result.exit_code == 1
        assert "ERROR: No requests found in .http file" in result.output

    def test_bad_config(self, runner, workdir):
        (workdir / ".reqkit.yaml").write_text("defaults: [oops\n")
        _write_curl(workdir)
        result = runner.invoke(main, ["--import-curl", "login.curl"])
        assert result.exit_code == 1
        assert "ERROR: Could not load config" in result.output


# ── Dump and settings ────────────────────────────────────────────────────


class TestDump:
    def test_dump_is_json(self, runner, workdir):
        _write_http(workdir)
        result = runner.invoke(main, ["--import-http", "api.http", "--dump"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert [item["name"] for item in data] == ["List users", "Create user"]
        assert data[0]["params"] == [{"enabled": True, "data": ["page", "1"]}]
        assert data[1]["protocol"]["body"] == {"type": "json", "content": '{"name": "{{USER}}"}'}
        assert "is_pending" not in data[0]

    def test_setting_override(self, runner, workdir):
        _write_curl(workdir)
        result = runner.invoke(
            main,
            ["--import-curl", "login.curl", "--dump", "-s", "timeout=500", "-s", "allow_redirects=false"],
        )
        assert result.exit_code == 0
        settings = json.loads(result.output)[0]["settings"]
        assert settings["timeout"] == 500
        assert settings["allow_redirects"] is False

    def test_timeout_flag(self, runner, workdir):
        _write_curl(workdir)
        result = runner.invoke(main, ["--import-curl", "login.curl", "--dump", "--timeout", "750"])
        assert json.loads(result.output)[0]["settings"]["timeout"] == 750

    def test_setting_beats_timeout_flag(self, runner, workdir):
        _write_curl(workdir)
        result = runner.invoke(
            main,
            ["--import-curl", "login.curl", "--dump", "--timeout", "750", "-s", "timeout=10"],
        )
        assert json.loads(result.output)[0]["settings"]["timeout"] == 10

    def test_config_timeout(self, runner, workdir):
        (workdir / ".reqkit.yaml").write_text(yaml.dump({"defaults": {"timeout": 1234}}))
        _write_curl(workdir)
        result = runner.invoke(main, ["--import-curl", "login.curl", "--dump"])
        assert json.loads(result.output)[0]["settings"]["timeout"] == 1234

    def test_unknown_setting(self, runner, workdir):
        _write_curl(workdir)
        result = runner.invoke(main, ["--import-curl", "login.curl", "-s", "speed=fast"])
        assert result.exit_code == 1
        assert "ERROR: Unknown setting" in result.output

    def test_wrong_kind(self, runner, workdir):
        _write_curl(workdir)
        result = runner.invoke(main, ["--import-curl", "login.curl", "-s", "allow_redirects=5"])
        assert result.exit_code == 1
        assert "allow_redirects expects true or false" in result.output

    def test_invalid_value(self, runner, workdir):
        _write_curl(workdir)
        result = runner.invoke(main, ["--import-curl", "login.curl", "-s", "timeout=-3"])
        assert result.exit_code == 1
        assert "positive int" in result.output


# ── Send ─────────────────────────────────────────────────────────────────


class TestSend:
    @patch("reqkit.executor.execute_request", new_callable=AsyncMock)
    def test_output_format(self, mock_exec, runner, workdir):
        mock_exec.return_value = make_response(
            text='{"ok": true}',
            headers=[("content-type", "application/json")],
        )
        _write_curl(workdir)
        result = runner.invoke(main, ["--import-curl", "login.curl", "--send"])
        assert result.exit_code == 0
        assert "=== login.curl ===" in result.output
        assert "STATUS: 200 OK" in result.output
        assert "TIME: 42.00ms" in result.output
        assert "BODY:" in result.output
        assert '{"ok": true}' in result.output
        assert "HEADERS:" not in result.output

    @patch("reqkit.executor.execute_request", new_callable=AsyncMock)
    def test_verbose_shows_headers(self, mock_exec, runner, workdir):
        mock_exec.return_value = make_response(headers=[("x-request-id", "abc")])
        _write_curl(workdir)
        result = runner.invoke(main, ["--import-curl", "login.curl", "--send", "--verbose"])
        assert "HEADERS:" in result.output
        assert "  x-request-id: abc" in result.output

    @patch("reqkit.executor.execute_request", new_callable=AsyncMock)
    def test_cookies_shown(self, mock_exec, runner, workdir):
        mock_exec.return_value = make_response(cookies="session: abc")
        _write_curl(workdir)
        result = runner.invoke(main, ["--import-curl", "login.curl", "--send"])
        assert "COOKIES:\n  session: abc" in result.output

    @patch("reqkit.executor.execute_request", new_callable=AsyncMock)
    def test_http_error_status_exits_0(self, mock_exec, runner, workdir):
        mock_exec.return_value = make_response(status_code="500 Internal Server Error")
        _write_curl(workdir)
        result = runner.invoke(main, ["--import-curl", "login.curl", "--send"])
        assert result.exit_code == 0
        assert "STATUS: 500 Internal Server Error" in result.output

    @patch("reqkit.executor.execute_request", new_callable=AsyncMock)
    def test_prepare_error_exits_1(self, mock_exec, runner, workdir):
        mock_exec.side_effect = InvalidUrlError("https://{{HOST}}/x")
        _write_curl(workdir)
        result = runner.invoke(main, ["--import-curl", "login.curl", "--send"])
        assert result.exit_code == 1
        assert "ERROR: INVALID URL" in result.output

    @patch("reqkit.executor.execute_request", new_callable=AsyncMock)
    def test_each_request_sent_once(self, mock_exec, runner, workdir):
        mock_exec.return_value = make_response()
        _write_http(workdir)
        result = runner.invoke(main, ["--import-http", "api.http", "--send"])
        assert result.exit_code == 0
        assert mock_exec.await_count == 2
        assert result.output.index("=== List users ===") < result.output.index("=== Create user ===")

    @patch("reqkit.executor.execute_request", new_callable=AsyncMock)
    def test_env_file_and_cookie_store_passed(self, mock_exec, runner, workdir):
        mock_exec.return_value = make_response()
        (workdir / "dev.env").write_text("USER=alice\n")
        _write_http(workdir)
        runner.invoke(main, ["--import-http", "api.http", "--send", "--env-file", "dev.env"])

        first, second = mock_exec.await_args_list
        assert first.args[1].values == {"USER": "alice"}
        assert first.kwargs["cookie_store"] is second.kwargs["cookie_store"]

    @patch("reqkit.executor.execute_request", new_callable=AsyncMock)
    def test_env_file_from_config(self, mock_exec, runner, workdir):
        mock_exec.return_value = make_response()
        conf_dir = workdir / "conf"
        conf_dir.mkdir()
        (conf_dir / "config.yaml").write_text(yaml.dump({"defaults": {"env_file": "vars.env"}}))
        (conf_dir / "vars.env").write_text("USER=bob\n")
        _write_curl(workdir)
        runner.invoke(main, ["--import-curl", "login.curl", "--send", "-c", "conf/config.yaml"])

        assert mock_exec.await_args.args[1].values == {"USER": "bob"}

    @patch("reqkit.executor.execute_request", new_callable=AsyncMock)
    def test_raw_prints_only_bodies(self, mock_exec, runner, workdir):
        mock_exec.return_value = make_response(text='{"ok": true}', cookies="session: abc")
        _write_http(workdir)
        result = runner.invoke(main, ["--import-http", "api.http", "--send", "--raw"])
        assert result.exit_code == 0
        assert result.output == '{"ok": true}\n{"ok": true}\n'

    @patch("reqkit.executor.execute_request", new_callable=AsyncMock)
    def test_raw_reports_errors_on_stderr(self, mock_exec, runner, workdir):
        mock_exec.side_effect = InvalidUrlError("https://{{HOST}}/x")
        _write_curl(workdir)
        result = runner.invoke(main, ["--import-curl", "login.curl", "--send", "--raw"])
        assert result.exit_code == 1
        assert "ERROR: login.curl: INVALID URL" in result.output
        assert "===" not in result.output
