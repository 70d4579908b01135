"""Tests for config loading, environments, substitution, URLs and auth headers."""

import base64
import re
import uuid

import jwt
import pytest

from reqkit import core
from reqkit.core import (
    build_auth_headers,
    load_config,
    load_environment,
    resolve_config_path,
    resolve_value,
    sign_jwt,
    split_query_params,
    substitute,
    walk_files,
)
from reqkit.digest import Digest
from reqkit.errors import ConfigError, JwtSigningError
from reqkit.models import BasicAuth, BearerToken, Environment, JwtToken, NoAuth


# ── Config resolution ────────────────────────────────────────────────────


class TestResolveConfigPath:
    def test_explicit_flag_wins(self, workdir, global_reqkit_dir):
        explicit = workdir / "custom.yaml"
        explicit.write_text("defaults: {}\n")
        (workdir / ".reqkit.yaml").write_text("defaults: {}\n")
        assert resolve_config_path(str(explicit)) == explicit.resolve()

    def test_missing_explicit_does_not_fall_through(self, workdir, global_reqkit_dir):
        (workdir / ".reqkit.yaml").write_text("defaults: {}\n")
        assert resolve_config_path("nope.yaml") is None

    def test_cwd_before_global(self, workdir, global_reqkit_dir):
        core.GLOBAL_CONFIG.write_text("defaults: {}\n")
        (workdir / "reqkit.yml").write_text("defaults: {}\n")
        assert resolve_config_path(None) == (workdir / "reqkit.yml").resolve()

    def test_candidate_order(self, workdir):
        (workdir / "reqkit.yaml").write_text("")
        (workdir / ".reqkit.yml").write_text("")
        assert resolve_config_path(None) == (workdir / ".reqkit.yml").resolve()

    def test_global_fallback(self, workdir, global_reqkit_dir):
        core.GLOBAL_CONFIG.write_text("defaults: {}\n")
        assert resolve_config_path(None) == core.GLOBAL_CONFIG.resolve()

    def test_nothing_found(self, workdir):
        assert resolve_config_path(None) is None


class TestLoadConfig:
    def test_missing_config_is_empty(self, tmp_path):
        config = load_config(tmp_path / "absent.yaml")
        assert config == {"defaults": {}, "proxy": {}, "_config_dir": None}
        assert load_config(None)["defaults"] == {}

    def test_defaults_and_proxy(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CORP_PROXY", "http://proxy.corp:3128")
        path = tmp_path / "config.yaml"
        path.write_text(
            "defaults:\n"
            "  timeout: 500\n"
            "  env_file: .env\n"
            "proxy:\n"
            "  http_proxy: ${CORP_PROXY}\n"
            "  https_proxy: $CORP_PROXY\n"
            "  ftp_proxy: ignored\n",
        )
        config = load_config(path)
        assert config["defaults"] == {"timeout": 500, "env_file": ".env"}
        assert config["proxy"] == {
            "http_proxy": "http://proxy.corp:3128",
            "https_proxy": "http://proxy.corp:3128",
        }
        assert config["_config_dir"] == tmp_path.resolve()

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert load_config(path)["defaults"] == {}

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("defaults: [unclosed\n")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(path)


class TestResolveValue:
    def test_both_forms(self, monkeypatch):
        monkeypatch.setenv("HOST", "example.com")
        assert resolve_value("http://$HOST/${HOST}") == "http://example.com/example.com"

    def test_explicit_env_first(self, monkeypatch):
        monkeypatch.setenv("HOST", "from-os")
        assert resolve_value("$HOST", {"HOST": "from-env"}) == "from-env"

    def test_unknown_kept_and_non_strings_untouched(self, monkeypatch):
        monkeypatch.delenv("REQKIT_UNSET_VAR", raising=False)
        assert resolve_value("${REQKIT_UNSET_VAR}") == "${REQKIT_UNSET_VAR}"
        assert resolve_value(42) == 42


# ── Environment ──────────────────────────────────────────────────────────


class TestLoadEnvironment:
    def test_reads_dotenv(self, tmp_path):
        (tmp_path / "dev.env").write_text("HOST=api.dev\nTOKEN='abc'\n# comment\n")
        env = load_environment("dev.env", tmp_path)
        assert env.name == "dev.env"
        assert env.values == {"HOST": "api.dev", "TOKEN": "abc"}

    def test_explicit_name(self, tmp_path):
        (tmp_path / ".env").write_text("A=1\n")
        assert load_environment(".env", tmp_path, name="staging").name == "staging"

    def test_missing_file_is_empty(self, tmp_path):
        env = load_environment("missing.env", tmp_path)
        assert env.values == {}

    def test_no_file(self):
        assert load_environment(None) == Environment()


class TestSubstitute:
    def test_environment_values(self):
        env = Environment(values={"HOST": "x.io", "ID": "7"})
        assert substitute("https://{{HOST}}/items/{{ID}}", env) == "https://x.io/items/7"

    def test_environment_beats_process_env(self, monkeypatch):
        monkeypatch.setenv("HOST", "from-os")
        assert substitute("{{HOST}}", Environment(values={"HOST": "from-env"})) == "from-env"

    def test_process_env_fallback(self, monkeypatch):
        monkeypatch.setenv("REQKIT_TEST_TOKEN", "secret")
        assert substitute("Bearer {{REQKIT_TEST_TOKEN}}") == "Bearer secret"

    def test_unknown_key_is_left(self, monkeypatch):
        monkeypatch.delenv("REQKIT_NOT_SET", raising=False)
        assert substitute("a {{REQKIT_NOT_SET}} b") == "a {{REQKIT_NOT_SET}} b"

    def test_single_braces_are_untouched(self):
        assert substitute("/users/{id}", Environment(values={"id": "1"})) == "/users/{id}"

    def test_builtins(self):
        assert re.fullmatch(r"\d+", substitute("{{TIMESTAMP}}"))
        uuid.UUID(substitute("{{UUIDv4}}"))
        assert substitute("{{NOW}}") != "{{NOW}}"

    def test_environment_can_shadow_builtin(self):
        assert substitute("{{UUIDv4}}", Environment(values={"UUIDv4": "fixed"})) == "fixed"


# ── URLs and files ───────────────────────────────────────────────────────


class TestSplitQueryParams:
    def test_ordered_params(self):
        url, params = split_query_params("https://x.io/s?b=2&a=1&b=3&empty=")
        assert url == "https://x.io/s"
        assert [p.data for p in params] == [("b", "2"), ("a", "1"), ("b", "3"), ("empty", "")]

    def test_bare_host(self):
        assert split_query_params("http://x.io")[0] == "http://x.io/"

    def test_fragment_is_kept(self):
        assert split_query_params("https://x.io/a?q=1#top")[0] == "https://x.io/a#top"

    @pytest.mark.parametrize(
        "url",
        ["/relative", "x.io/path", "https:///path", "http://x:abc/", "http://bad host/x", "http://x:99999/"],
    )
    def test_invalid(self, url):
        with pytest.raises(ValueError):
            split_query_params(url)


class TestWalkFiles:
    @pytest.fixture
    def tree(self, tmp_path):
        (tmp_path / "b.txt").write_text("")
        (tmp_path / "a.txt").write_text("")
        (tmp_path / "one" / "two").mkdir(parents=True)
        (tmp_path / "one" / "c.txt").write_text("")
        (tmp_path / "one" / "two" / "d.txt").write_text("")
        return tmp_path

    def test_non_recursive(self, tree):
        assert [p.name for p in walk_files(tree, False, 10)] == ["a.txt", "b.txt"]

    def test_recursive_depth(self, tree):
        assert [p.name for p in walk_files(tree, True, 2)] == ["a.txt", "b.txt", "c.txt"]
        assert [p.name for p in walk_files(tree, True, 3)] == ["a.txt", "b.txt", "c.txt", "d.txt"]

    def test_file_yields_itself(self, tree):
        assert list(walk_files(tree / "a.txt", False, 1)) == [tree / "a.txt"]

    def test_missing_path_yields_nothing(self, tmp_path):
        assert list(walk_files(tmp_path / "missing", True, 3)) == []


# ── Auth ─────────────────────────────────────────────────────────────────


class TestBuildAuthHeaders:
    def test_no_auth(self):
        assert build_auth_headers(NoAuth()) == {}

    def test_basic(self):
        headers = build_auth_headers(BasicAuth(username="user", password="p:w"))
        assert base64.b64decode(headers["Authorization"].removeprefix("Basic ")) == b"user:p:w"

    def test_bearer_substituted(self):
        env = Environment(values={"TOKEN": "abc"})
        assert build_auth_headers(BearerToken(token="{{TOKEN}}"), env) == {"Authorization": "Bearer abc"}

    def test_jwt(self):
        secret = "a-very-long-secret-for-hmac-sha256"
        headers = build_auth_headers(JwtToken(secret=secret, payload='{"role": "admin"}'))
        token = headers["Authorization"].removeprefix("Bearer ")
        assert jwt.decode(token, secret, algorithms=["HS256"]) == {"role": "admin"}

    def test_digest_uses_method_and_uri(self):
        digest = Digest(username="{{USER}}", password="pw", realm="r", nonce="n")
        headers = build_auth_headers(
            digest,
            Environment(values={"USER": "bob"}),
            method="POST",
            uri="/upload",
        )
        value = headers["Authorization"]
        assert value.startswith("Digest ")
        assert 'username="bob"' in value
        assert 'uri="/upload"' in value
        assert digest.username == "{{USER}}"


class TestSignJwt:
    def test_invalid_payload(self):
        with pytest.raises(JwtSigningError):
            sign_jwt(JwtToken(secret="s", payload="{not json"))

    def test_unsupported_algorithm(self):
        with pytest.raises(JwtSigningError):
            sign_jwt(JwtToken(algorithm="NOPE", secret="s", payload="{}"))
