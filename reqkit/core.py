"""reqkit core - config loading, environment substitution, URLs, auth."""

from __future__ import annotations

import base64
import datetime
import json
import logging
import os
import re
import uuid
from collections.abc import Iterator
from pathlib import Path
from typing import Any
from urllib.parse import parse_qsl, urlsplit, urlunsplit

import jwt
import yaml
from dotenv import dotenv_values

from reqkit.digest import Digest, authorization_header
from reqkit.errors import ConfigError, JwtSigningError
from reqkit.key_value import KeyValue
from reqkit.models import Auth, BasicAuth, BearerToken, Environment, JwtToken, NoAuth

logger = logging.getLogger(__name__)

GLOBAL_DIR = Path.home() / ".reqkit"
GLOBAL_CONFIG = GLOBAL_DIR / "config.yaml"

CWD_CONFIG_CANDIDATES = [
    ".reqkit.yaml",
    ".reqkit.yml",
    "reqkit.yaml",
    "reqkit.yml",
]

BUILTIN_KEYS = ("NOW", "TIMESTAMP", "UUIDv4")


# ── Config ───────────────────────────────────────────────────────────────


def resolve_path(
    candidates: list[Path],
    default: Path | None = None,
) -> Path | None:
    """Return the first existing path from candidates, else default."""
    for p in candidates:
        if p.exists():
            return p.resolve()
    return default


def resolve_config_path(config_file: str | None) -> Path | None:
    """Find the config file to use.

    Resolution order:
      1. Explicit -c flag (hard, no fallthrough if missing)
      2. .reqkit.yaml (variants) in CWD
      3. ~/.reqkit/config.yaml
    """
    if config_file:
        return resolve_path([Path(config_file)])
    return resolve_path([Path(c) for c in CWD_CONFIG_CANDIDATES] + [GLOBAL_CONFIG])


def resolve_value(value: Any, env: dict[str, str] | None = None) -> Any:
    """Resolve $VAR and ${VAR} references in a string value.

    Looks up `env` first, then os.environ; unknown references are kept.
    Non-string values are returned untouched.
    """
    if not isinstance(value, str):
        return value
    env = env or {}

    def _replace(m: re.Match) -> str:
        var_name = m.group(1) or m.group(2)
        return env.get(var_name, os.environ.get(var_name, m.group(0)))

    return re.sub(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)", _replace, value)


def load_config(config_path: str | Path | None) -> dict:
    """Load YAML config file. Returns empty sections if not found.

    Stores '_config_dir' in the returned dict so the env file can be
    resolved relative to the config file.
    """
    empty = {"defaults": {}, "proxy": {}, "_config_dir": None}
    if config_path is None:
        return empty
    path = Path(config_path)
    if not path.exists():
        return empty
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"{path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")

    proxy = {
        key: resolve_value(value)
        for key, value in (data.get("proxy") or {}).items()
        if key in ("http_proxy", "https_proxy") and value
    }
    logger.debug("Loaded config from %s", path)
    return {
        "defaults": data.get("defaults") or {},
        "proxy": proxy,
        "_config_dir": path.resolve().parent,
    }


# ── Environment ──────────────────────────────────────────────────────────


def load_environment(
    env_file: str | Path | None,
    base_dir: str | Path = ".",
    name: str | None = None,
) -> Environment:
    """Load a dotenv file into an Environment.

    A missing or unset file gives an empty environment; the process
    environment is consulted later, at substitution time.
    """
    if not env_file:
        return Environment()
    dotenv_path = Path(base_dir) / env_file
    if not dotenv_path.exists():
        logger.warning("Env file not found: %s", dotenv_path)
        return Environment(name=name or dotenv_path.name)
    values = {k: v for k, v in dotenv_values(str(dotenv_path)).items() if v is not None}
    return Environment(name=name or dotenv_path.name, values=values)


def _builtin_value(key: str) -> str | None:
    if key == "NOW":
        return str(datetime.datetime.now(datetime.timezone.utc))
    if key == "TIMESTAMP":
        return str(int(datetime.datetime.now(datetime.timezone.utc).timestamp()))
    if key == "UUIDv4":
        return str(uuid.uuid4())
    return None


def substitute(text: str, env: Environment | None = None) -> str:
    """Replace {{KEY}} placeholders.

    Lookup order: the environment values, the process environment, then the
    built-ins {{NOW}}, {{TIMESTAMP}} and {{UUIDv4}}. Unknown keys are left
    in place.
    """
    if not text or "{{" not in text:
        return text
    values = env.values if env is not None else {}

    def _replace(m: re.Match) -> str:
        key = m.group(1)
        if key in values:
            return values[key]
        if key in os.environ:
            return os.environ[key]
        builtin = _builtin_value(key)
        return builtin if builtin is not None else m.group(0)

    return re.sub(r"\{\{([^{}]+?)\}\}", _replace, text)


# ── URLs and files ───────────────────────────────────────────────────────


def split_query_params(url: str) -> tuple[str, list[KeyValue]]:
    """Split an absolute URL into (url without query, ordered enabled params).

    Raises ValueError when the URL has no scheme, or a missing or malformed
    host or port.
    """
    parts = urlsplit(url.strip())
    if not parts.scheme:
        raise ValueError(f"relative URL without a base: {url!r}")
    if not parts.netloc:
        raise ValueError(f"empty host: {url!r}")
    if any(c.isspace() for c in parts.netloc) or not parts.hostname:
        raise ValueError(f"invalid host: {url!r}")
    try:
        parts.port
    except ValueError as e:
        raise ValueError(f"invalid port: {url!r}") from e

    params = [KeyValue.of(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)]
    path = parts.path or "/"
    return urlunsplit((parts.scheme, parts.netloc, path, "", parts.fragment)), params


def walk_files(path: str | Path, recursive: bool, max_depth: int) -> Iterator[Path]:
    """Yield files under `path` in sorted order.

    Direct children are depth 1; without `recursive` only they are visited.
    A file path yields itself. Unreadable entries are skipped.
    """
    root = Path(path)
    if root.is_file():
        yield root
        return
    depth_limit = max_depth if recursive else 1

    def _walk(directory: Path, depth: int) -> Iterator[Path]:
        if depth > depth_limit:
            return
        try:
            entries = sorted(directory.iterdir())
        except OSError as e:
            logger.debug("Skipping %s: %s", directory, e)
            return
        for entry in entries:
            if entry.is_dir():
                yield from _walk(entry, depth + 1)
            elif entry.is_file():
                yield entry

    if root.is_dir():
        yield from _walk(root, 1)


# ── Auth ─────────────────────────────────────────────────────────────────


def sign_jwt(auth: JwtToken) -> str:
    """Sign the JSON payload of a JwtToken auth with its secret."""
    try:
        claims = json.loads(auth.payload or "{}")
        return jwt.encode(claims, auth.secret, algorithm=auth.algorithm)
    except (ValueError, TypeError, NotImplementedError, jwt.PyJWTError) as e:
        raise JwtSigningError(str(e)) from e


def build_auth_headers(
    auth: Auth,
    env: Environment | None = None,
    *,
    method: str = "GET",
    uri: str = "/",
    body: bytes = b"",
) -> dict[str, str]:
    """Build the Authorization header for an auth value.

    Supports:
    - basic: Authorization: Basic <b64>
    - bearer: Authorization: Bearer <token>
    - jwt: Authorization: Bearer <signed token>
    - digest: Authorization: Digest ... answering the stored challenge
    """
    if isinstance(auth, NoAuth):
        return {}

    if isinstance(auth, BasicAuth):
        username = substitute(auth.username, env)
        password = substitute(auth.password, env)
        credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
        return {"Authorization": f"Basic {credentials}"}

    if isinstance(auth, BearerToken):
        return {"Authorization": f"Bearer {substitute(auth.token, env)}"}

    if isinstance(auth, JwtToken):
        resolved = auth.model_copy(
            update={
                "secret": substitute(auth.secret, env),
                "payload": substitute(auth.payload, env),
            },
        )
        return {"Authorization": f"Bearer {sign_jwt(resolved)}"}

    if isinstance(auth, Digest):
        resolved = auth.model_copy(
            update={
                "username": substitute(auth.username, env),
                "password": substitute(auth.password, env),
            },
        )
        return {"Authorization": authorization_header(resolved, method, uri, body)}

    raise TypeError(f"Unknown auth variant: {auth!r}")
