"""reqkit CLI - import saved curl and .http requests, inspect them, send them."""

import asyncio
import sys
from pathlib import Path

import click

TOOL_HELP = """\
reqkit — Import, inspect and send saved API requests.

\b
IMPORT
──────
  reqkit --import-curl requests/login.curl
  reqkit --import-curl requests/ -r --max-depth 3
  reqkit --import-http api.http

  A curl file holds one invocation; its file name becomes the request name.
  A .http file holds any number of requests separated by '### name' lines.
  Directories are walked (only direct children unless -r is given).

\b
ACTIONS
───────
  (default)   List imported requests: NAME  METHOD URL
  --dump      Print the imported requests as JSON
  --send      Send all imported requests concurrently and print
              STATUS / TIME / HEADERS (with --verbose) / COOKIES / BODY
              (--raw prints only the bodies, for piping)
              WEBSOCKET requests report the handshake status

\b
SETTINGS
────────
  -s NAME=VALUE overrides a request setting for every imported request:
  \b
  use_config_proxy               true|false
  allow_redirects                true|false
  timeout                        milliseconds
  store_received_cookies         true|false
  pretty_print_response_content  true|false
  accept_invalid_certs           true|false
  accept_invalid_hostnames       true|false

\b
PLACEHOLDERS
────────────
  {{KEY}} in URLs, params, headers, auth and bodies is replaced from the
  env file, then the process environment. Built-ins: {{NOW}}, {{TIMESTAMP}},
  {{UUIDv4}}.

\b
CONFIG
──────
  -c PATH, else .reqkit.yaml in CWD, else ~/.reqkit/config.yaml:
  \b
  defaults:
    env_file: .env
    timeout: 30000
  proxy:
    http_proxy: ${HTTP_PROXY}
    https_proxy: ${HTTPS_PROXY}
"""


@click.command(
    cls=click.Command,
    help=TOOL_HELP,
    context_settings={"max_content_width": 88},
)
@click.option(
    "--import-curl",
    "import_curl",
    default=None,
    metavar="PATH",
    help="Import a curl file, or every file in a directory.",
)
@click.option(
    "--import-http",
    "import_http",
    default=None,
    metavar="PATH",
    help="Import a .http file, or every .http file in a directory.",
)
@click.option(
    "-r",
    "--recursive",
    is_flag=True,
    default=False,
    help="Walk sub-directories when importing a directory.",
)
@click.option(
    "--max-depth",
    type=click.IntRange(min=1),
    default=2,
    show_default=True,
    help="Maximum directory depth for recursive imports.",
)
@click.option("--send", "do_send", is_flag=True, default=False, help="Send the imported requests.")
@click.option("--dump", "do_dump", is_flag=True, default=False, help="Print imported requests as JSON.")
@click.option(
    "-s",
    "--setting",
    "settings",
    multiple=True,
    metavar="NAME=VALUE",
    help="Override a request setting. Repeatable.",
)
@click.option(
    "--timeout",
    type=click.IntRange(min=0),
    default=None,
    help="Request timeout in milliseconds. Default: config, then 30000.",
)
@click.option(
    "-c",
    "--config",
    "config_file",
    default=None,
    help="Config file path. Default: .reqkit.yaml in CWD, then ~/.reqkit/config.yaml.",
)
@click.option(
    "--env-file",
    default=None,
    help="Dotenv file used for {{KEY}} placeholders. Overrides defaults.env_file.",
)
@click.option(
    "--verbose",
    is_flag=True,
    default=False,
    help="Include response headers in output.",
)
@click.option(
    "--raw",
    is_flag=True,
    default=False,
    help="With --send, print only the response bodies. Useful for piping.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Log level. Default: $REQKIT_LOG_LEVEL or WARNING.",
)
def main(
    import_curl,
    import_http,
    recursive,
    max_depth,
    do_send,
    do_dump,
    settings,
    timeout,
    config_file,
    env_file,
    verbose,
    raw,
    log_level,
):
    """Import saved requests, then list, dump or send them."""
    from reqkit.core import load_config, load_environment, resolve_config_path
    from reqkit.errors import ReqkitError
    from reqkit.log import setup_logging

    setup_logging(log_level)

    # --- Load config ---
    try:
        config = load_config(resolve_config_path(config_file))
    except ReqkitError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)
    defaults = config.get("defaults", {})

    if env_file:
        env = load_environment(env_file)
    else:
        env = load_environment(defaults.get("env_file"), config.get("_config_dir") or ".")

    # --- Dispatch ---

    if not import_curl and not import_http:
        ctx = click.get_current_context()
        click.echo(ctx.get_help())
        ctx.exit(1)

    handles = _cmd_import(import_curl, import_http, recursive, max_depth)

    overrides = _parse_settings(settings)
    effective_timeout = _resolve_timeout(timeout, defaults.get("timeout"))
    if effective_timeout is not None:
        overrides.setdefault("timeout", effective_timeout)
    _apply_settings(handles, overrides)

    if do_dump:
        _cmd_dump(handles)
        return

    if do_send:
        _cmd_send(handles, env, config, verbose, raw)
        return

    _cmd_list(handles)


# ── Subcommand implementations ──────────────────────────────────────────


def _cmd_import(import_curl, import_http, recursive, max_depth):
    """Run the requested importers; exit 1 on the first failure."""
    from reqkit.curl_import import parse_requests_recursively
    from reqkit.errors import ReqkitError
    from reqkit.http_file import parse_http_files_recursively

    handles = []
    try:
        if import_curl:
            _require_path(import_curl)
            handles.extend(parse_requests_recursively(Path(import_curl), recursive, max_depth))
        if import_http:
            _require_path(import_http)
            handles.extend(parse_http_files_recursively(Path(import_http), recursive, max_depth))
    except ReqkitError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)

    if not handles:
        click.echo("No requests imported.", err=True)
    return handles


def _require_path(path):
    if not Path(path).exists():
        click.echo(f"ERROR: No such file or directory: {path}", err=True)
        sys.exit(1)


def _cmd_list(handles):
    from reqkit.output import describe_request

    for handle in handles:
        click.echo(describe_request(handle.snapshot()))


def _cmd_dump(handles):
    from reqkit.output import dump_requests

    click.echo(dump_requests([handle.snapshot() for handle in handles]))


def _cmd_send(handles, env, config, verbose, raw=False):
    """Send every request concurrently, then print them in import order."""
    from reqkit.errors import ReqkitError
    from reqkit.output import format_output

    results = asyncio.run(_send_all(handles, env, config))

    failed = False
    for handle, result in zip(handles, results, strict=True):
        with handle.lock() as request:
            name = request.name
        if raw:
            if isinstance(result, ReqkitError):
                click.echo(f"ERROR: {name}: {result}", err=True)
                failed = True
            else:
                click.echo(format_output(result, raw=True))
            continue
        click.echo(f"=== {name} ===")
        if isinstance(result, ReqkitError):
            click.echo(f"ERROR: {result}")
            failed = True
        else:
            click.echo(format_output(result, verbose=verbose))
        click.echo("")

    if failed:
        sys.exit(1)


async def _send_all(handles, env, config):
    import httpx

    from reqkit.errors import ReqkitError
    from reqkit.executor import execute_request

    cookie_store = httpx.Cookies()

    async def _one(handle):
        try:
            return await execute_request(handle, env, config=config, cookie_store=cookie_store)
        except ReqkitError as e:
            return e

    return await asyncio.gather(*(_one(handle) for handle in handles))


def _parse_settings(setting_specs):
    """Parse NAME=VALUE overrides, checking each value's kind against the setting."""
    from reqkit.models import SETTING_NAMES, parse_setting_value

    overrides = {}
    for spec in setting_specs:
        name, sep, raw_value = spec.partition("=")
        name = name.strip()
        if not sep or name not in SETTING_NAMES:
            click.echo(
                f"ERROR: Unknown setting '{spec}'. Expected one of: " + ", ".join(SETTING_NAMES),
                err=True,
            )
            sys.exit(1)
        try:
            value = parse_setting_value(raw_value)
        except ValueError as e:
            click.echo(f"ERROR: {name}: {e}", err=True)
            sys.exit(1)
        if (name == "timeout") == isinstance(value, bool):
            expected = "a number of milliseconds" if name == "timeout" else "true or false"
            click.echo(f"ERROR: {name} expects {expected}", err=True)
            sys.exit(1)
        overrides[name] = value
    return overrides


def _resolve_timeout(*sources):
    """Return the first timeout that is set, or None."""
    for t in sources:
        if t is not None:
            return int(t)
    return None


def _apply_settings(handles, overrides):
    if not overrides:
        return
    for handle in handles:
        with handle.lock() as request:
            for name, value in overrides.items():
                setattr(request.settings, name, value)
