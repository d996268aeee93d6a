from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from typing import Any, Callable

import click
import typer
from typer.core import TyperGroup

from . import commands
from .util.logging import configure_logging, parse_log_specs

APP_LOGGER = logging.getLogger("stepper.app")

GLOBAL_BOOL_FLAGS = {"--log-stderr"}
GLOBAL_OPTS_WITH_VALUE = {"--log", "--log-file", "--store-dir"}
KNOWN_OPTS_WITH_VALUE = {
    "--log",
    "--log-file",
    "--store-dir",
    "--server-id",
    "--version",
    "--registration",
    "--client-info",
    "--scope",
    "--redirect-uri",
    "--auth-server",
    "--fallback",
    "-o",
    "--out-key-ref",
}

FLOW_COMMAND_ORDER = {
    "start": 0,
    "step": 1,
    "callback": 2,
    "status": 3,
    "refresh": 4,
    "reset": 5,
}


@dataclass(slots=True)
class Runtime:
    enabled_logs: dict[str, int]
    log_stderr: bool
    log_file: str | None
    store_dir: str | None


class FlowHelpOrderGroup(TyperGroup):
    def list_commands(self, ctx: click.Context) -> list[str]:
        names = list(super().list_commands(ctx))
        return sorted(
            names, key=lambda name: (FLOW_COMMAND_ORDER.get(name, 1000), name)
        )


def _json_dump(value: dict[str, Any]) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def emit_success(result: Any | None = None) -> None:
    payload: dict[str, Any] = {"ok": True}
    if result is not None:
        payload["result"] = result
    typer.echo(_json_dump(payload))


def emit_error(message: str, *, exit_code: int = 1) -> None:
    typer.echo(_json_dump({"ok": False, "error": str(message)}))
    raise typer.Exit(code=exit_code)


def _run_json_command(fn: Callable[[], Any]) -> None:
    try:
        result = fn()
    except typer.Exit:
        raise
    except ValueError as exc:
        emit_error(str(exc) or "invalid input")
    except Exception:
        APP_LOGGER.exception("Unhandled exception")
        emit_error("internal error")
    emit_success(result)


def _runtime(ctx: typer.Context) -> Runtime:
    runtime = ctx.find_root().obj
    if not isinstance(runtime, Runtime):
        raise RuntimeError("runtime not initialized")
    return runtime


def _store(ctx: typer.Context) -> commands.FileCredentialStore:
    return commands.open_store(_runtime(ctx).store_dir)


def normalize_cli_argv(argv: list[str]) -> list[str]:
    """Allow known root/global options to appear later in argv.

    Click/Typer root options normally need to appear before the first subcommand.
    We pre-scan argv and hoist the known global options while preserving
    relative order of both the hoisted tokens and the remaining tokens.

    Parsing stops at `--` so values after that remain untouched.
    """

    if not argv:
        return argv

    hoisted: list[str] = []
    rest: list[str] = []
    i = 0
    while i < len(argv):
        token = argv[i]
        if token == "--":
            rest.extend(argv[i:])
            break

        name, sep, _value = token.partition("=")

        if name in GLOBAL_BOOL_FLAGS and (sep == "" or token == name):
            hoisted.append(token)
            i += 1
            continue

        if name in GLOBAL_OPTS_WITH_VALUE and sep == "=":
            hoisted.append(token)
            i += 1
            continue

        if token in GLOBAL_OPTS_WITH_VALUE:
            if i + 1 < len(argv):
                hoisted.extend([token, argv[i + 1]])
                i += 2
                continue
            # Let Click/Typer produce the usage error if the value is missing.
            rest.append(token)
            i += 1
            continue

        if name in KNOWN_OPTS_WITH_VALUE and sep == "=":
            rest.append(token)
            i += 1
            continue

        if token in KNOWN_OPTS_WITH_VALUE:
            rest.append(token)
            if i + 1 < len(argv):
                rest.append(argv[i + 1])
                i += 2
            else:
                i += 1
            continue

        rest.append(token)
        i += 1

    if not hoisted:
        return argv
    return [*hoisted, *rest]


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    pretty_exceptions_enable=False,
    help="Step through MCP OAuth 2.1 discovery and token acquisition.",
)
flow_app = typer.Typer(
    cls=FlowHelpOrderGroup,
    no_args_is_help=True,
    add_completion=False,
    pretty_exceptions_enable=False,
    help="Authorization flow commands.",
)
app.add_typer(flow_app, name="flow")


@app.callback()
def main_callback(
    ctx: typer.Context,
    log_specs: list[str] | None = typer.Option(
        None,
        "--log",
        help="Enable logs by domain (`app`, `flow`, `http`, `store`, `all`) optionally with `:LEVEL`.",
    ),
    log_stderr: bool = typer.Option(
        False,
        "--log-stderr",
        help="Emit enabled logs to stderr.",
    ),
    log_file: str | None = typer.Option(
        None,
        "--log-file",
        help="Write enabled logs to this file.",
        metavar="PATH",
    ),
    store_dir: str | None = typer.Option(
        None,
        "--store-dir",
        help="Credential store directory (default: $OAUTH_STEPPER_STORE_DIR or ~/.oauth-stepper).",
        metavar="DIR",
    ),
) -> None:
    specs = log_specs or []
    try:
        enabled_logs = parse_log_specs(specs)
        configure_logging(
            enabled=enabled_logs, log_stderr=log_stderr, log_file=log_file
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc))
    ctx.obj = Runtime(
        enabled_logs=enabled_logs,
        log_stderr=log_stderr,
        log_file=log_file,
        store_dir=store_dir,
    )
    APP_LOGGER.debug("runtime initialized")


@flow_app.callback()
def flow_group() -> None:
    return


@flow_app.command("start", help="Run discovery up to the browser redirect (or to completion with --wait).")
def flow_start(
    ctx: typer.Context,
    server_url: str = typer.Argument(..., metavar="SERVER_URL"),
    server_id: str | None = typer.Option(None, "--server-id", metavar="SERVER_ID"),
    protocol_version: str | None = typer.Option(
        None, "--version", metavar="PROTOCOL_VERSION", help="2025-03-26, 2025-06-18 or 2025-11-25."
    ),
    registration: str | None = typer.Option(
        None, "--registration", metavar="STRATEGY", help="dcr, preregistered or cimd."
    ),
    client_info_file: str | None = typer.Option(
        None, "--client-info", metavar="CLIENT_INFO_FILE", help="JSON/JSON5 client identity file."
    ),
    scope: str | None = typer.Option(None, "--scope", metavar="SCOPE"),
    redirect_uri: str | None = typer.Option(None, "--redirect-uri", metavar="URI"),
    auth_server: str | None = typer.Option(
        None, "--auth-server", metavar="URL", help="Override the authorization server choice."
    ),
    fallback: str | None = typer.Option(
        None, "--fallback", metavar="POLICY", help="fail (default) or guess when metadata is missing."
    ),
    no_browser: bool = typer.Option(False, "--no-browser", help="Print the authorize URL instead of opening it."),
    wait: bool = typer.Option(False, "--wait", help="Listen on the loopback redirect URI and finish the flow."),
    out_key_ref: str | None = typer.Option(
        None, "-o", "--out-key-ref", metavar="KEY_REF", help="Also write tokens to KEY_REF when authorized."
    ),
    overwrite: bool = typer.Option(False, "--overwrite", help="Replace an existing KEY_REF value."),
) -> None:
    store = _store(ctx)
    _run_json_command(
        lambda: commands.start_flow(
            server_url=server_url,
            server_id=server_id,
            protocol_version=protocol_version,
            registration=registration,
            client_info_file=client_info_file,
            scope=scope,
            redirect_uri=redirect_uri,
            auth_server=auth_server,
            fallback=fallback,
            no_browser=no_browser,
            wait=wait,
            out_key_ref=out_key_ref,
            overwrite=overwrite,
            store=store,
        )
    )


@flow_app.command("step", help="Execute exactly one step of a persisted flow.")
def flow_step(
    ctx: typer.Context,
    server_id: str = typer.Argument(..., metavar="SERVER_ID"),
    no_browser: bool = typer.Option(False, "--no-browser", help="Print the authorize URL instead of opening it."),
) -> None:
    store = _store(ctx)
    _run_json_command(
        lambda: commands.step_flow(server_id=server_id, no_browser=no_browser, store=store)
    )


@flow_app.command("callback", help="Deliver a pasted redirect URL to the pending flow.")
def flow_callback(
    ctx: typer.Context,
    url: str = typer.Argument(..., metavar="REDIRECT_URL"),
    out_key_ref: str | None = typer.Option(
        None, "-o", "--out-key-ref", metavar="KEY_REF", help="Also write tokens to KEY_REF when authorized."
    ),
    overwrite: bool = typer.Option(False, "--overwrite", help="Replace an existing KEY_REF value."),
) -> None:
    store = _store(ctx)
    _run_json_command(
        lambda: commands.deliver_callback(
            url=url, out_key_ref=out_key_ref, overwrite=overwrite, store=store
        )
    )


@flow_app.command("status", help="Print the redacted state of a persisted flow.")
def flow_status(
    ctx: typer.Context,
    server_id: str = typer.Argument(..., metavar="SERVER_ID"),
    records: bool = typer.Option(False, "--records", help="Include redacted HTTP exchanges."),
) -> None:
    store = _store(ctx)
    _run_json_command(
        lambda: commands.flow_status(server_id=server_id, include_records=records, store=store)
    )


@flow_app.command("refresh", help="Run the refresh-token grant for an authorized flow.")
def flow_refresh(
    ctx: typer.Context,
    server_id: str = typer.Argument(..., metavar="SERVER_ID"),
    out_key_ref: str | None = typer.Option(
        None, "-o", "--out-key-ref", metavar="KEY_REF", help="Also write tokens to KEY_REF."
    ),
    overwrite: bool = typer.Option(False, "--overwrite", help="Replace an existing KEY_REF value."),
) -> None:
    store = _store(ctx)
    _run_json_command(
        lambda: commands.refresh_flow(
            server_id=server_id, out_key_ref=out_key_ref, overwrite=overwrite, store=store
        )
    )


@flow_app.command("reset", help="Return a flow to idle, dropping stored artifacts by scope.")
def flow_reset(
    ctx: typer.Context,
    server_id: str = typer.Argument(..., metavar="SERVER_ID"),
    scope: str = typer.Option(
        "all", "--scope", metavar="SCOPE", help="all, client, tokens or verifier."
    ),
) -> None:
    store = _store(ctx)
    _run_json_command(
        lambda: commands.reset_flow(server_id=server_id, scope=scope, store=store)
    )


def main() -> None:
    normalized = normalize_cli_argv(sys.argv[1:])
    if normalized != sys.argv[1:]:
        sys.argv = [sys.argv[0], *normalized]
    app()
