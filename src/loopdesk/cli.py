"""LoopDesk command line.

Usage:
    loopdesk serve                     # Start the bridge on 127.0.0.1:8765
    loopdesk serve --dev               # CORS enabled for the Vite dev server
    loopdesk exec "npm test" -p .      # Run one command through an in-process host
"""

import asyncio
import json
import os
import sys
from typing import NoReturn

import click
from rich.console import Console
from rich.text import Text

from loopdesk import __version__
from loopdesk.client.bridge import LocalBridge
from loopdesk.client.cli_output import CliOutputSubscription
from loopdesk.client.log_store import ExecutionLogStore
from loopdesk.config import LoopDeskConfig, load_config
from loopdesk.foundation.errors import LoopDeskError
from loopdesk.foundation.logging import configure_logging
from loopdesk.host.app import HostApp
from loopdesk.host.models import CliOutputEvent

console = Console()
err_console = Console(stderr=True)

_STATUS_STYLES = {
    "completed": "green",
    "failed": "red",
    "cancelled": "yellow",
}


def handle_error(error: LoopDeskError, json_output: bool = False) -> NoReturn:
    """Print a LoopDeskError (human-readable or JSON) and exit with code 1."""
    if json_output:
        error_dict = error.to_dict()
        if error.cause:
            error_dict["cause"] = str(error.cause)
        print(json.dumps(error_dict), file=sys.stderr)
        sys.exit(1)

    header = Text()
    header.append("✗ ", style="bold")
    header.append(error.error_id, style="bold red")
    header.append(f" {error.message}")
    err_console.print(header)

    if error.recovery_hints:
        err_console.print("\n[bold]What you can do:[/]")
        for i, hint in enumerate(error.recovery_hints, 1):
            err_console.print(f"  {i}. {hint}")
    sys.exit(1)


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Config file (default: .loopdesk/config.yaml, then ~/.loopdesk/config.yaml)")
@click.option("--log-file", is_flag=True, help="Also write a session log (logging.directory)")
@click.version_option(__version__, prog_name="loopdesk")
@click.pass_context
def main(ctx: click.Context, debug: bool, config_path: str | None, log_file: bool) -> None:
    """LoopDesk host bridge: command dispatch and event streaming."""
    config = load_config(config_path)
    if log_file:
        config.logging.persist = True
    try:
        configure_logging(config.logging, debug=debug, console=err_console)
    except LoopDeskError as e:
        handle_error(e)
    ctx.obj = config


@main.command()
@click.option("--port", type=int, default=None, help="Port to listen on (default: server.port)")
@click.option("--host", "bind_host", default=None, help="Host to bind to (127.0.0.1 for local only)")
@click.option("--dev", is_flag=True, help="Development mode (CORS enabled for Vite on :5173)")
@click.pass_obj
def serve(config: LoopDeskConfig, port: int | None, bind_host: str | None, dev: bool) -> None:
    """Start the HTTP/WebSocket bridge.

    \b
    Examples:
        loopdesk serve              # Start on 127.0.0.1:8765
        loopdesk serve --dev        # API only, for Vite dev server
        loopdesk serve --port 3000  # Custom port
    """
    import uvicorn

    from loopdesk.server import create_app

    bind_host = bind_host or config.server.host
    port = port or config.server.port
    app = create_app(host=HostApp(config), dev_mode=dev)

    console.print()
    console.print("[bold green]LoopDesk Bridge[/bold green]")
    console.print(f"   URL: http://{bind_host}:{port}")
    console.print(f"   CLI: {config.cli.executable}")
    if dev:
        console.print("   Mode: [yellow]Development[/yellow] (CORS enabled)")
    console.print()
    console.print("[dim]Press Ctrl+C to stop[/dim]")
    console.print()

    uvicorn.run(app, host=bind_host, port=port, log_level="info")


@main.command(name="exec")
@click.argument("command")
@click.option("--project", "-p", "project_path", type=click.Path(exists=True, file_okay=False),
              default=".", help="Directory to run in")
@click.option("--step", "step_id", default=None, help="Workflow step the run belongs to")
@click.option("--interactive", is_flag=True, help="Run in full_interactive mode instead of print")
@click.option("--json", "json_output", is_flag=True, help="Print the final record as JSON")
@click.pass_obj
def exec_command(
    config: LoopDeskConfig,
    command: str,
    project_path: str,
    step_id: str | None,
    interactive: bool,
    json_output: bool,
) -> None:
    """Run COMMAND through the host and stream its output.

    Exits with the command's exit code.
    """
    mode = "full_interactive" if interactive else "print"
    try:
        exit_code = asyncio.run(
            _run_exec(config, command, os.path.abspath(project_path), step_id, mode, json_output)
        )
    except LoopDeskError as e:
        handle_error(e, json_output)
    sys.exit(exit_code)


def _print_output(event: CliOutputEvent) -> None:
    if event.type == "system":
        return
    target = err_console if event.type == "stderr" else console
    target.print(Text.from_ansi(event.content), end="", soft_wrap=True)


async def _run_exec(
    config: LoopDeskConfig,
    command: str,
    project_path: str,
    step_id: str | None,
    mode: str,
    json_output: bool,
) -> int:
    host = HostApp(config)
    await host.start()
    bridge = LocalBridge(host)
    store = ExecutionLogStore(bridge)
    output = CliOutputSubscription(bridge, on_output=_print_output)
    try:
        store.subscribe_to_cli_output()
        output.subscribe()

        execution_id = await store.execute_command(command, project_path, step_id, mode=mode)
        if execution_id is None:
            assert store.last_error is not None
            raise store.last_error
        output.execution_id = execution_id

        await host.engine.wait(execution_id)
        record = store.get_execution(execution_id)
        assert record is not None
    finally:
        output.unsubscribe()
        store.reset()
        await host.teardown()

    if json_output:
        print(json.dumps({
            "executionId": record.id,
            "command": record.command,
            "status": record.status,
            "exitCode": record.exit_code,
            "startedAt": record.started_at,
            "endedAt": record.ended_at,
        }))
    else:
        style = _STATUS_STYLES.get(record.status, "white")
        err_console.print(f"\n[{style}]{record.status}[/{style}] (exit {record.exit_code})")

    return record.exit_code if record.exit_code is not None and record.exit_code >= 0 else 1


if __name__ == "__main__":
    main()
