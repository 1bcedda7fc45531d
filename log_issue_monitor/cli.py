import asyncio
import json
import logging
import os
import socket
import sys
from pathlib import Path
from typing import Optional

import typer


app = typer.Typer(help="Log Issue Monitor: tail log files, classify problems, serve them on a live dashboard")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _setup_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def _send_control_command(cmd: dict, host: str = "127.0.0.1", port: int = 8765, timeout: float = 3.0) -> dict:
    data = (json.dumps(cmd) + "\n").encode()
    with socket.create_connection((host, port), timeout=timeout) as s:
        s.sendall(data)
        s.shutdown(socket.SHUT_WR)
        chunks = []
        while True:
            buf = s.recv(65536)
            if not buf:
                break
            chunks.append(buf)
    raw = b"".join(chunks)
    if not raw:
        return {}
    try:
        return json.loads(raw.decode())
    except ValueError:
        return {"raw": raw.decode(errors="ignore")}


def _remote(cmd: dict, host: str, port: int) -> None:
    try:
        resp = _send_control_command(cmd, host, port)
    except OSError as e:
        typer.echo(f"Cannot reach monitor on {host}:{port}: {e}", err=True)
        raise typer.Exit(code=1)
    typer.echo(json.dumps(resp, indent=2))


def _config_path(dir: Optional[str], config: Optional[str]) -> Path:
    from .util import default_config_path, project_root_from_cwd

    if config:
        return Path(config).resolve()
    project = Path(dir).resolve() if dir else project_root_from_cwd()
    return default_config_path(project)


@app.command()
def start(
    dir: Optional[str] = typer.Option(None, "--dir", help="Project directory to run in (defaults to CWD)", metavar="PATH"),
    config: Optional[str] = typer.Option(None, "--config", help="Config file (defaults to .log-issue-monitor/config.yaml)", metavar="FILE"),
    host: Optional[str] = typer.Option(None, help="Bind host (overrides config)"),
    port: Optional[int] = typer.Option(None, help="Control server port (overrides config)"),
    http: bool = typer.Option(True, "--http/--no-http", help="Serve the dashboard, REST API and SSE stream"),
    http_port: Optional[int] = typer.Option(None, "--http-port", help="Dashboard port (overrides config)"),
    daemon: bool = typer.Option(False, "--daemon", help="Run in background and log to .log-issue-monitor/monitor.log"),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
    yes: bool = typer.Option(False, "--yes", help="Auto-confirm prompts like adding .log-issue-monitor to .gitignore"),
):
    """Run the monitor.

    - Creates a `.log-issue-monitor/` directory with a default `config.yaml` on first run.
    - Offers to add `.log-issue-monitor` to `.gitignore` if a Git repo is detected.
    - Starts the polling thread, control server and dashboard; can daemonize with `--daemon`.
    """
    from .runtime import daemonize, run_monitor
    from .util import STATE_DIR_NAME, add_to_gitignore, ensure_state_dir, is_git_repo, is_in_gitignore, project_root_from_cwd

    project = Path(dir).resolve() if dir else project_root_from_cwd()
    state = ensure_state_dir(project)
    cfg_path = _config_path(dir, config)

    if is_git_repo(project):
        gi = project / ".gitignore"
        if is_in_gitignore(project, STATE_DIR_NAME):
            typer.echo(f"{STATE_DIR_NAME} already present in {gi}")
        elif yes or typer.confirm(f"Add '{STATE_DIR_NAME}' to {gi}?"):
            if add_to_gitignore(project, STATE_DIR_NAME):
                typer.echo(f"Added {STATE_DIR_NAME} to {gi}")

    if daemon:
        log_file = state / "monitor.log"
        typer.echo(f"Starting daemon, logging to {log_file}")
        daemonize()
        # In child: continue to run monitor and redirect output
        sys.stdout = open(log_file, "a", buffering=1)
        sys.stderr = open(log_file, "a", buffering=1)

    _setup_logging(log_level)
    try:
        asyncio.run(
            run_monitor(
                str(cfg_path),
                host=host,
                port=port,
                http_enabled=http,
                http_port=http_port,
            )
        )
    except KeyboardInterrupt:
        typer.echo("Monitor stopped.")


@app.command("init-config")
def init_config(
    dir: Optional[str] = typer.Option(None, "--dir", help="Project directory (defaults to CWD)", metavar="PATH"),
    config: Optional[str] = typer.Option(None, "--config", help="Where to write the config file", metavar="FILE"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config file"),
):
    """Write the default configuration document."""
    from .config import default_config_yaml

    path = _config_path(dir, config)
    if path.exists() and not force:
        typer.echo(f"{path} already exists (use --force to overwrite)")
        raise typer.Exit(code=1)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(default_config_yaml(), encoding="utf-8")
    typer.echo(f"Wrote {path}")


@app.command()
def check(
    file: str = typer.Argument(..., help="Log file to classify from the beginning"),
    config: Optional[str] = typer.Option(None, "--config", help="Config file with patterns and context settings", metavar="FILE"),
    encoding: Optional[str] = typer.Option(None, "--encoding", help="File encoding (e.g. utf-8, cp1047)"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Treat lines as structured JSON records"),
    as_json: bool = typer.Option(False, "--json", help="Print issues as JSON"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
):
    """Classify one file once and print the issues found."""
    from .config import ConfigError, DashboardConfig, load_config
    from .runtime import check_file

    _setup_logging(log_level)
    try:
        cfg = load_config(Path(config), create=False) if config else DashboardConfig()
    except ConfigError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=2)
    if not os.path.isfile(file):
        typer.echo(f"No such file: {file}", err=True)
        raise typer.Exit(code=2)
    issues = check_file(file, cfg, encoding=encoding, structured=json_logs or None)
    if as_json:
        typer.echo(json.dumps([i.to_dict() for i in issues], indent=2, ensure_ascii=False))
    else:
        for issue in issues:
            typer.echo(str(issue))
        typer.echo(f"{len(issues)} issue(s)")
    if issues:
        raise typer.Exit(code=1)


@app.command("add-path")
def add_path(
    path: str,
    server: Optional[str] = typer.Option(None, "--server", help="Server name shown with its issues"),
    encoding: str = typer.Option("utf-8", "--encoding", help="File encoding"),
    transcode: bool = typer.Option(False, "--transcode", help="Convert through iconv"),
    structured: bool = typer.Option(False, "--json-logs", help="Lines are JSON records"),
    host: str = "127.0.0.1",
    port: int = 8765,
):
    """Watch another directory (or single file) in the running monitor."""
    _remote(
        {
            "cmd": "add_path",
            "path": os.path.abspath(path),
            "server": server,
            "encoding": encoding,
            "transcode": transcode,
            "structured": structured,
        },
        host,
        port,
    )


@app.command("remove-path")
def remove_path(path: str, host: str = "127.0.0.1", port: int = 8765):
    """Stop watching a directory (or file) in the running monitor."""
    _remote({"cmd": "remove_path", "path": os.path.abspath(path)}, host, port)


@app.command()
def status(host: str = "127.0.0.1", port: int = 8765):
    """Get current monitor status: watched paths and counters."""
    _remote({"cmd": "status"}, host, port)


@app.command()
def files(host: str = "127.0.0.1", port: int = 8765):
    """List tracked files with offset, size and line number."""
    _remote({"cmd": "files"}, host, port)


@app.command()
def rescan(host: str = "127.0.0.1", port: int = 8765):
    """Re-list every watch path on the next cycle."""
    _remote({"cmd": "rescan"}, host, port)


@app.command()
def verbose(
    enabled: bool = typer.Option(True, "--on/--off", help="Enable or disable debug logging"),
    host: str = "127.0.0.1",
    port: int = 8765,
):
    """Toggle debug logging in the running monitor."""
    _remote({"cmd": "verbose", "enabled": enabled}, host, port)


@app.command()
def stop(host: str = "127.0.0.1", port: int = 8765):
    """Ask the running monitor to stop gracefully."""
    _remote({"cmd": "stop"}, host, port)


def main():
    """Entry point for console_scripts."""
    app()


if __name__ == "__main__":
    main()
