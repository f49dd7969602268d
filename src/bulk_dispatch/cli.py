"""Command-line interface for the bulk dispatch service.

This module provides a CLI to run the server and to submit and follow bulk
jobs through the HTTP API.

Usage:
    bulk-dispatch serve --port 8000
    bulk-dispatch send sales "Hello" -r 39333111 -r 39333222 --delay 1500
    bulk-dispatch send sales "Hello" --recipients-file numbers.txt --wait
    bulk-dispatch status bulk_1718000000000_k3j9x0a2m
    bulk-dispatch jobs sales --limit 10
    bulk-dispatch watch bulk_1718000000000_k3j9x0a2m

The server URL and token default to ``$BDS_URL`` and ``$BDS_API_TOKEN``.
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Any, Optional

import click
import requests
from rich.console import Console
from rich.table import Table

from .client import BulkDispatchClient, BulkJob

console = Console()
err_console = Console(stderr=True)


def get_client(url: str, token: Optional[str]) -> BulkDispatchClient:
    """Create a client bound to the given server."""
    return BulkDispatchClient(url, token=token)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _http_error_message(exc: requests.RequestException) -> str:
    response = getattr(exc, "response", None)
    if response is None:
        return str(exc)
    try:
        detail = response.json().get("detail")
    except ValueError:
        detail = None
    if isinstance(detail, str):
        return f"{detail} (HTTP {response.status_code})"
    return f"HTTP {response.status_code}"


def _print_job(job: BulkJob) -> None:
    color = "green" if job.is_completed else "yellow"
    console.print(f"[bold]{job.job_id}[/bold]  [{color}]{job.status}[/{color}]")
    console.print(f"  Session:  {job.session_id}")
    console.print(f"  Progress: {job.progress}% ({job.sent + job.failed}/{job.total})")
    console.print(f"  Sent:     {job.sent}")
    console.print(f"  Failed:   {job.failed}")
    failures = [d for d in job.details if d.get("status") == "failed"]
    if failures:
        table = Table(title="Failed recipients")
        table.add_column("Recipient", style="cyan")
        table.add_column("Error")
        for detail in failures:
            table.add_row(detail.get("recipient", "-"), detail.get("error") or "-")
        console.print(table)


def _read_recipients(recipients: tuple[str, ...], recipients_file: Optional[str]) -> list[str]:
    result = [r.strip() for r in recipients if r.strip()]
    if recipients_file:
        for line in Path(recipients_file).read_text().splitlines():
            line = line.strip()
            if line and not line.startswith("#"):
                result.append(line)
    return result


@click.group()
@click.version_option(package_name="bulk-dispatch")
@click.option("--url", envvar="BDS_URL", default="http://localhost:8000", show_default=True,
              help="Base URL of the bulk dispatch server.")
@click.option("--token", envvar="BDS_API_TOKEN", default=None, help="API token (X-API-Token).")
@click.pass_context
def main(ctx: click.Context, url: str, token: Optional[str]) -> None:
    """bulk-dispatch CLI - Submit and follow bulk message jobs."""
    ctx.obj = {"url": url, "token": token}


@main.command("serve")
@click.option("--host", default=None, help="Interface to bind (default from config).")
@click.option("--port", type=int, default=None, help="Port to listen on (default from config).")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Path to the INI configuration file.")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development.")
def serve(host: Optional[str], port: Optional[int], config_path: Optional[str], reload: bool) -> None:
    """Run the HTTP server."""
    import uvicorn

    from .config_loader import load_settings
    from .server import configure_logging

    if config_path:
        os.environ["BDS_CONFIG"] = config_path
    try:
        settings = load_settings(config_path)
    except ValueError as exc:
        print_error(str(exc))
        sys.exit(1)
    configure_logging(settings.log_level)

    host = host or settings.host
    port = port or settings.port
    console.print("\n[bold cyan]Starting bulk dispatch service[/bold cyan]")
    console.print(f"  Listen:   {host}:{port}")
    console.print(f"  Sessions: {', '.join(settings.gateway_sessions) or '-'}")
    console.print()

    uvicorn.run(
        "bulk_dispatch.server:app",
        host=host,
        port=port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@main.command("send")
@click.argument("session_id")
@click.argument("message")
@click.option("--recipient", "-r", "recipients", multiple=True, help="Recipient (repeatable).")
@click.option("--recipients-file", "-f", type=click.Path(exists=True, dir_okay=False),
              help="File with one recipient per line.")
@click.option("--delay", type=int, default=None, help="Pause between messages in ms.")
@click.option("--typing", type=int, default=None, help="Typing simulation in ms.")
@click.option("--wait", is_flag=True, help="Wait for the job to complete.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def send(obj: dict, session_id: str, message: str, recipients: tuple[str, ...],
         recipients_file: Optional[str], delay: Optional[int], typing: Optional[int],
         wait: bool, as_json: bool) -> None:
    """Submit MESSAGE to every recipient through SESSION_ID."""
    recipient_list = _read_recipients(recipients, recipients_file)
    if not recipient_list:
        print_error("No recipients given (use --recipient or --recipients-file)")
        sys.exit(1)

    client = get_client(obj["url"], obj["token"])
    try:
        receipt = client.send_bulk(session_id, recipient_list, message,
                                   delay_between_messages=delay, typing_time=typing)
        job = client.wait_for(receipt.job_id) if wait else None
    except requests.RequestException as exc:
        print_error(_http_error_message(exc))
        sys.exit(1)
    except (LookupError, TimeoutError) as exc:
        print_error(str(exc))
        sys.exit(1)

    if as_json:
        print_json({"job_id": receipt.job_id, "total": receipt.total, "status_url": receipt.status_url})
        return
    print_success(f"Bulk job {receipt.job_id} accepted ({receipt.total} recipients)")
    console.print(f"  Status: {receipt.status_url}")
    if job is not None:
        _print_job(job)


@main.command("status")
@click.argument("job_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def status(obj: dict, job_id: str, as_json: bool) -> None:
    """Show the state of a bulk job."""
    client = get_client(obj["url"], obj["token"])
    try:
        job = client.job(job_id)
    except requests.RequestException as exc:
        print_error(_http_error_message(exc))
        sys.exit(1)
    if job is None:
        print_error(f"Job not found: {job_id}")
        sys.exit(1)
    if as_json:
        print_json(job.__dict__)
        return
    _print_job(job)


@main.command("jobs")
@click.argument("session_id")
@click.option("--limit", type=int, default=None, help="Maximum jobs to show (server caps at 50).")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def jobs(obj: dict, session_id: str, limit: Optional[int], as_json: bool) -> None:
    """List the bulk jobs of SESSION_ID, newest first."""
    client = get_client(obj["url"], obj["token"])
    try:
        job_list = client.jobs(session_id, limit=limit)
    except requests.RequestException as exc:
        print_error(_http_error_message(exc))
        sys.exit(1)

    if as_json:
        print_json([job.__dict__ for job in job_list])
        return
    if not job_list:
        console.print(f"[dim]No bulk jobs for session '{session_id}'.[/dim]")
        return

    table = Table(title=f"Bulk jobs (session: {session_id})")
    table.add_column("Job ID", style="cyan")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Sent", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Created")

    for job in job_list:
        status_str = "[green]completed[/green]" if job.is_completed else "[yellow]processing[/yellow]"
        table.add_row(
            job.job_id,
            status_str,
            f"{job.progress}%",
            str(job.sent),
            str(job.failed),
            job.created_at or "-",
        )
    console.print(table)


@main.command("watch")
@click.argument("job_id")
@click.option("--interval", type=float, default=1.0, show_default=True, help="Polling interval in seconds.")
@click.option("--timeout", type=float, default=300.0, show_default=True, help="Give up after this many seconds.")
@click.pass_obj
def watch(obj: dict, job_id: str, interval: float, timeout: float) -> None:
    """Poll a bulk job until it completes."""
    client = get_client(obj["url"], obj["token"])
    try:
        with console.status(f"Waiting for {job_id}..."):
            job = client.wait_for(job_id, timeout=timeout, interval=interval)
    except requests.RequestException as exc:
        print_error(_http_error_message(exc))
        sys.exit(1)
    except (LookupError, TimeoutError) as exc:
        print_error(str(exc))
        sys.exit(1)
    _print_job(job)


if __name__ == "__main__":
    main()
