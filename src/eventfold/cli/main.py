"""
eventfold CLI

Command-line interface for the CQRS pipeline.
Provides commands for database setup, command submission, running the
validator and materializer loops, querying, and operator diagnostics.

Usage:
    eventfold init --config settings.json
    eventfold submit createEntry --body '{"title": "Hello"}'
    eventfold run
    eventfold get entries <id>
    eventfold gaps
"""

import json
import signal
import threading
from pathlib import Path
from typing import Any, Optional

import typer
from typing_extensions import Annotated

from eventfold.kernel.envelopes import RejectionCode
from eventfold.kernel.errors import (
    ConfigurationError,
    DomainRejection,
    EntryNotFound,
    SchemaNotFound,
)
from eventfold.kernel.logging import configure_logging, get_logger, is_production
from eventfold.kernel.metrics import start_metrics_server
from eventfold.kernel.read_store import ReadStoreEntry
from eventfold.kernel.settings import load_settings
from eventfold.pipeline import Pipeline

# Logs go to stderr so stdout stays clean for JSON output
configure_logging(json_output=is_production(), log_level="INFO")

logger = get_logger(__name__)

app = typer.Typer(
    name="eventfold",
    help="eventfold - schema-driven CQRS pipeline",
    add_completion=False,
)

DEFAULT_CONFIG = Path("settings.json")

ConfigOption = Annotated[
    Path,
    typer.Option("--config", "-c", envvar="EVENTFOLD_CONFIG", help="Settings file (JSON)"),
]
DbOption = Annotated[
    Optional[Path],
    typer.Option("--db", help="Database path (overrides the settings file)"),
]


def get_pipeline(config: Path, db: Optional[Path] = None, must_exist: bool = True) -> Pipeline:
    """Load settings and open the pipeline"""
    try:
        settings = load_settings(config)
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    db_path = db or Path(settings.db_path)
    if must_exist and not db_path.exists():
        typer.echo(f"Error: Database not found: {db_path}", err=True)
        typer.echo(f"Run 'eventfold init --config {config}' to initialize", err=True)
        raise typer.Exit(1)
    return Pipeline(settings, db_path=db_path)


def entry_to_dict(entry: ReadStoreEntry) -> dict[str, Any]:
    return {
        "resource_type": entry.resource_type,
        "resource_id": entry.resource_id,
        "version": entry.version,
        "deleted": entry.deleted,
        "state": entry.state,
    }


def _run_loops(
    pipeline: Pipeline,
    validator: bool,
    materializer: bool,
    once: bool,
    metrics_port: Optional[int],
) -> None:
    """Drain once, or run workers until SIGINT/SIGTERM"""
    if once:
        commands = pipeline.validator_workers.run_once() if validator else 0
        events = pipeline.materializer_workers.run_once() if materializer else 0
        typer.echo(f"✓ Processed {commands} command(s), {events} event(s)")
        return

    if metrics_port is not None:
        start_metrics_server(metrics_port)
        logger.info("Metrics server started", port=metrics_port)

    stop = threading.Event()

    def _shutdown(signum: int, frame: Any) -> None:
        logger.info("Shutdown requested", signal=signal.Signals(signum).name)
        stop.set()

    previous = {sig: signal.signal(sig, _shutdown) for sig in (signal.SIGINT, signal.SIGTERM)}
    pipeline.start(validator=validator, materializer=materializer)
    failed = []
    try:
        while not stop.wait(0.5):
            failed = pipeline.validator_workers.failed + pipeline.materializer_workers.failed
            if failed:
                break
    finally:
        pipeline.stop()
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    if failed:
        for worker in failed:
            typer.echo(
                f"Error: {worker.name} partition {worker.partition} failed: {worker.error}",
                err=True,
            )
        raise typer.Exit(1)
    typer.echo("✓ Stopped")


# Setup


@app.command()
def init(config: ConfigOption = DEFAULT_CONFIG, db: DbOption = None) -> None:
    """Initialize a new eventfold database"""
    pipeline = get_pipeline(config, db, must_exist=False)
    typer.echo(f"✓ Initialized eventfold database: {pipeline.db_path}")
    typer.echo(f"  Partitions: {pipeline.settings.partitions}")
    typer.echo(f"  Resource types: {', '.join(pipeline.schemas.resource_types) or '-'}")


# Command side


@app.command()
def submit(
    command_type: Annotated[str, typer.Argument(help="Command type, e.g. createEntry")],
    body: Annotated[str, typer.Option("--body", help="Command body (JSON object)")] = "{}",
    resource_id: Annotated[
        Optional[str],
        typer.Option("--resource-id", help="Target resource (required for update/delete)"),
    ] = None,
    user: Annotated[Optional[str], typer.Option("--user", help="Issuing user")] = None,
    config: ConfigOption = DEFAULT_CONFIG,
    db: DbOption = None,
) -> None:
    """Append a command to the command log"""
    pipeline = get_pipeline(config, db)

    try:
        body_dict = json.loads(body)
    except ValueError as e:
        typer.echo(f"Error: --body is not valid JSON: {e}", err=True)
        raise typer.Exit(1)
    if not isinstance(body_dict, dict):
        typer.echo("Error: --body must be a JSON object", err=True)
        raise typer.Exit(1)

    try:
        command = pipeline.submit(command_type, body_dict, resource_id=resource_id, user=user)
    except DomainRejection as e:
        typer.echo(f"Error: {e.reason}", err=True)
        raise typer.Exit(1)

    typer.echo(f"✓ Submitted command: {command.id}")
    typer.echo(f"  Type: {command.type}")
    typer.echo(f"  Resource: {command.target_id}")


@app.command()
def validate(
    once: Annotated[bool, typer.Option("--once", help="Drain pending commands and exit")] = False,
    metrics_port: Annotated[
        Optional[int], typer.Option("--metrics-port", help="Expose Prometheus metrics")
    ] = None,
    config: ConfigOption = DEFAULT_CONFIG,
    db: DbOption = None,
) -> None:
    """Run the validator loops (command log -> event log)"""
    _run_loops(get_pipeline(config, db), True, False, once, metrics_port)


@app.command()
def materialize(
    once: Annotated[bool, typer.Option("--once", help="Drain pending events and exit")] = False,
    metrics_port: Annotated[
        Optional[int], typer.Option("--metrics-port", help="Expose Prometheus metrics")
    ] = None,
    config: ConfigOption = DEFAULT_CONFIG,
    db: DbOption = None,
) -> None:
    """Run the materializer loops (event log -> read store)"""
    _run_loops(get_pipeline(config, db), False, True, once, metrics_port)


@app.command()
def run(
    once: Annotated[bool, typer.Option("--once", help="Drain both logs and exit")] = False,
    metrics_port: Annotated[
        Optional[int], typer.Option("--metrics-port", help="Expose Prometheus metrics")
    ] = None,
    config: ConfigOption = DEFAULT_CONFIG,
    db: DbOption = None,
) -> None:
    """Run validator and materializer loops until interrupted"""
    _run_loops(get_pipeline(config, db), True, True, once, metrics_port)


# Query side


@app.command()
def get(
    resource_type: Annotated[str, typer.Argument(help="Resource type (base), e.g. entries")],
    resource_id: Annotated[str, typer.Argument(help="Resource ID")],
    config: ConfigOption = DEFAULT_CONFIG,
    db: DbOption = None,
) -> None:
    """Show one resource from the read store"""
    pipeline = get_pipeline(config, db)
    try:
        entry = pipeline.get(resource_type, resource_id)
    except (SchemaNotFound, EntryNotFound) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(json.dumps(entry_to_dict(entry), indent=2, default=str))
    if entry.deleted:
        raise typer.Exit(1)


@app.command("list")
def list_entries(
    resource_type: Annotated[str, typer.Argument(help="Resource type (base), e.g. entries")],
    include_deleted: Annotated[
        bool, typer.Option("--include-deleted", help="Include tombstoned resources")
    ] = False,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
    config: ConfigOption = DEFAULT_CONFIG,
    db: DbOption = None,
) -> None:
    """List resources of one type"""
    pipeline = get_pipeline(config, db)
    try:
        entries = list(pipeline.list(resource_type, include_deleted=include_deleted))
    except SchemaNotFound as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if json_output:
        typer.echo(json.dumps([entry_to_dict(e) for e in entries], indent=2, default=str))
        return

    if not entries:
        typer.echo(f"No {resource_type}")
        return
    typer.echo(f"{resource_type} ({len(entries)}):")
    for entry in entries:
        marker = " (deleted)" if entry.deleted else ""
        typer.echo(f"  {entry.resource_id} v{entry.version}{marker}: {json.dumps(entry.state)}")


# Diagnostics


@app.command()
def rejections(
    code: Annotated[
        Optional[RejectionCode], typer.Option("--code", help="Only this rejection code")
    ] = None,
    limit: Annotated[Optional[int], typer.Option("--limit", help="Newest N only")] = None,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
    config: ConfigOption = DEFAULT_CONFIG,
    db: DbOption = None,
) -> None:
    """List rejected commands"""
    pipeline = get_pipeline(config, db)
    found = pipeline.list_rejections(code=code, limit=limit)

    if json_output:
        typer.echo(json.dumps([r.model_dump(mode="json") for r in found], indent=2))
        return

    if not found:
        typer.echo("No rejections")
        return
    typer.echo(f"Rejections ({len(found)}):")
    for rejection in found:
        typer.echo(f"  {rejection.caused_by} [{rejection.code.value}] {rejection.reason}")


@app.command()
def gaps(config: ConfigOption = DEFAULT_CONFIG, db: DbOption = None) -> None:
    """List unresolved gaps (exit code 1 if any)"""
    pipeline = get_pipeline(config, db)
    found = pipeline.gaps()
    if not found:
        typer.echo("✓ No unresolved gaps")
        return

    typer.echo(f"⚠ Unresolved gaps ({len(found)}):")
    for gap in found:
        typer.echo(
            f"  {gap.resource_type}/{gap.resource_id}: waiting for v{gap.expected_version}"
            f" ({gap.parked_count} parked since {gap.detected_at.isoformat()})"
        )
    raise typer.Exit(1)


@app.command()
def rebuild(
    resource_id: Annotated[
        Optional[str], typer.Option("--resource-id", help="Rebuild one resource only")
    ] = None,
    verify: Annotated[
        bool, typer.Option("--verify", help="Compare with the read store (exit 1 on mismatch)")
    ] = False,
    config: ConfigOption = DEFAULT_CONFIG,
    db: DbOption = None,
) -> None:
    """Replay the event log from the beginning without touching the read store"""
    pipeline = get_pipeline(config, db)

    if verify:
        mismatched = pipeline.materializer.verify()
        if mismatched:
            typer.echo(f"✗ {len(mismatched)} resource(s) differ from a full replay:", err=True)
            for resource_type, rid in mismatched:
                typer.echo(f"  {resource_type}/{rid}", err=True)
            raise typer.Exit(1)
        typer.echo("✓ Read store matches a full replay of the event log")
        return

    rebuilt = pipeline.materializer.rebuild(resource_id)
    typer.echo(json.dumps([entry_to_dict(e) for e in rebuilt.values()], indent=2, default=str))


@app.command()
def status(config: ConfigOption = DEFAULT_CONFIG, db: DbOption = None) -> None:
    """Show log sizes, consumer lag and gap count"""
    pipeline = get_pipeline(config, db)
    typer.echo(json.dumps(pipeline.status(), indent=2))


# HTTP servers


@app.command("serve-commands")
def serve_commands(
    port: Annotated[Optional[int], typer.Option("--port", help="Listen port")] = None,
    config: ConfigOption = DEFAULT_CONFIG,
    db: DbOption = None,
) -> None:
    """Serve the command REST API"""
    from eventfold.api.command_api import create_command_app

    pipeline = get_pipeline(config, db)
    listen = port or pipeline.settings.ports.command_api
    logger.info("Starting command API", host=pipeline.settings.host, port=listen)
    create_command_app(pipeline).run(
        host=pipeline.settings.host, port=listen, debug=pipeline.settings.debug
    )


@app.command("serve-queries")
def serve_queries(
    port: Annotated[Optional[int], typer.Option("--port", help="Listen port")] = None,
    config: ConfigOption = DEFAULT_CONFIG,
    db: DbOption = None,
) -> None:
    """Serve the query REST API"""
    from eventfold.api.query_api import create_query_app

    pipeline = get_pipeline(config, db)
    listen = port or pipeline.settings.ports.query_api
    logger.info("Starting query API", host=pipeline.settings.host, port=listen)
    create_query_app(pipeline).run(
        host=pipeline.settings.host, port=listen, debug=pipeline.settings.debug
    )


@app.command("serve-health")
def serve_health(
    port: Annotated[int, typer.Option("--port", help="Listen port")] = 8080,
    config: ConfigOption = DEFAULT_CONFIG,
    db: DbOption = None,
) -> None:
    """Serve liveness/readiness probes"""
    from eventfold.health_server import initialize_health_server, run_health_server

    pipeline = get_pipeline(config, db)
    initialize_health_server(pipeline.db_path, pipeline)
    run_health_server(host=pipeline.settings.host, port=port)


def main() -> None:
    """Main entry point"""
    app()


if __name__ == "__main__":
    main()
