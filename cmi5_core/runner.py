"""
Command-line entry point.

  cmi5-relay launch "<launch url>" --events events.jsonl --score 0.9
  cmi5-relay status

`launch` replays producer events from a JSON-lines file
({"verb": ..., "result": ..., "object": ...} per line), optionally completes
the course, then tears the session down the way a closing page would.
"""

import json
from pathlib import Path
from typing import Optional

import typer

from .constants import ENGINE_VERSION
from .config import log, setup_logging, load_config, CONFIG_FILE
from .engine import Cmi5Engine
from .session_store import FileSessionStore

app = typer.Typer(
    name="cmi5-relay",
    help="Deliver xAPI statements to an LRS under a cmi5 session",
    no_args_is_help=True,
)


def read_events(path):
    """Yield event dicts from a JSON-lines file, skipping blank and bad lines."""
    with open(path, "r", encoding="utf-8") as f:
        for number, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError as e:
                log.warning("Skipping line %d of %s: %s", number, path, e)
                continue
            if not isinstance(event, dict) or not event.get("verb"):
                log.warning("Skipping line %d of %s: no verb", number, path)
                continue
            yield event


@app.command()
def launch(
    launch_url: str = typer.Argument(..., help="Launch URL or query string from the LMS"),
    events: Optional[Path] = typer.Option(None, "--events", "-e", help="JSON-lines file of events"),
    score: Optional[float] = typer.Option(None, "--score", "-s", help="Final score 0..1; completes the course"),
    config_path: Path = typer.Option(CONFIG_FILE, "--config", "-c", help="Engine config JSON"),
):
    """Initialize a session, replay events, optionally complete, then tear down."""
    setup_logging()
    typer.echo(f"cmi5 relay v{ENGINE_VERSION}")

    engine = Cmi5Engine(load_config(config_path))
    try:
        engine.initialize(launch_url).result()
        typer.echo(f"LRS status: {engine.status_label()}")

        if events:
            submitted = 0
            for event in read_events(events):
                try:
                    engine.submit(event["verb"], event.get("result"), event.get("object"))
                    submitted += 1
                except ValueError as e:
                    log.warning("Event rejected: %s", e)
            engine.flush().result()
            typer.echo(f"Submitted {submitted} events ({len(engine.queue)} still queued)")

        if score is not None:
            engine.mark_course_complete(score).result()
            typer.echo(f"Course complete: terminated={engine.is_terminated()}")
    finally:
        engine.on_teardown()
        engine.shutdown()

    typer.echo(json.dumps(engine.describe(), indent=2))


@app.command()
def status(
    config_path: Path = typer.Option(CONFIG_FILE, "--config", "-c", help="Engine config JSON"),
):
    """Print the stored session record, if any."""
    config = load_config(config_path)
    record = FileSessionStore(config.session_store_path).load()
    if record is None:
        typer.echo("No stored session.")
        raise typer.Exit(code=1)
    data = record.to_dict()
    if data.get("authToken"):
        data["authToken"] = data["authToken"][:12] + "..."
    typer.echo(json.dumps(data, indent=2))


def main():
    app()
