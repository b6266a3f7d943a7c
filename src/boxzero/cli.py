"""Command-line interface for the BoxZero triage engine.

Provides commands for configuration validation, predictions, trust
stages, sender ranking and the review API server.

Usage:
    python -m boxzero validate-config
    python -m boxzero predict emails.json --user-id u1
    python -m boxzero trust-stages
    python -m boxzero serve
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click
from rich.console import Console
from rich.table import Table

from boxzero.config import validate_config_file
from boxzero.core.logging import configure_logging

if TYPE_CHECKING:
    from boxzero.config_schema import AppConfig
    from boxzero.engine.triage import TriageEngine
    from boxzero.predictors.types import EmailMessage, PredictionResult

console = Console()

_config_option = click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)


def _load_config_or_exit(config_path: Path | None) -> AppConfig:
    """Load config, printing an actionable message and exiting on failure."""
    from boxzero.config import load_config
    from boxzero.core.errors import ConfigLoadError, ConfigValidationError

    try:
        return load_config(config_path)
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Run [cyan]boxzero validate-config[/cyan] for details."
        )
        sys.exit(1)


async def _init_engine(config: AppConfig, use_llm: bool) -> TriageEngine:
    """Open the database and build an engine with persisted state loaded."""
    from boxzero.db.store import DatabaseStore
    from boxzero.engine.triage import build_engine
    from boxzero.predictors.llm import create_anthropic_client

    store = DatabaseStore(config.storage.db_path)
    await store.initialize()

    anthropic_client = None
    if use_llm:
        if os.environ.get("ANTHROPIC_API_KEY"):
            anthropic_client = create_anthropic_client(config.llm)
        else:
            console.print("[yellow]ANTHROPIC_API_KEY not set:[/yellow] running Bayesian tier only.")

    engine = build_engine(config, store, anthropic_client)
    await engine.load_state()
    return engine


def _read_emails(path: Path) -> list[EmailMessage]:
    """Read a JSON list of email records (or {"emails": [...]})."""
    from boxzero.predictors.types import EmailMessage

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Could not read {path}:[/red] {e}")
        sys.exit(1)

    records = data.get("emails", []) if isinstance(data, dict) else data
    if not isinstance(records, list):
        console.print(f"[red]{path} must hold a list of emails[/red]")
        sys.exit(1)

    try:
        return [EmailMessage.from_dict(record) for record in records]
    except (KeyError, TypeError) as e:
        console.print(f"[red]Invalid email record in {path}:[/red] {e}")
        sys.exit(1)


def _prediction_table(emails: list[EmailMessage], predictions: dict[str, PredictionResult]) -> Table:
    table = Table(title="Predictions", padding=(0, 1))
    table.add_column("Email", style="cyan")
    table.add_column("Sender")
    table.add_column("Subject", max_width=40)
    table.add_column("Action", style="bold")
    table.add_column("Confidence", justify="right")
    table.add_column("Review")
    table.add_column("Tiers")

    for email in emails:
        prediction = predictions.get(email.id)
        if prediction is None:
            continue
        final = prediction.final_prediction
        tiers = "bayesian+llm" if prediction.tier3_prediction else "bayesian"
        table.add_row(
            email.id,
            email.sender,
            email.subject or "(no subject)",
            final.action,
            f"{final.confidence:.0%}",
            "[yellow]needs approval[/yellow]" if final.requires_approval else "[green]auto[/green]",
            tiers,
        )
    return table


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """BoxZero - email triage prediction engine."""
    log_level = "DEBUG" if debug else "INFO"
    # Use human-readable output for CLI, JSON for server
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@_config_option
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml passes Pydantic schema validation and reports
    specific errors for invalid fields.
    """
    if config_path:
        console.print(f"Validating config: [cyan]{config_path}[/cyan]")
    else:
        console.print("Validating config: [cyan]config/config.yaml[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("predict")
@click.argument("emails_json", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--user-id", required=True, help="User the predictions are for")
@click.option("--llm/--no-llm", default=True, help="Allow Tier-3 (Claude) predictions")
@_config_option
def predict(emails_json: Path, user_id: str, llm: bool, config_path: Path | None) -> None:
    """Predict actions for the emails in EMAILS_JSON.

    Nothing is executed or queued; the predictions are printed as a table.
    """
    config = _load_config_or_exit(config_path)
    emails = _read_emails(emails_json)
    if not emails:
        console.print("[yellow]No emails to predict.[/yellow]")
        return

    try:
        predictions = asyncio.run(_run_predict(config, emails, user_id, llm))
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)

    console.print(_prediction_table(emails, predictions))

    auto = sum(1 for p in predictions.values() if not p.final_prediction.requires_approval)
    console.print(f"\n{len(predictions)} predictions, [green]{auto}[/green] above the auto-approve threshold")


async def _run_predict(
    config: AppConfig,
    emails: list[EmailMessage],
    user_id: str,
    use_llm: bool,
) -> dict[str, PredictionResult]:
    engine = await _init_engine(config, use_llm)
    return await engine.ensemble.predict_batch(emails, user_id, engine.behavior.models, force_refresh=True)


@cli.command("trust-stages")
@_config_option
def trust_stages(config_path: Path | None) -> None:
    """Show the trust stage table."""
    from boxzero.config_schema import TRUST_STAGE_ORDER

    config = _load_config_or_exit(config_path)

    table = Table(title="Trust stages", padding=(0, 1))
    table.add_column("Stage", style="cyan")
    table.add_column("Interactions to advance", justify="right")
    table.add_column("Min approval rate", justify="right")
    table.add_column("Auto-approve threshold", justify="right")
    table.add_column("Next")

    for name in TRUST_STAGE_ORDER:
        stage = config.trust.stages[name]
        table.add_row(
            name,
            str(stage.required_interactions) if stage.required_interactions is not None else "-",
            f"{stage.min_approval_rate:.0%}",
            f"{stage.auto_approve_threshold:.2f}",
            stage.next or "-",
        )
    console.print(table)


@cli.command("senders")
@click.option("--limit", default=10, type=int, help="Number of senders to show")
@_config_option
def senders(limit: int, config_path: Path | None) -> None:
    """Show the most important senders."""
    config = _load_config_or_exit(config_path)
    engine = asyncio.run(_init_engine(config, use_llm=False))

    table = Table(title="Top senders", padding=(0, 1))
    table.add_column("Sender", style="cyan")
    table.add_column("Emails", justify="right")
    table.add_column("Importance", justify="right")
    table.add_column("Response", justify="right")
    table.add_column("Archive", justify="right")
    table.add_column("VIP")

    for model in engine.behavior.rank(limit=limit):
        table.add_row(
            model.sender_email,
            str(model.total_emails),
            f"{model.importance_score:.2f}",
            f"{model.response_rate:.0%}",
            f"{model.archive_rate:.0%}",
            "yes" if model.is_vip else ("suggested" if engine.behavior.should_be_vip(model) else ""),
        )
    console.print(table)


@cli.command("serve")
@click.option(
    "--host",
    default="127.0.0.1",
    help="Host to bind to (default: localhost only for security)",
)
@click.option(
    "--port",
    default=8000,
    type=int,
    help="Port to bind to",
)
def serve(host: str, port: int) -> None:
    """Start the review API server."""
    import uvicorn

    from boxzero.web.app import create_app

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] Binding to 0.0.0.0 exposes the server to the network.\n"
            "This app has no authentication. Use 127.0.0.1 for local-only access."
        )

    configure_logging(log_level="INFO", json_output=True)

    app = create_app()
    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level="info")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
