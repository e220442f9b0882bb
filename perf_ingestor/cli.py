"""
Performance report ingestor — CLI entry point.

All commands follow this pattern:
  1. Load ``AppConfig`` via ``load_config()``.
  2. Configure logging.
  3. Validate inputs (and secrets, where the command needs them).
  4. Execute action.
  5. Report result to stdout.

Install and run::

    pip install -e .
    perf-ingestor --help
    perf-ingestor init-db
    perf-ingestor validate-config
    perf-ingestor sync-credentials
    perf-ingestor credential-status --service gemini
    perf-ingestor fetch-query-performance 2024 10 12
    perf-ingestor list-periods
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer

app = typer.Typer(
    name="perf-ingestor",
    help="Weekly query-performance report ingestor and API credential pool.",
    add_completion=False,
)


# ── Helpers ───────────────────────────────────────────────────────────────────

def _load_config_or_exit(config_path: Optional[str] = None):
    """Load AppConfig, printing a friendly error and exiting on failure."""
    from perf_ingestor.config import load_config

    try:
        cfg_path = Path(config_path) if config_path else None
        return load_config(cfg_path)
    except FileNotFoundError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    except Exception as exc:
        typer.echo(f"[ERROR] Config validation failed: {exc}", err=True)
        raise typer.Exit(code=1)


def _configure_logging(config):
    """Set up logging from config."""
    from perf_ingestor.utils.logging import configure_logging
    configure_logging(config.logging)


def _ensure_schema(config, db_path: str) -> None:
    from perf_ingestor.db.connection import get_connection
    from perf_ingestor.db.migrations import run_migrations
    from perf_ingestor.db.schema import apply_schema

    with get_connection(
        db_path,
        wal_mode=config.database.wal_mode,
        busy_timeout_ms=config.database.busy_timeout_ms,
    ) as conn:
        apply_schema(conn)
        run_migrations(conn)


def _target_services(config, service: Optional[str]) -> list[str]:
    return [service] if service else list(config.credentials.services)


# ── Commands ──────────────────────────────────────────────────────────────────

@app.command("init-db")
def init_db(
    db_path: Optional[str] = typer.Option(
        None,
        "--db-path",
        help="Override DB path from config (e.g. data/db/test.db).",
    ),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file.",
    ),
) -> None:
    """Initialize the SQLite database and apply the full schema.

    Safe to run multiple times — all DDL uses IF NOT EXISTS.
    Also runs pending schema migrations.
    """
    from perf_ingestor.db.connection import get_connection
    from perf_ingestor.db.migrations import run_migrations
    from perf_ingestor.db.schema import ALL_TABLE_NAMES, apply_schema

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    target_path = db_path or config.database.db_path
    typer.echo(f"Initializing database at: {target_path}")

    with get_connection(
        target_path,
        wal_mode=config.database.wal_mode,
        busy_timeout_ms=config.database.busy_timeout_ms,
    ) as conn:
        apply_schema(conn)
        migrations_applied = run_migrations(conn)

    typer.echo(f"  Tables: {len(ALL_TABLE_NAMES)} created/verified.")
    typer.echo(f"  Migrations applied: {migrations_applied}")
    typer.echo("[OK] Database ready.")


@app.command("validate-config")
def validate_config(
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file (default: config/default.toml).",
    ),
    show_full: bool = typer.Option(
        False,
        "--full",
        help="Print full config including all fields.",
    ),
) -> None:
    """Validate the configuration file and print parsed values.

    Secrets are reported as present/missing, never printed.
    Exits with code 1 if the config fails validation.
    """
    import os

    from perf_ingestor.config import REPORT_CREDENTIAL_ENV_VARS, secrets_env_var

    config = _load_config_or_exit(config_path)

    typer.echo("Configuration validated successfully.")
    typer.echo("")
    typer.echo(f"  Database path:    {config.database.db_path}")
    typer.echo(f"  Report endpoint:  {config.reports.endpoint}")
    typer.echo(f"  Report type:      {config.reports.report_type}")
    typer.echo(f"  Chunk size:       {config.batch.chunk_size}")
    typer.echo(f"  Usage limit:      {config.credentials.usage_limit}")
    typer.echo(f"  Pool services:    {', '.join(config.credentials.services)}")
    typer.echo(f"  Log level:        {config.logging.level}")
    typer.echo(f"  Debug mode:       {config.debug}")

    typer.echo("")
    typer.echo("Secrets:")
    for var in [*REPORT_CREDENTIAL_ENV_VARS, *map(secrets_env_var, config.credentials.services)]:
        state = "set" if (os.environ.get(var) or "").strip() else "MISSING"
        typer.echo(f"  {var:<24} {state}")

    if show_full:
        typer.echo("")
        typer.echo("Full config (JSON):")
        typer.echo(json.dumps(config.model_dump(), indent=2, default=str))

    typer.echo("")


@app.command("fetch-query-performance")
def fetch_query_performance(
    year: int = typer.Argument(..., help="Calendar year of the weeks to fetch."),
    start_week: int = typer.Argument(..., help="First Sunday-start week (1-53)."),
    end_week: int = typer.Argument(..., help="Last Sunday-start week (1-53), inclusive."),
    db_path: Optional[str] = typer.Option(
        None,
        "--db-path",
        help="Override DB path from config.",
    ),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file.",
    ),
) -> None:
    """Fetch weekly search-query performance for every recently active ASIN.

    \b
    For each week in START_WEEK..END_WEEK of YEAR:
      - weeks that have not ended yet are skipped;
      - ASINs already ingested for the week are skipped;
      - the rest are requested in chunks, one report job per chunk.

    A failed chunk is logged and rolled back; the run continues and exits 0.
    Re-running the same range only fills gaps.

    \b
    Credential setup (.env, gitignored):
      SP_API_CLIENT_ID, SP_API_CLIENT_SECRET,
      SP_API_REFRESH_TOKEN, SP_API_MARKETPLACE_ID
    """
    from pydantic import ValidationError

    from perf_ingestor.config import load_report_credentials
    from perf_ingestor.exceptions import ConfigurationError
    from perf_ingestor.ingestion.report_client import ReportJobClient
    from perf_ingestor.ingestion.token_cache import TokenCache
    from perf_ingestor.models.report import PeriodRange
    from perf_ingestor.pipeline.orchestrator import BatchOrchestrator

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    try:
        period_range = PeriodRange(year=year, start_week=start_week, end_week=end_week)
    except ValidationError as exc:
        typer.echo(f"[ERROR] Invalid week range: {exc.errors()[0]['msg']}", err=True)
        raise typer.Exit(code=1)

    try:
        credentials = load_report_credentials()
    except ConfigurationError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)

    target_db = db_path or config.database.db_path
    typer.echo(
        f"fetch-query-performance | year={year} | weeks={start_week}..{end_week} | db={target_db}"
    )

    token_cache = TokenCache.from_config(config, credentials)
    try:
        with ReportJobClient.from_config(
            config, token_cache, credentials.marketplace_id
        ) as client:
            orchestrator = BatchOrchestrator(config, client, db_path=target_db)
            result = orchestrator.run(period_range)
    except Exception as exc:
        typer.echo(f"[ERROR] Run aborted: {exc}", err=True)
        raise typer.Exit(code=1)
    finally:
        token_cache.close()

    typer.echo("")
    typer.echo(f"  Eligible ASINs:   {len(result.eligible)}")
    for p in result.periods:
        if p.skipped_reason:
            typer.echo(f"  {p.period.label}  skipped ({p.skipped_reason})")
        else:
            failed = sum(1 for c in p.chunks if not c.success)
            typer.echo(
                f"  {p.period.label}  chunks={len(p.chunks)} failed={failed} "
                f"inserted={p.rows_inserted}"
            )
    typer.echo(f"  Rows inserted:    {result.rows_inserted}")
    typer.echo("")
    if result.failed_chunks:
        typer.echo(
            f"[OK] Run finished with {len(result.failed_chunks)} failed chunk(s); "
            "re-run the same range to retry them."
        )
    else:
        typer.echo("[OK] Run finished.")


@app.command("sync-credentials")
def sync_credentials(
    service: Optional[str] = typer.Option(
        None,
        "--service",
        help="Service to sync (default: every service in config).",
    ),
    db_path: Optional[str] = typer.Option(
        None,
        "--db-path",
        help="Override DB path from config.",
    ),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file.",
    ),
) -> None:
    """Mirror <SERVICE>_API_KEYS from the environment into the credential pool.

    Missing keys are added, keys no longer listed are removed.  An unset or
    empty variable leaves that service's pool untouched.
    """
    from perf_ingestor.credentials.pool import CredentialPool
    from perf_ingestor.credentials.sync import sync_credentials_from_env

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    target_db = db_path or config.database.db_path
    _ensure_schema(config, target_db)
    pool = CredentialPool.from_config(config, db_path=target_db)

    for svc in _target_services(config, service):
        result = sync_credentials_from_env(pool, svc)
        if result is None:
            typer.echo(f"  {svc}: skipped (no keys configured)")
        else:
            typer.echo(f"  {svc}: added={result.added} removed={result.removed}")

    typer.echo("[OK] Credential sync complete.")


@app.command("credential-status")
def credential_status(
    service: Optional[str] = typer.Option(
        None,
        "--service",
        help="Service to show (default: every service in config).",
    ),
    db_path: Optional[str] = typer.Option(
        None,
        "--db-path",
        help="Override DB path from config.",
    ),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file.",
    ),
) -> None:
    """Show usage of every pooled credential.  Secrets are masked."""
    from perf_ingestor.credentials.pool import CredentialPool

    config = _load_config_or_exit(config_path)

    target_db = db_path or config.database.db_path
    _ensure_schema(config, target_db)
    pool = CredentialPool.from_config(config, db_path=target_db)

    for svc in _target_services(config, service):
        records = pool.status(svc)
        typer.echo(f"{svc}: {len(records)} credential(s), limit {pool.usage_limit}")
        for rec in records:
            last = rec.last_used_at.isoformat(timespec="seconds") if rec.last_used_at else "never"
            state = "active" if rec.is_active else "inactive"
            typer.echo(
                f"  #{rec.credential_id:<4} {rec.masked_secret:<10} "
                f"used={rec.usage_count:<3} last={last}  {state}"
            )


@app.command("list-periods")
def list_periods(
    db_path: Optional[str] = typer.Option(
        None,
        "--db-path",
        help="Override DB path from config.",
    ),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file.",
    ),
) -> None:
    """List ingested weeks with ASIN and record counts, newest first."""
    from perf_ingestor.db.connection import get_connection
    from perf_ingestor.db.repositories.performance_repo import PerformanceRepository

    config = _load_config_or_exit(config_path)

    target_db = db_path or config.database.db_path
    _ensure_schema(config, target_db)
    with get_connection(
        target_db,
        wal_mode=config.database.wal_mode,
        busy_timeout_ms=config.database.busy_timeout_ms,
    ) as conn:
        periods = PerformanceRepository(conn).list_periods()

    if not periods:
        typer.echo("No periods ingested yet.")
        return
    for p in periods:
        typer.echo(f"  {p.label}  asins={p.entity_count}  records={p.record_count}")


# ── Entry point ───────────────────────────────────────────────────────────────

if __name__ == "__main__":
    app()
