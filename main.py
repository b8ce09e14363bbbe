"""
Main entry point for the evidence ingestion engine.

Subcommands:
  run           run every enabled source once (or --source ID ...)
  schedule      run sources on their cron schedules until stopped
  trends        recompute trend snapshots from stored evidence
  import-csv    bulk-import a CSV file for one source
  csv-template  write the CSV upload template
  sources       list configured sources and connector kinds
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import List, Optional

from dotenv import load_dotenv

from evidence_engine.analytics.trends import recompute_trends
from evidence_engine.config import Settings, load_settings, load_sources, load_yaml
from evidence_engine.csv_import import CsvImporter, write_csv_template
from evidence_engine.infra.db import Database
from evidence_engine.infra.fetch import FetchPolicy, PageFetcher
from evidence_engine.infra.http import HttpClient
from evidence_engine.infra.llm import build_text_extractor
from evidence_engine.infra.render import PlaywrightRenderer
from evidence_engine.infra.scheduler import IngestionScheduler, Scheduler
from evidence_engine.infra.store import InMemoryEvidenceStore, SqliteEvidenceStore
from evidence_engine.interfaces import ConnectorContext, EvidenceStore, NullRenderer, Renderer
from evidence_engine.models import ConnectorConfig, IngestionRunReport
from evidence_engine.orchestrator import IngestionOrchestrator
from evidence_engine.registry import build_connectors, builtin_sources, list_available

logger = logging.getLogger("main")


class Runtime:
    """Store, HTTP session, renderer and extractor shared by one process."""

    def __init__(self, settings: Settings, *, dry_run: bool = False) -> None:
        self.settings = settings
        self.store: EvidenceStore
        if dry_run:
            self.store = InMemoryEvidenceStore()
        else:
            self.store = SqliteEvidenceStore(Database(settings.database_path))
        self.http = HttpClient(timeout=settings.fetch_timeout_s * settings.fetch_max_attempts)
        self.renderer: Renderer = PlaywrightRenderer() if settings.render_js_enabled else NullRenderer()
        self.extractor = build_text_extractor(settings.llm_api_key, settings.llm_model, settings.llm_base_url)
        self.fetcher = PageFetcher(
            self.http,
            policy=FetchPolicy(
                timeout_s=settings.fetch_timeout_s,
                max_attempts=settings.fetch_max_attempts,
                backoff_base_s=settings.fetch_backoff_s,
                respect_robots=settings.respect_robots,
            ),
            renderer=self.renderer,
        )
        self.context = ConnectorContext(fetcher=self.fetcher, extractor=self.extractor)
        self.orchestrator = IngestionOrchestrator(self.store, max_concurrent=settings.max_concurrent)

    async def __aenter__(self) -> "Runtime":
        if isinstance(self.store, SqliteEvidenceStore):
            await self.store.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.renderer.close()
        await self.http.close()
        close = getattr(self.extractor, "close", None)
        if close is not None:
            await close()
        await self.store.close()

    async def run_sources(self, configs: List[ConnectorConfig], triggered_by: str = "manual") -> IngestionRunReport:
        configs = [await self.store.load_source_state(c) for c in configs]
        connectors = build_connectors(configs, self.context)
        return await self.orchestrator.run(connectors, triggered_by)


def _load_config(path: str):
    data = load_yaml(path)
    settings = load_settings(data)
    configs = load_sources(data, builtin_sources())
    return settings, configs


def _select(configs: List[ConnectorConfig], source_ids: Optional[List[str]]) -> List[ConnectorConfig]:
    if not source_ids:
        return [c for c in configs if c.enabled]
    wanted = set(source_ids)
    selected = [c for c in configs if c.source_id in wanted]
    missing = wanted - {c.source_id for c in selected}
    if missing:
        logger.warning(f"Unknown source id(s): {sorted(missing)}")
    return selected


def _print_report(report: IngestionRunReport) -> None:
    print(f"Run {report.run_id}: {report.status} in {report.duration_ms}ms")
    print(f"  sources: {report.sources_succeeded}/{report.sources_attempted} ok, {report.sources_failed} failed")
    print(f"  evidence: {report.evidence_extracted} extracted, {report.evidence_created} created, "
          f"{report.evidence_skipped} duplicates")
    for r in report.per_source:
        suffix = f" – {r.error_type.value if r.error_type else 'error'}: {r.error}" if r.error else ""
        print(f"  - {r.source_id:<28} {r.status:<8} {r.evidence_created:>3} new{suffix}")
    for name, outcome in report.downstream.items():
        print(f"  downstream {name}: {outcome}")


# --------------------------------------------------------------------------- #
# Subcommands

async def cmd_run(args, settings: Settings, configs: List[ConnectorConfig]) -> int:
    selected = _select(configs, args.source)
    if not selected:
        logger.error("No sources selected")
        return 1
    async with Runtime(settings, dry_run=args.dry_run) as runtime:
        report = await runtime.run_sources(selected, args.trigger)
    _print_report(report)
    return 0 if report.status == "completed" else 2


async def cmd_schedule(args, settings: Settings, configs: List[ConnectorConfig]) -> int:
    stop_event = asyncio.Event()

    def signal_handler():
        logger.info("Received shutdown signal")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        asyncio.get_running_loop().add_signal_handler(sig, signal_handler)

    async with Runtime(settings, dry_run=args.dry_run) as runtime:
        async def run_one(config: ConnectorConfig) -> IngestionRunReport:
            return await runtime.run_sources([config], "scheduled")

        ingestion = IngestionScheduler(
            configs,
            run_one,
            scheduler=Scheduler(timezone=settings.scheduler_timezone),
            default_cron=settings.default_schedule,
            stagger_s=settings.stagger_s,
        )
        try:
            await ingestion.start()
            for group in ingestion.status():
                logger.info(f"  - '{group['schedule']}': {len(group['sources'])} source(s), next run {group['next_run']}")
            await stop_event.wait()
        finally:
            logger.info("Shutting down...")
            await ingestion.stop()
    logger.info("Shutdown complete")
    return 0


async def cmd_trends(args, settings: Settings, configs: List[ConnectorConfig]) -> int:
    async with Runtime(settings) as runtime:
        snapshots = await recompute_trends(runtime.store, category=args.category, window_days=args.window)
    for s in snapshots:
        change = f"{s.percent_change:+.1%}" if s.percent_change is not None else "n/a"
        print(f"{s.metric[:50]:<50} {s.direction:<18} {change:>8}  {s.confidence:<12} anomalies={len(s.anomalies)}")
    print(f"{len(snapshots)} trend snapshot(s) recorded")
    return 0


async def cmd_import_csv(args, settings: Settings, configs: List[ConnectorConfig]) -> int:
    source = next((c for c in configs if c.source_id == args.source), None)
    if source is None:
        logger.error(f"Source not found: {args.source}")
        return 1
    async with Runtime(settings, dry_run=args.dry_run) as runtime:
        result = await CsvImporter(runtime.store, source).import_file(args.file)
    print(f"{result.success_count}/{result.total_rows} rows imported, {result.skipped_count} skipped")
    for error in result.errors:
        print(f"  {error}")
    return 0


async def cmd_csv_template(args, settings: Settings, configs: List[ConnectorConfig]) -> int:
    if args.output:
        write_csv_template(args.output)
        print(f"Template written to {args.output}")
    else:
        sys.stdout.write(write_csv_template())
    return 0


async def cmd_sources(args, settings: Settings, configs: List[ConnectorConfig]) -> int:
    kinds = list_available()
    print(f"Connector kinds: {', '.join(sorted(kinds))}")
    for c in configs:
        state = "enabled" if c.enabled else "disabled"
        schedule = c.schedule or settings.default_schedule
        print(f"  {c.source_id:<28} {c.kind:<8} {c.category:<20} {state:<9} {schedule}")
    return 0


COMMANDS = {
    "run": cmd_run,
    "schedule": cmd_schedule,
    "trends": cmd_trends,
    "import-csv": cmd_import_csv,
    "csv-template": cmd_csv_template,
    "sources": cmd_sources,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Market evidence ingestion engine")
    parser.add_argument("--config", default=os.getenv("SOURCES_CONFIG", "sources.yaml"),
                        help="sources file (default: $SOURCES_CONFIG or sources.yaml)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("run", help="Run sources once")
    p.add_argument("--source", action="append", help="source id (repeatable); default all enabled")
    p.add_argument("--trigger", choices=["manual", "api"], default="manual")
    p.add_argument("--dry-run", action="store_true", help="keep evidence in memory only")

    p = sub.add_parser("schedule", help="Run sources on their cron schedules")
    p.add_argument("--dry-run", action="store_true")

    p = sub.add_parser("trends", help="Recompute trend snapshots")
    p.add_argument("--category")
    p.add_argument("--window", type=int, default=30, help="moving-average window in days")

    p = sub.add_parser("import-csv", help="Import a CSV file of evidence")
    p.add_argument("file")
    p.add_argument("--source", required=True, help="source id the rows are attributed to")
    p.add_argument("--dry-run", action="store_true")

    p = sub.add_parser("csv-template", help="Write the CSV upload template")
    p.add_argument("output", nargs="?")

    sub.add_parser("sources", help="List configured sources")
    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    )
    settings, configs = _load_config(args.config)
    logging.getLogger().setLevel(settings.log_level.upper())
    return await COMMANDS[args.command](args, settings, configs)


def run_cli() -> None:
    """Entry point that can be called from other scripts."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run_cli()
