"""
Ingestion orchestrator: runs connectors under a concurrency cap, validates,
deduplicates and persists their evidence, and records run and health rows.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
import traceback
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from pydantic import ValidationError

from .analytics.benchmarks import generate_benchmark_proposals
from .analytics.trends import recompute_trends
from .change_detector import detect_price_change
from .interfaces import Connector, EvidenceStore, PageBatch
from .models import (
    ConnectorHealthRecord,
    ConnectorResult,
    ErrorType,
    EvidenceRecord,
    ExtractedEvidence,
    IngestionRunReport,
    NormalizedEvidence,
    RawPayload,
    RunError,
    TriggerKind,
    day_key,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_CONCURRENT = 3
FALLBACK_CONFIDENCE = 0.20
SNIPPET_CHARS = 500

DownstreamHook = Callable[[EvidenceStore, IngestionRunReport], Awaitable[Any]]


def new_run_id() -> str:
    return f"ING-{uuid.uuid4().hex[:8]}"


class RecordIdGenerator:
    """Process-local, monotonically increasing evidence record ids."""

    def __init__(self, prefix: str = "EV", start: int = 1) -> None:
        self.prefix = prefix
        self._counter = itertools.count(start)

    def __call__(self) -> str:
        return f"{self.prefix}-{int(time.time()):x}-{next(self._counter):06d}".upper()


async def run_with_concurrency_limit(tasks: Sequence[Callable[[], Awaitable[T]]], limit: int) -> List[T]:
    """Run *tasks* on at most *limit* workers pulling from one shared list.

    Results keep the order of *tasks*.
    """
    results: List[Any] = [None] * len(tasks)
    pending = iter(enumerate(tasks))

    async def worker() -> None:
        for index, task in pending:
            results[index] = await task()

    await asyncio.gather(*(worker() for _ in range(min(limit, len(tasks)))))
    return results


def fallback_evidence(evidence: ExtractedEvidence) -> NormalizedEvidence:
    """Lowest-confidence stand-in used when normalization fails."""
    return NormalizedEvidence(
        metric=evidence.title.strip() or "Unknown metric",
        value=None,
        unit=None,
        confidence=FALLBACK_CONFIDENCE,
        grade="C",
        summary=evidence.raw_text[:SNIPPET_CHARS].strip() or "Extraction failed",
        tags=[],
    )


def _validate_extracted(item: Any) -> Optional[ExtractedEvidence]:
    data = item.model_dump() if isinstance(item, ExtractedEvidence) else item
    try:
        return ExtractedEvidence.model_validate(data)
    except ValidationError as e:
        logger.debug(f"Dropping invalid extracted item: {e.errors()[:1]}")
        return None


async def benchmark_hook(store: EvidenceStore, report: IngestionRunReport) -> Dict[str, Any]:
    result = await generate_benchmark_proposals(store, ingestion_run_id=report.run_id)
    return {"proposals_created": result.proposals_created, "groups_analyzed": result.groups_analyzed}


async def trend_hook(store: EvidenceStore, report: IngestionRunReport) -> Dict[str, Any]:
    snapshots = await recompute_trends(store)
    return {"snapshots": len(snapshots)}


DEFAULT_DOWNSTREAM: Dict[str, DownstreamHook] = {
    "benchmarks": benchmark_hook,
    "trends": trend_hook,
}


@dataclass
class _ItemCounts:
    extracted: int = 0
    created: int = 0
    skipped: int = 0
    failed: int = 0
    page_errors: List[Tuple[str, str, ErrorType]] = field(default_factory=list)


class IngestionOrchestrator:
    """
    Example
    -------
    orchestrator = IngestionOrchestrator(store)
    report = await orchestrator.run(connectors, "manual")
    """

    def __init__(
        self,
        store: EvidenceStore,
        *,
        max_concurrent: int = MAX_CONCURRENT,
        record_ids: Optional[RecordIdGenerator] = None,
        downstream: Optional[Dict[str, DownstreamHook]] = None,
        detect_changes: bool = True,
    ) -> None:
        self.store = store
        self.max_concurrent = max(1, max_concurrent)
        self.record_ids = record_ids or RecordIdGenerator()
        self.downstream = DEFAULT_DOWNSTREAM if downstream is None else downstream
        self.detect_changes = detect_changes

    # ------------------------------------------------------------------ #
    # Public API
    async def run(
        self,
        connectors: Sequence[Connector],
        triggered_by: TriggerKind = "manual",
        actor_id: Optional[int] = None,
    ) -> IngestionRunReport:
        run_id = new_run_id()
        started_at = utcnow()
        t0 = time.monotonic()
        logger.info(f"Ingestion run {run_id} started ({triggered_by}) with {len(connectors)} connector(s)")

        tasks = [self._task_for(c, run_id) for c in connectors]
        results: List[ConnectorResult] = await run_with_concurrency_limit(tasks, self.max_concurrent)

        completed_at = utcnow()
        failed = [r for r in results if r.status == "failed"]
        report = IngestionRunReport(
            run_id=run_id,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=int((time.monotonic() - t0) * 1000),
            triggered_by=triggered_by,
            actor_id=actor_id,
            status="failed" if results and len(failed) == len(results) else "completed",
            sources_attempted=len(results),
            sources_succeeded=len(results) - len(failed),
            sources_failed=len(failed),
            evidence_extracted=sum(r.evidence_extracted for r in results),
            evidence_created=sum(r.evidence_created for r in results),
            evidence_skipped=sum(r.evidence_skipped for r in results),
            errors=[
                RunError(source_id=r.source_id, source_name=r.source_name, error=r.error, error_type=r.error_type)
                for r in results if r.error
            ],
            per_source=results,
        )

        await self._persist_run(report)
        await self._run_downstream(report)

        logger.info(
            f"Ingestion run {run_id} {report.status}: "
            f"{report.sources_succeeded}/{report.sources_attempted} sources ok, "
            f"{report.evidence_created} created, {report.evidence_skipped} duplicates, {report.duration_ms}ms"
        )
        return report

    async def run_single(
        self,
        connector: Connector,
        triggered_by: TriggerKind = "manual",
        actor_id: Optional[int] = None,
    ) -> IngestionRunReport:
        return await self.run([connector], triggered_by, actor_id)

    # ------------------------------------------------------------------ #
    # Per-connector pipeline
    def _task_for(self, connector: Connector, run_id: str) -> Callable[[], Awaitable[ConnectorResult]]:
        async def task() -> ConnectorResult:
            try:
                result = await self._run_connector(connector, run_id)
            except Exception as e:
                logger.error(f"Connector {connector.source_id} crashed: {e}")
                logger.debug(traceback.format_exc())
                result = self._failed(connector, f"Unhandled: {e}", ErrorType.UNKNOWN)
            await self._update_bookkeeping(connector, result)
            return result
        return task

    @staticmethod
    def _failed(
        connector: Connector,
        error: str,
        error_type: Optional[ErrorType],
        payload: Optional[RawPayload] = None,
        **counts: int,
    ) -> ConnectorResult:
        return ConnectorResult(
            source_id=connector.source_id,
            source_name=connector.source_name,
            status="failed",
            error=error,
            error_type=error_type or ErrorType.UNKNOWN,
            status_code=payload.status_code if payload else None,
            response_time_ms=payload.response_time_ms if payload else None,
            content_length=payload.content_length if payload else None,
            **counts,
        )

    async def _run_connector(self, connector: Connector, run_id: str) -> ConnectorResult:
        batch: PageBatch = await connector.fetch_pages()
        pages = [p for p in batch.pages if p.ok]
        first = batch.first

        if not pages:
            failure = first or RawPayload(url=connector.config.source_url, error="No pages fetched")
            if failure.error is None and failure.status_code >= 400:
                failure.error = f"HTTP {failure.status_code}"
            error_type = failure.error_type or (ErrorType.HTTP_ERROR if failure.status_code >= 400 else None)
            logger.warning(f"{connector.source_id}: fetch failed: {failure.error}")
            return self._failed(connector, failure.error or "Fetch failed", error_type, failure)

        counts = _ItemCounts()
        for err in batch.errors:
            counts.page_errors.append((err.get("url", ""), str(err.get("error")), err.get("error_type") or ErrorType.UNKNOWN))

        extract_failures = 0
        for page in pages:
            try:
                extracted = await connector.extract(page)
            except Exception as e:
                extract_failures += 1
                logger.error(f"{connector.source_id}: extract failed for {page.url}: {e}")
                logger.debug(traceback.format_exc())
                counts.page_errors.append((page.url, f"Extract failed: {e}", ErrorType.EXTRACTION))
                continue
            await self._process_items(connector, run_id, page, extracted or [], counts)

        if extract_failures == len(pages):
            _, message, _ = counts.page_errors[-1]
            return self._failed(connector, message, ErrorType.EXTRACTION, first,
                                pages_fetched=len(pages))

        status = "partial" if counts.page_errors or counts.failed else "success"
        error = error_type = None
        if counts.page_errors:
            _, error, error_type = counts.page_errors[0]
        elif counts.failed:
            error, error_type = f"{counts.failed} item(s) failed to persist", ErrorType.PERSISTENCE

        return ConnectorResult(
            source_id=connector.source_id,
            source_name=connector.source_name,
            status=status,
            evidence_extracted=counts.extracted,
            evidence_created=counts.created,
            evidence_skipped=counts.skipped,
            evidence_failed=counts.failed,
            pages_fetched=len(pages),
            status_code=first.status_code if first else None,
            response_time_ms=first.response_time_ms if first else None,
            content_length=sum(p.content_length or 0 for p in pages),
            error=error,
            error_type=error_type,
        )

    async def _normalize(self, connector: Connector, evidence: ExtractedEvidence) -> NormalizedEvidence:
        try:
            normalized = await connector.normalize(evidence)
        except Exception as e:
            logger.warning(f"{connector.source_id}: normalize failed for '{evidence.title}': {e}")
            return fallback_evidence(evidence)
        try:
            data = normalized.model_dump() if isinstance(normalized, NormalizedEvidence) else normalized
            return NormalizedEvidence.model_validate(data)
        except ValidationError as e:
            logger.warning(f"{connector.source_id}: invalid normalized evidence for '{evidence.title}': {e.error_count()} error(s)")
            return fallback_evidence(evidence)

    async def _process_items(
        self,
        connector: Connector,
        run_id: str,
        page: RawPayload,
        extracted: Sequence[Any],
        counts: _ItemCounts,
    ) -> None:
        for item in extracted:
            evidence = _validate_extracted(item)
            if evidence is None:
                continue
            counts.extracted += 1

            normalized = await self._normalize(connector, evidence)
            capture_date = evidence.published_date or page.fetched_at

            try:
                if await self.store.evidence_exists(evidence.source_url, normalized.metric, day_key(capture_date)):
                    counts.skipped += 1
                    continue

                record = EvidenceRecord(
                    record_id=self.record_ids(),
                    source_id=connector.source_id,
                    source_url=evidence.source_url,
                    category=evidence.category,
                    geography=evidence.geography,
                    item_name=normalized.metric,
                    price_typical=normalized.value,
                    unit=normalized.unit or "unit",
                    currency=connector.config.currency,
                    capture_date=capture_date,
                    reliability_grade=normalized.grade,
                    confidence_score=round(normalized.confidence * 100),
                    extracted_snippet=normalized.summary,
                    publisher=connector.source_name,
                    title=evidence.title,
                    tags=normalized.tags,
                    notes=f"Auto-ingested from {connector.source_name}",
                    run_id=run_id,
                )
                record.id = await self.store.create_evidence_record(record)
                counts.created += 1
            except Exception as e:
                counts.failed += 1
                logger.error(f"{connector.source_id}: persist failed for '{normalized.metric}': {e}")
                continue

            if self.detect_changes:
                try:
                    await detect_price_change(self.store, record)
                except Exception as e:
                    logger.warning(f"{connector.source_id}: change detection failed for '{record.item_name}': {e}")

    # ------------------------------------------------------------------ #
    # Bookkeeping
    async def _update_bookkeeping(self, connector: Connector, result: ConnectorResult) -> None:
        config = connector.config
        if result.status == "failed":
            config.consecutive_failures += 1
            config.last_error = result.error
        else:
            config.last_successful_fetch = utcnow()
            config.consecutive_failures = 0
            config.last_error = None
        try:
            await self.store.save_source_state(config)
        except Exception as e:
            logger.error(f"Failed to save source state for {config.source_id}: {e}")

    async def _persist_run(self, report: IngestionRunReport) -> None:
        for r in report.per_source:
            health = ConnectorHealthRecord(
                run_id=report.run_id,
                source_id=r.source_id,
                source_name=r.source_name,
                status=r.status,
                http_status=r.status_code,
                response_time_ms=r.response_time_ms,
                content_length=r.content_length,
                records_extracted=r.evidence_extracted,
                records_inserted=r.evidence_created,
                duplicates_skipped=r.evidence_skipped,
                error_message=r.error,
                error_type=r.error_type,
            )
            try:
                await self.store.insert_connector_health(health)
            except Exception as e:
                logger.error(f"Failed to persist health for {r.source_id}: {e}")
        try:
            await self.store.insert_ingestion_run(report)
        except Exception as e:
            logger.error(f"Failed to persist ingestion run {report.run_id}: {e}")
            logger.debug(traceback.format_exc())

    async def _run_downstream(self, report: IngestionRunReport) -> None:
        if report.evidence_created == 0:
            return
        for name, hook in self.downstream.items():
            try:
                report.downstream[name] = await hook(self.store, report)
            except Exception as e:
                logger.error(f"Downstream {name} failed after run {report.run_id}: {e}")
                logger.debug(traceback.format_exc())
                report.downstream[name] = {"error": str(e), "error_type": ErrorType.DOWNSTREAM.value}


# ---------------------------------------------------------------------- #
# Trigger boundary

async def run_ingestion(
    connectors: Sequence[Connector],
    triggered_by: TriggerKind = "manual",
    actor_id: Optional[int] = None,
    *,
    store: EvidenceStore,
    **options: Any,
) -> IngestionRunReport:
    return await IngestionOrchestrator(store, **options).run(connectors, triggered_by, actor_id)


async def run_single_connector(
    connector: Connector,
    triggered_by: TriggerKind = "manual",
    actor_id: Optional[int] = None,
    *,
    store: EvidenceStore,
    **options: Any,
) -> IngestionRunReport:
    return await IngestionOrchestrator(store, **options).run_single(connector, triggered_by, actor_id)
