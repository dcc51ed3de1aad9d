from __future__ import annotations

import copy
import logging
import threading
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from nexus_api.ai.enrichment import EnrichmentOutcome, enrich_contact
from nexus_api.ai.errors import NotFoundError
from nexus_api.ai.oracle import Oracle
from nexus_api.context import reset_correlation_id, reset_tenant_id, set_correlation_id, set_tenant_id
from nexus_api.core.config import get_settings
from nexus_api.crm.models import utcnow
from nexus_api.metrics import observe_batch_item, observe_batch_job

logger = logging.getLogger("nexus_api.ai.batch")

EnrichFn = Callable[[Session, str, uuid.UUID], EnrichmentOutcome]


@dataclass
class BatchItemResult:
    item_id: str
    item_name: str
    status: str
    detail: str = ""
    enriched_email: str | None = None


@dataclass
class BatchJob:
    id: str
    tenant_id: str
    total: int
    status: str = "processing"
    processed: int = 0
    results: list[BatchItemResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    error: str | None = None


class BatchJobStore:
    """In-memory job table. Every read and write holds the lock; reads hand out copies."""

    def __init__(self) -> None:
        self._jobs: dict[str, BatchJob] = {}
        self._lock = threading.Lock()

    def create(self, tenant_id: str, total: int) -> BatchJob:
        job = BatchJob(id=str(uuid.uuid4()), tenant_id=tenant_id, total=total)
        with self._lock:
            self._jobs[job.id] = job
            return copy.deepcopy(job)

    def get(self, job_id: str, tenant_id: str | None = None) -> BatchJob:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or (tenant_id is not None and job.tenant_id != tenant_id):
                raise NotFoundError("batch job not found", details={"batch_id": job_id})
            return copy.deepcopy(job)

    def append_result(self, job_id: str, result: BatchItemResult) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job.results.append(result)
            job.processed += 1

    def finish(self, job_id: str, status: str, error: str | None = None) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job.status = status
            job.error = error
            job.completed_at = utcnow()

    def sweep(self, max_age: timedelta, now: datetime | None = None) -> int:
        cutoff = (now or utcnow()) - max_age
        with self._lock:
            expired = [job_id for job_id, job in self._jobs.items() if job.started_at < cutoff]
            for job_id in expired:
                del self._jobs[job_id]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def clear(self) -> None:
        with self._lock:
            self._jobs.clear()


batch_job_store = BatchJobStore()


class BatchJobRunner:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        enrich: EnrichFn,
        store: BatchJobStore = batch_job_store,
        sleep: Callable[[float], None] = time.sleep,
        item_delay_seconds: float | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.enrich = enrich
        self.store = store
        self.sleep = sleep
        self.item_delay_seconds = (
            item_delay_seconds if item_delay_seconds is not None else get_settings().batch_item_delay_seconds
        )

    def submit(self, tenant_id: str, item_ids: Sequence[uuid.UUID], correlation_id: str | None = None) -> BatchJob:
        job = self.store.create(tenant_id, len(item_ids))
        worker = threading.Thread(
            target=self.run,
            args=(job.id, tenant_id, list(item_ids), correlation_id),
            name=f"batch-enrich-{job.id[:8]}",
            daemon=True,
        )
        worker.start()
        logger.info("ai.batch.submitted", extra={"batch_id": job.id, "tenant_id": tenant_id, "total": job.total})
        return job

    def run(
        self,
        job_id: str,
        tenant_id: str,
        item_ids: list[uuid.UUID],
        correlation_id: str | None = None,
    ) -> None:
        correlation_token = set_correlation_id(correlation_id)
        tenant_token = set_tenant_id(tenant_id)
        started = time.perf_counter()
        final_status = "failed"
        session: Session | None = None
        try:
            session = self.session_factory()
            for index, item_id in enumerate(item_ids):
                if index > 0 and self.item_delay_seconds > 0:
                    self.sleep(self.item_delay_seconds)
                result = self._process_item(session, tenant_id, item_id)
                self.store.append_result(job_id, result)
                observe_batch_item(result.status)
                logger.info(
                    "ai.batch.item_processed",
                    extra={
                        "batch_id": job_id,
                        "item_id": result.item_id,
                        "status": result.status,
                        "processed": index + 1,
                        "total": len(item_ids),
                    },
                )
            final_status = "completed"
            self.store.finish(job_id, "completed")
        except Exception as exc:
            logger.exception("ai.batch.failed", extra={"batch_id": job_id, "error": str(exc)[:500]})
            self.store.finish(job_id, "failed", error=str(exc)[:500])
        finally:
            if session is not None:
                session.close()
            observe_batch_job(final_status, time.perf_counter() - started)
            logger.info("ai.batch.finished", extra={"batch_id": job_id, "status": final_status})
            reset_tenant_id(tenant_token)
            reset_correlation_id(correlation_token)

    def _process_item(self, session: Session, tenant_id: str, item_id: uuid.UUID) -> BatchItemResult:
        try:
            outcome = self.enrich(session, tenant_id, item_id)
        except Exception as exc:
            session.rollback()
            logger.exception(
                "ai.batch.item_failed",
                extra={"item_id": str(item_id), "tenant_id": tenant_id, "error": str(exc)[:500]},
            )
            name = "Unknown" if isinstance(exc, NotFoundError) else str(item_id)
            return BatchItemResult(item_id=str(item_id), item_name=name, status="failed", detail=str(exc)[:500])
        return BatchItemResult(
            item_id=str(item_id),
            item_name=outcome.contact_name,
            status=outcome.status,
            detail=outcome.detail,
            enriched_email=outcome.enriched_email,
        )


def oracle_enricher(oracle: Oracle, sleep: Callable[[float], None] = time.sleep) -> EnrichFn:
    def _enrich(session: Session, tenant_id: str, item_id: uuid.UUID) -> EnrichmentOutcome:
        return enrich_contact(session, tenant_id, item_id, oracle, sleep=sleep)

    return _enrich


class BatchJobSweeper:
    """Background thread that evicts jobs older than the retention window."""

    def __init__(
        self,
        store: BatchJobStore = batch_job_store,
        interval_seconds: float | None = None,
        retention_seconds: float | None = None,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.interval_seconds = interval_seconds if interval_seconds is not None else settings.batch_sweep_interval_seconds
        self.retention = timedelta(
            seconds=retention_seconds if retention_seconds is not None else settings.batch_job_retention_seconds
        )
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def sweep_once(self, now: datetime | None = None) -> int:
        removed = self.store.sweep(self.retention, now=now)
        if removed:
            logger.info("ai.batch.swept", extra={"count": removed})
        return removed

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="batch-job-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.sweep_once()
            except Exception:
                logger.exception("ai.batch.sweep_failed")
