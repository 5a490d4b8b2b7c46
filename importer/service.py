"""
Servizio di importazione - operazioni esposte ai chiamanti (es. layer API).

Componenti costruiti una volta per processo in build_service() e passati
per riferimento: nessuno stato globale nel motore.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence

from core.config import ImporterConfig, get_config
from core.errors import JobNotFoundError, JobStateError
from core.logger import get_correlation_id, setup_colored_logging
from importer.interfaces import InventoryStore, JobStore
from importer.pipeline import ImportPipeline, JobRegistry
from importer.types import ImportJob, ImportOptions

logger = logging.getLogger(__name__)

MAX_PROGRESS_LOGS = 100


class ImportService:
    """Facade su pipeline, job store, registry dei job attivi e tracker."""

    def __init__(self, pipeline: ImportPipeline, job_store: JobStore):
        self.pipeline = pipeline
        self.job_store = job_store
        self.registry: JobRegistry = pipeline.registry
        self.tracker = pipeline.tracker

    async def start(self) -> None:
        """Avvia i task di background (sweep cache, flush log)."""
        self.pipeline.cache.start_sweeper()
        self.tracker.start_flusher()

    async def stop(self) -> None:
        await self.pipeline.cache.stop_sweeper()
        await self.tracker.stop_flusher()

    async def start_import(
        self,
        tenant_id: int,
        user_id: int,
        entity_type: Any,
        rows: Sequence[Dict[str, Any]],
        options: Optional[ImportOptions] = None,
    ) -> Dict[str, Any]:
        """
        Avvia un'importazione ed esegue la pipeline.
        
        Returns:
            Dict con job_id, state, total_records, errors; per esiti di sola
            validazione anche il report errori completo
        """
        logger.info(
            f"[IMPORT_SERVICE] Avvio import {entity_type} per tenant {tenant_id} "
            f"(utente {user_id}, {len(rows)} righe)"
        )
        outcome = await self.pipeline.run(rows, tenant_id, user_id, entity_type, options)
        response = outcome.to_summary()
        response["message"] = outcome.message
        response["validation_only"] = outcome.validation_only
        response["correlation_id"] = get_correlation_id()
        if outcome.validation_only and outcome.report is not None:
            response["report"] = outcome.report.to_dict()
            response["corrections"] = outcome.corrections
        return response

    async def _find_job(self, job_id: str, tenant_id: int) -> ImportJob:
        job = self.registry.get(job_id)
        if job is None:
            job = await self.job_store.get(job_id)
        if job is None or job.tenant_id != tenant_id:
            raise JobNotFoundError(job_id)
        return job

    async def get_job_status(self, job_id: str, tenant_id: int) -> ImportJob:
        return await self._find_job(job_id, tenant_id)

    async def cancel_job(self, job_id: str, tenant_id: int) -> None:
        """
        Cancella un job PENDING o PROCESSING.
        
        Per job in esecuzione ferma il dispatch dei batch; quelli in volo
        terminano e il job chiude in CANCELLED.
        
        Raises:
            JobNotFoundError: job inesistente o di altro tenant
            JobStateError: job già terminato
        """
        job = await self._find_job(job_id, tenant_id)
        if not job.state.is_cancellable:
            raise JobStateError(f"Job {job_id} in stato {job.state.value}: non cancellabile")

        if job_id in self.registry:
            self.registry.cancel(job_id)
            logger.info(f"[IMPORT_SERVICE] Cancellazione richiesta per job in esecuzione {job_id}")
            return

        cancelled = await self.job_store.cancel(job_id)
        if not cancelled:
            raise JobStateError(f"Job {job_id} non cancellabile")
        logger.info(f"[IMPORT_SERVICE] Job {job_id} cancellato")

    async def get_detailed_progress(self, job_id: str, tenant_id: int) -> Dict[str, Any]:
        job = await self._find_job(job_id, tenant_id)
        progress = self.registry.get_progress(job_id)
        if progress is None:
            percentage = 100.0 if job.state.is_terminal else (
                round(job.processed / job.total_records * 100, 1) if job.total_records else 0.0
            )
            progress = {
                "total_records": job.total_records,
                "processed": job.processed,
                "succeeded": job.succeeded,
                "failed": job.failed,
                "percentage": percentage,
            }
        metrics = self.tracker.get_metrics(job_id)
        return {
            "job": job.to_dict(),
            "progress": progress,
            "logs": [entry.to_dict() for entry in self.tracker.get_logs(job_id, limit=MAX_PROGRESS_LOGS)],
            "metrics": metrics.to_dict() if metrics else None,
            "summary": self.tracker.summary(job_id),
        }

    async def list_jobs(self, tenant_id: int, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        """Job del tenant: prima quelli in esecuzione, poi quelli nello store."""
        running = self.registry.list(tenant_id)
        stored = await self.job_store.list(tenant_id, limit=limit, offset=offset)
        total = await self.job_store.count(tenant_id)
        seen = {job.id for job in running}
        jobs: List[ImportJob] = (running if offset == 0 else []) + [j for j in stored if j.id not in seen]
        return {
            "jobs": [job.to_dict() for job in jobs[:limit]],
            "total": total + len(running),
        }

    async def get_error_report(self, job_id: str, tenant_id: int) -> Dict[str, Any]:
        """Lista completa degli errori di un job con riepilogo."""
        job = await self._find_job(job_id, tenant_id)
        handler = self.pipeline.error_handler
        return {
            "job_id": job.id,
            "state": job.state.value,
            "total_errors": len(job.errors),
            "errors": [e.to_dict() for e in job.errors],
            "summary": handler.summarize(job.errors),
        }


def build_service(
    config: Optional[ImporterConfig] = None,
    store: Optional[InventoryStore] = None,
    job_store: Optional[JobStore] = None,
    session_factory=None,
    setup_logging: bool = False,
) -> ImportService:
    """
    Composition root: crea store SQLAlchemy (se non forniti), pipeline e servizio.
    """
    config = config or get_config()
    if setup_logging:
        setup_colored_logging("importer", config.log_level)
    if store is None or job_store is None:
        from core.database import create_engine_and_session
        from core.inventory_store import SqlAlchemyInventoryStore
        from core.job_manager import SqlAlchemyJobStore

        if session_factory is None:
            _engine, session_factory = create_engine_and_session(config.database_url)
        store = store or SqlAlchemyInventoryStore(session_factory)
        job_store = job_store or SqlAlchemyJobStore(session_factory)

    pipeline = ImportPipeline.from_config(config, store, job_store)
    logger.info(f"[IMPORT_SERVICE] Servizio inizializzato ({config.importer_name} v{config.importer_version})")
    return ImportService(pipeline, job_store)
