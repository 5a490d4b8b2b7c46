"""
Job Manager per inventory-importer.

Persiste i job di importazione finalizzati e li rilegge per le query di
stato. Funzioni su sessione + SqlAlchemyJobStore (protocollo JobStore).
"""
import json
import logging
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import ImportJobRecord
from importer.types import EntityType, ErrorRecord, ErrorType, ImportJob, JobState

logger = logging.getLogger(__name__)


def job_to_record(job: ImportJob, record: Optional[ImportJobRecord] = None) -> ImportJobRecord:
    """Copia un ImportJob su un ImportJobRecord (nuovo o esistente)."""
    record = record or ImportJobRecord(job_id=job.id)
    record.tenant_id = job.tenant_id
    record.user_id = job.user_id
    record.entity_type = job.entity_type.value
    record.source_file = job.source_file
    record.status = job.state.value
    record.total_records = job.total_records
    record.processed = job.processed
    record.succeeded = job.succeeded
    record.failed = job.failed
    record.error_count = job.error_count
    record.errors_data = json.dumps([e.to_dict() for e in job.errors], ensure_ascii=False)
    record.row_details_data = json.dumps({str(k): v for k, v in job.row_details.items()}, ensure_ascii=False, default=str)
    record.options_data = json.dumps(job.options, ensure_ascii=False, default=str)
    record.message = job.message
    record.created_at = job.created_at
    record.started_at = job.started_at
    record.completed_at = job.finished_at
    return record


def record_to_job(record: ImportJobRecord) -> ImportJob:
    errors = [
        ErrorRecord(
            row=e.get("row", 0),
            column=e.get("column", ""),
            value=e.get("value"),
            message=e.get("message", ""),
            type=ErrorType(e.get("type", ErrorType.VALIDATION.value)),
        )
        for e in json.loads(record.errors_data or "[]")
    ]
    row_details = {int(k): v for k, v in json.loads(record.row_details_data or "{}").items()}
    return ImportJob(
        id=record.job_id,
        tenant_id=record.tenant_id,
        user_id=record.user_id,
        entity_type=EntityType(record.entity_type),
        total_records=record.total_records or 0,
        source_file=record.source_file,
        state=JobState(record.status),
        errors=errors,
        error_count=record.error_count or 0,
        processed=record.processed or 0,
        succeeded=record.succeeded or 0,
        failed=record.failed or 0,
        row_details=row_details,
        options=json.loads(record.options_data or "{}"),
        message=record.message,
        created_at=record.created_at,
        started_at=record.started_at,
        finished_at=record.completed_at,
    )


async def save_job(session: AsyncSession, job: ImportJob) -> str:
    """
    Inserisce o aggiorna un job.
    
    Returns:
        job_id
    """
    try:
        stmt = select(ImportJobRecord).where(ImportJobRecord.job_id == job.id)
        result = await session.execute(stmt)
        existing = result.scalar_one_or_none()
        
        record = job_to_record(job, existing)
        if existing is None:
            session.add(record)
        await session.commit()
        
        logger.info(f"[JOB_MANAGER] Saved job {job.id} status={job.state.value} errors={job.error_count}")
        return job.id
        
    except Exception as e:
        logger.error(f"[JOB_MANAGER] Error saving job {job.id}: {e}", exc_info=True)
        await session.rollback()
        raise


async def get_job(session: AsyncSession, job_id: str) -> Optional[ImportJob]:
    stmt = select(ImportJobRecord).where(ImportJobRecord.job_id == job_id)
    result = await session.execute(stmt)
    record = result.scalar_one_or_none()
    return record_to_job(record) if record else None


async def cancel_job(session: AsyncSession, job_id: str) -> bool:
    """
    Porta un job PENDING/PROCESSING in CANCELLED.
    
    Returns:
        True se cancellato, False se non trovato o già terminato
    """
    try:
        stmt = select(ImportJobRecord).where(ImportJobRecord.job_id == job_id)
        result = await session.execute(stmt)
        record = result.scalar_one_or_none()
        
        if not record:
            logger.warning(f"[JOB_MANAGER] Job {job_id} not found for cancel")
            return False
        if not JobState(record.status).is_cancellable:
            logger.warning(f"[JOB_MANAGER] Job {job_id} in status {record.status}: cancel ignored")
            return False
        
        job = record_to_job(record)
        job.transition(JobState.CANCELLED)
        job.message = "Importazione cancellata"
        job_to_record(job, record)
        await session.commit()
        
        logger.info(f"[JOB_MANAGER] Cancelled job {job_id}")
        return True
        
    except Exception as e:
        logger.error(f"[JOB_MANAGER] Error cancelling job {job_id}: {e}", exc_info=True)
        await session.rollback()
        raise


async def list_jobs(session: AsyncSession, tenant_id: int, limit: int = 50, offset: int = 0) -> List[ImportJob]:
    stmt = (
        select(ImportJobRecord)
        .where(ImportJobRecord.tenant_id == tenant_id)
        .order_by(ImportJobRecord.created_at.desc(), ImportJobRecord.id.desc())
        .offset(offset)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return [record_to_job(r) for r in result.scalars().all()]


async def count_jobs(session: AsyncSession, tenant_id: int) -> int:
    stmt = select(func.count(ImportJobRecord.id)).where(ImportJobRecord.tenant_id == tenant_id)
    result = await session.execute(stmt)
    return int(result.scalar_one())


class SqlAlchemyJobStore:
    """JobStore su database relazionale (una sessione per operazione)."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def submit(self, job: ImportJob) -> str:
        async with self.session_factory() as session:
            return await save_job(session, job)

    async def get(self, job_id: str) -> Optional[ImportJob]:
        async with self.session_factory() as session:
            return await get_job(session, job_id)

    async def cancel(self, job_id: str) -> bool:
        async with self.session_factory() as session:
            return await cancel_job(session, job_id)

    async def list(self, tenant_id: int, limit: int = 50, offset: int = 0) -> List[ImportJob]:
        async with self.session_factory() as session:
            return await list_jobs(session, tenant_id, limit=limit, offset=offset)

    async def count(self, tenant_id: int) -> int:
        async with self.session_factory() as session:
            return await count_jobs(session, tenant_id)
