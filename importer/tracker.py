"""
Progress tracker - log per job, flush a lotti e metriche di performance.

Ogni job ha un buffer di log limitato e un oggetto metriche aggiornato
incrementalmente. Le entry vengono accodate e scritte tramite log_json
ogni flush_interval secondi o al raggiungimento di flush_batch_size,
raggruppando le entry consecutive dello stesso job e livello.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from core.logger import log_json
from importer.batch_processor import current_cpu_percent, current_memory_mb
from importer.types import ErrorRecord

logger = logging.getLogger(__name__)

LEVELS = ("debug", "info", "warning", "error")
SENSITIVE_KEYS = ("password", "token", "secret")
MAX_MESSAGE_LENGTH = 1000
MAX_VALUE_LENGTH = 500
MAX_ERRORS_PER_ENTRY = 10
MASK = "***"

# Record/secondo attesi per tipo entità
EXPECTED_SPEED: Dict[str, float] = {
    "products": 50.0,
    "suppliers": 100.0,
    "movements": 30.0,
}
LOW_SUCCESS_RATE = 80.0
LOW_SUCCESS_MIN_RECORDS = 100
DEFAULT_SPEED = 50.0
# Lento sotto questa frazione della velocità attesa
SLOW_SPEED_RATIO = 0.5
SLOW_AFTER_SECONDS = 30.0


def _truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[:limit - 3] + "..."


def sanitize(value: Any) -> Any:
    """Maschera chiavi sensibili e tronca stringhe lunghe (ricorsivo)."""
    if isinstance(value, dict):
        clean = {}
        for key, item in value.items():
            if any(token in str(key).lower() for token in SENSITIVE_KEYS):
                clean[key] = MASK
            else:
                clean[key] = sanitize(item)
        return clean
    if isinstance(value, (list, tuple)):
        return [sanitize(item) for item in value]
    if isinstance(value, str):
        return _truncate(value, MAX_VALUE_LENGTH)
    return value


@dataclass
class LogEntry:
    job_id: str
    level: str
    message: str
    stage: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    data: Optional[Dict[str, Any]] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "level": self.level,
            "message": self.message,
            "stage": self.stage,
            "context": dict(self.context),
            "data": self.data,
            "errors": list(self.errors),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class PerformanceMetrics:
    job_id: str
    start_time: float
    end_time: Optional[float] = None
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    avg_ms_per_record: float = 0.0
    throughput: float = 0.0
    memory_mb: float = 0.0
    peak_memory_mb: float = 0.0
    cpu_percent: float = 0.0

    @property
    def success_rate(self) -> float:
        if self.processed <= 0:
            return 0.0
        return round(self.succeeded / self.processed * 100, 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "start_time": datetime.utcfromtimestamp(self.start_time).isoformat(),
            "end_time": datetime.utcfromtimestamp(self.end_time).isoformat() if self.end_time else None,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "success_rate": self.success_rate,
            "avg_ms_per_record": round(self.avg_ms_per_record, 2),
            "throughput": round(self.throughput, 2),
            "memory_mb": round(self.memory_mb, 1),
            "peak_memory_mb": round(self.peak_memory_mb, 1),
            "cpu_percent": round(self.cpu_percent, 1),
        }


@dataclass
class StageInfo:
    name: str
    status: str = "pending"
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "errors": self.errors,
        }


class _JobTrack:
    def __init__(self, job_id: str, context: Dict[str, Any], metrics: PerformanceMetrics, stages: Sequence[str]):
        self.job_id = job_id
        self.context = context
        self.metrics = metrics
        self.logs: List[LogEntry] = []
        self.stages: Dict[str, StageInfo] = {name: StageInfo(name) for name in stages}
        self.current_stage: Optional[str] = None
        self.last_activity: float = metrics.start_time


class ProgressTracker:
    """Buffer log e metriche per job, con flush raggruppato."""

    def __init__(
        self,
        max_logs_per_job: int = 1000,
        flush_interval: float = 5.0,
        flush_batch_size: int = 50,
        retention_seconds: float = 86400,
        clock: Callable[[], float] = time.time,
        memory_reader: Callable[[], float] = current_memory_mb,
        cpu_reader: Callable[[], float] = current_cpu_percent,
    ):
        self.max_logs_per_job = max_logs_per_job
        self.flush_interval = flush_interval
        self.flush_batch_size = flush_batch_size
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._memory_reader = memory_reader
        self._cpu_reader = cpu_reader
        self._jobs: Dict[str, _JobTrack] = {}
        self._queue: List[LogEntry] = []
        self._flusher: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config) -> "ProgressTracker":
        return cls(
            max_logs_per_job=config.max_logs_per_job,
            flush_interval=config.log_flush_interval_seconds,
            flush_batch_size=config.log_flush_batch_size,
            retention_seconds=config.log_retention_seconds,
        )

    # ------------------------------------------------------------------
    # Ciclo di vita job
    # ------------------------------------------------------------------

    def start(self, job_id: str, context: Optional[Dict[str, Any]] = None, stages: Sequence[str] = ()) -> PerformanceMetrics:
        """Alloca metriche e buffer log per il job."""
        context = dict(context or {})
        metrics = PerformanceMetrics(job_id=job_id, start_time=self._clock())
        self._sample_resources(metrics)
        self._jobs[job_id] = _JobTrack(job_id, context, metrics, stages)
        self.record("info", "Importazione avviata", {"job_id": job_id, "stage": "start", **context})
        return metrics

    def record(
        self,
        level: str,
        message: str,
        context: Dict[str, Any],
        data: Optional[Dict[str, Any]] = None,
        errors: Optional[Sequence[ErrorRecord]] = None,
    ) -> Optional[LogEntry]:
        """
        Aggiunge una entry sanitizzata al buffer del job e la accoda per il flush.
        
        Args:
            level: debug, info, warning, error
            message: Messaggio (troncato a 1000 caratteri)
            context: Deve contenere job_id; stage opzionale
            data: Dati aggiuntivi (chiavi sensibili mascherate)
            errors: ErrorRecord allegati (massimo 10)
        
        Returns:
            LogEntry creata, None se il job non è tracciato
        """
        job_id = context.get("job_id")
        track = self._jobs.get(job_id)
        if track is None:
            logger.debug(f"[TRACKER] Log ignorato per job non tracciato: {job_id}")
            return None

        level = level.lower()
        if level not in LEVELS:
            level = "info"

        extra_context = {k: v for k, v in context.items() if k not in ("job_id", "stage")}
        entry = LogEntry(
            job_id=job_id,
            level=level,
            message=_truncate(str(message), MAX_MESSAGE_LENGTH),
            stage=context.get("stage") or track.current_stage,
            context=sanitize(extra_context),
            data=sanitize(data) if data else None,
            errors=[sanitize(e.to_dict()) for e in (errors or [])[:MAX_ERRORS_PER_ENTRY]],
        )

        track.logs.append(entry)
        track.last_activity = self._clock()
        if len(track.logs) > self.max_logs_per_job:
            prune = max(1, int(self.max_logs_per_job * 0.1))
            del track.logs[:prune]

        self._queue.append(entry)
        if len(self._queue) >= self.flush_batch_size:
            self.flush()
        return entry

    def update(self, job_id: str, processed: int, succeeded: int, failed: int) -> Optional[PerformanceMetrics]:
        """Aggiorna i contatori e ricalcola tempo medio e throughput."""
        track = self._jobs.get(job_id)
        if track is None:
            return None
        metrics = track.metrics
        metrics.processed = processed
        metrics.succeeded = succeeded
        metrics.failed = failed
        self._derive(metrics, self._clock())
        self._sample_resources(metrics)
        track.last_activity = self._clock()
        return metrics

    def finish(self, job_id: str) -> Optional[PerformanceMetrics]:
        """Chiude le metriche del job ed emette la entry di riepilogo."""
        track = self._jobs.get(job_id)
        if track is None:
            return None
        metrics = track.metrics
        metrics.end_time = self._clock()
        self._derive(metrics, metrics.end_time)
        self._sample_resources(metrics)
        self.record("info", "Importazione terminata", {"job_id": job_id, "stage": "finalization"}, data={
            "elapsed_seconds": round(metrics.end_time - metrics.start_time, 3),
            "processed": metrics.processed,
            "succeeded": metrics.succeeded,
            "failed": metrics.failed,
            "success_rate": metrics.success_rate,
            "memory_mb": round(metrics.memory_mb, 1),
        })
        return metrics

    def stage(self, job_id: str, name: str, status: str = "started", errors: int = 0) -> None:
        """Segna l'avanzamento di uno stage (started, completed, failed)."""
        track = self._jobs.get(job_id)
        if track is None:
            return
        info = track.stages.setdefault(name, StageInfo(name))
        now = self._clock()
        if status == "started":
            info.started_at = now
            track.current_stage = name
        else:
            info.finished_at = now
        info.status = status
        info.errors += errors
        level = "warning" if status == "failed" else "debug"
        self.record(level, f"Stage {name}: {status}", {"job_id": job_id, "stage": name})

    @staticmethod
    def _derive(metrics: PerformanceMetrics, now: float) -> None:
        elapsed = max(now - metrics.start_time, 0.0)
        if metrics.processed > 0:
            metrics.avg_ms_per_record = elapsed * 1000 / metrics.processed
        if elapsed > 0:
            metrics.throughput = metrics.processed / elapsed

    def _sample_resources(self, metrics: PerformanceMetrics) -> None:
        metrics.memory_mb = self._memory_reader()
        metrics.peak_memory_mb = max(metrics.peak_memory_mb, metrics.memory_mb)
        metrics.cpu_percent = self._cpu_reader()

    # ------------------------------------------------------------------
    # Lettura
    # ------------------------------------------------------------------

    def is_tracked(self, job_id: str) -> bool:
        return job_id in self._jobs

    def get_logs(self, job_id: str, level: Optional[str] = None, limit: Optional[int] = None) -> List[LogEntry]:
        track = self._jobs.get(job_id)
        if track is None:
            return []
        logs = track.logs
        if level:
            logs = [entry for entry in logs if entry.level == level.lower()]
        if limit is not None:
            logs = logs[-limit:] if limit > 0 else []
        return list(logs)

    def get_metrics(self, job_id: str) -> Optional[PerformanceMetrics]:
        track = self._jobs.get(job_id)
        return track.metrics if track else None

    def summary(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Totali log, errori/warning, ultima attività ed efficienza."""
        track = self._jobs.get(job_id)
        if track is None:
            return None
        metrics = track.metrics
        efficiency = round(metrics.succeeded / metrics.processed, 4) if metrics.processed else 0.0
        return {
            "total_logs": len(track.logs),
            "errors": sum(1 for e in track.logs if e.level == "error"),
            "warnings": sum(1 for e in track.logs if e.level == "warning"),
            "last_activity": datetime.utcfromtimestamp(track.last_activity).isoformat(),
            "efficiency": efficiency,
            "estimated_seconds": self.estimate_seconds(
                track.context.get("total_records", 0), track.context.get("entity_type", "")
            ),
            "current_stage": track.current_stage,
            "stages": [s.to_dict() for s in track.stages.values()],
            "alerts": self.alerts(job_id),
            "metrics": metrics.to_dict(),
        }

    def alerts(self, job_id: str) -> List[str]:
        track = self._jobs.get(job_id)
        if track is None:
            return []
        metrics = track.metrics
        alerts: List[str] = []
        if metrics.processed >= LOW_SUCCESS_MIN_RECORDS and metrics.success_rate < LOW_SUCCESS_RATE:
            alerts.append(f"Tasso di successo basso: {metrics.success_rate}%")
        expected = EXPECTED_SPEED.get(track.context.get("entity_type"), DEFAULT_SPEED)
        elapsed = (metrics.end_time or self._clock()) - metrics.start_time
        if elapsed > SLOW_AFTER_SECONDS and metrics.throughput < expected * SLOW_SPEED_RATIO:
            alerts.append(
                f"Elaborazione lenta: {metrics.throughput:.1f} record/s (attesi {expected:.0f})"
            )
        current = track.stages.get(track.current_stage or "")
        if current is not None and current.errors:
            alerts.append(f"{current.errors} errori nello stage {current.name}")
        return alerts

    @staticmethod
    def estimate_seconds(total_records: int, entity_type: str) -> int:
        """Durata stimata dalla velocità attesa per tipo entità."""
        speed = EXPECTED_SPEED.get(entity_type, DEFAULT_SPEED)
        return int(-(-total_records // speed))

    # ------------------------------------------------------------------
    # Flush e pulizia
    # ------------------------------------------------------------------

    def flush(self) -> int:
        """
        Scrive le entry accodate tramite log_json.
        
        Entry consecutive con stesso job e livello diventano una sola riga
        di riepilogo.
        
        Returns:
            Numero di righe emesse
        """
        if not self._queue:
            return 0
        queued, self._queue = self._queue, []

        groups: List[List[LogEntry]] = []
        for entry in queued:
            if groups and groups[-1][0].job_id == entry.job_id and groups[-1][0].level == entry.level:
                groups[-1].append(entry)
            else:
                groups.append([entry])

        for group in groups:
            first = group[0]
            track = self._jobs.get(first.job_id)
            tenant_id = track.context.get("tenant_id") if track else None
            if len(group) == 1:
                log_json(
                    level=first.level,
                    message=first.message,
                    tenant_id=tenant_id,
                    job_id=first.job_id,
                    stage=first.stage,
                    data=first.data,
                    errors=len(first.errors),
                )
            else:
                log_json(
                    level=first.level,
                    message=f"{len(group)} eventi: {first.message} (+{len(group) - 1} simili)",
                    tenant_id=tenant_id,
                    job_id=first.job_id,
                    stage=group[-1].stage,
                    grouped=len(group),
                    errors=sum(len(e.errors) for e in group),
                )
        return len(groups)

    def start_flusher(self) -> None:
        """Avvia flush periodico e pulizia dei job oltre la retention."""
        if self._flusher is None or self._flusher.done():
            self._flusher = asyncio.create_task(self._flush_loop())

    async def stop_flusher(self) -> None:
        if self._flusher is not None:
            self._flusher.cancel()
            try:
                await self._flusher
            except asyncio.CancelledError:
                pass
            self._flusher = None
        self.flush()

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            self.flush()
            self.cleanup()

    def cleanup(self, max_age_seconds: Optional[float] = None) -> int:
        """Rimuove i job terminati più vecchi di max_age_seconds."""
        max_age = self.retention_seconds if max_age_seconds is None else max_age_seconds
        now = self._clock()
        expired = [
            job_id for job_id, track in self._jobs.items()
            if track.metrics.end_time is not None and now - track.metrics.end_time > max_age
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.info(f"[TRACKER] Rimossi dati di {len(expired)} job terminati")
        return len(expired)
