"""
Batch processor - esecuzione a lotti con concorrenza limitata.

Divide i record in batch, limita i batch in volo con un semaforo,
applica timeout e retry con backoff lineare per batch. Un batch che
esaurisce i tentativi marca come falliti solo i propri record.
"""
import asyncio
import gc
import inspect
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import psutil

from core.errors import RecordError
from importer.transform import ROW_KEY
from importer.types import ErrorRecord, ErrorType, JobState

logger = logging.getLogger(__name__)

RecordOperation = Callable[[Dict[str, Any]], Awaitable[Any]]
ProgressObserver = Callable[["BatchProgress"], Any]


def current_memory_mb() -> float:
    """RSS del processo corrente in MB."""
    return psutil.Process(os.getpid()).memory_info().rss / (1024 * 1024)


def current_cpu_percent() -> float:
    return psutil.Process(os.getpid()).cpu_percent(interval=None)


@dataclass(frozen=True)
class BatchSizing:
    batch_size: int
    concurrency: int
    report_progress: bool = True


def sizing_for(total_records: int) -> BatchSizing:
    """Dimensione batch e concorrenza in base al volume."""
    if total_records <= 100:
        return BatchSizing(batch_size=50, concurrency=1, report_progress=False)
    if total_records <= 1000:
        return BatchSizing(batch_size=100, concurrency=2)
    if total_records <= 10000:
        return BatchSizing(batch_size=200, concurrency=3)
    return BatchSizing(batch_size=500, concurrency=4)


def split_batches(records: Sequence[Dict[str, Any]], batch_size: int) -> List[List[Dict[str, Any]]]:
    return [list(records[i:i + batch_size]) for i in range(0, len(records), batch_size)]


class CancellationToken:
    """Segnale di cancellazione: ferma il dispatch, i batch in volo terminano."""

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancellato dall'utente") -> None:
        self._cancelled = True
        self.reason = reason


@dataclass
class BatchProgress:
    total_records: int
    processed: int
    succeeded: int
    failed: int
    batches_completed: int
    batches_total: int
    percentage: float
    eta_seconds: Optional[float]
    throughput: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_records": self.total_records,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "batches_completed": self.batches_completed,
            "batches_total": self.batches_total,
            "percentage": self.percentage,
            "eta_seconds": self.eta_seconds,
            "throughput": self.throughput,
        }


@dataclass
class BatchResult:
    total_records: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    elapsed_seconds: float = 0.0
    errors: List[ErrorRecord] = field(default_factory=list)
    total_error_count: int = 0
    state: JobState = JobState.COMPLETED
    batches_total: int = 0
    batches_completed: int = 0
    failed_batches: List[int] = field(default_factory=list)
    # Errore di sistema per ogni riga dei batch esauriti (non soggetto al limite di errors)
    failed_batch_errors: Dict[int, ErrorRecord] = field(default_factory=dict)

    @property
    def failed_batch_rows(self) -> List[int]:
        return sorted(self.failed_batch_errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_records": self.total_records,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "errors": [e.to_dict() for e in self.errors],
            "total_error_count": self.total_error_count,
            "state": self.state.value,
            "batches_total": self.batches_total,
            "batches_completed": self.batches_completed,
            "failed_batches": list(self.failed_batches),
        }


class _RunState:
    """Contatori condivisi tra i batch di una singola esecuzione."""

    def __init__(self, total_records: int, batches_total: int, max_errors: int):
        self.result = BatchResult(total_records=total_records, batches_total=batches_total)
        self.max_errors = max_errors
        self.started = time.monotonic()
        self.batch_durations: List[float] = []
        self.last_decile = 0

    def add_errors(self, errors: Sequence[ErrorRecord]) -> None:
        self.result.total_error_count += len(errors)
        room = self.max_errors - len(self.result.errors)
        if room > 0:
            self.result.errors.extend(errors[:room])


class BatchProcessor:
    """
    Esegue un'operazione per record su molti record a lotti.
    
    Ogni tentativo di batch è tutto-o-niente: un'eccezione generica o un
    timeout ripetono l'intero batch (l'operazione deve essere idempotente).
    RecordError marca fallito il singolo record senza retry.
    """

    def __init__(
        self,
        retry_attempts: int = 3,
        batch_timeout: float = 30.0,
        backoff_delay: float = 1.0,
        memory_ceiling_mb: float = 512,
        max_detailed_errors: int = 100,
        cache=None,
        memory_reader: Callable[[], float] = current_memory_mb,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.retry_attempts = max(1, retry_attempts)
        self.batch_timeout = batch_timeout
        self.backoff_delay = backoff_delay
        self.memory_ceiling_mb = memory_ceiling_mb
        self.max_detailed_errors = max_detailed_errors
        self.cache = cache
        self.memory_reader = memory_reader
        self._sleep = sleep

    @classmethod
    def from_config(cls, config, cache=None) -> "BatchProcessor":
        return cls(
            retry_attempts=config.retry_attempts,
            batch_timeout=config.batch_timeout_seconds,
            backoff_delay=config.backoff_delay_seconds,
            memory_ceiling_mb=config.memory_ceiling_mb,
            max_detailed_errors=config.max_detailed_errors,
            cache=cache,
        )

    async def process(
        self,
        records: Sequence[Dict[str, Any]],
        operation: RecordOperation,
        sizing: Optional[BatchSizing] = None,
        on_progress: Optional[ProgressObserver] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> BatchResult:
        """
        Elabora i record a lotti.
        
        Args:
            records: Record da elaborare (con chiave _row per il numero riga)
            operation: Coroutine per singolo record
            sizing: Override della policy di dimensionamento
            on_progress: Observer (sync o async) chiamato dopo ogni batch
            cancel_token: Token di cancellazione controllato prima di ogni dispatch
        
        Returns:
            BatchResult con conteggi, errori (primi N) e stato finale
        """
        sizing = sizing or sizing_for(len(records))
        batches = split_batches(records, sizing.batch_size)
        state = _RunState(len(records), len(batches), self.max_detailed_errors)
        semaphore = asyncio.Semaphore(sizing.concurrency)
        tasks: List[asyncio.Task] = []
        cancelled = False

        logger.info(
            f"[BATCH] Avvio: {len(records)} record in {len(batches)} batch "
            f"(size={sizing.batch_size}, concurrency={sizing.concurrency})"
        )

        for index, batch in enumerate(batches):
            if cancel_token is not None and cancel_token.cancelled:
                cancelled = True
                break
            await semaphore.acquire()
            try:
                if cancel_token is not None and cancel_token.cancelled:
                    cancelled = True
                    semaphore.release()
                    break
                await self._apply_backpressure()
            except BaseException:
                semaphore.release()
                raise
            tasks.append(asyncio.create_task(
                self._run_batch(index, batch, operation, semaphore, state, sizing, on_progress)
            ))

        if tasks:
            await asyncio.gather(*tasks)

        result = state.result
        result.elapsed_seconds = time.monotonic() - state.started
        if cancelled:
            result.state = JobState.CANCELLED
            logger.warning(
                f"[BATCH] Dispatch interrotto per cancellazione dopo {len(tasks)}/{len(batches)} batch"
            )
        else:
            result.state = JobState.COMPLETED if result.failed == 0 else JobState.ERROR

        logger.info(
            f"[BATCH] Completato: processed={result.processed}, succeeded={result.succeeded}, "
            f"failed={result.failed}, elapsed={result.elapsed_seconds:.2f}s, state={result.state.value}"
        )
        return result

    async def _apply_backpressure(self) -> None:
        """Prima di ogni dispatch: gc e ottimizzazione cache se memoria o cache sono sotto pressione."""
        try:
            memory_mb = self.memory_reader()
        except psutil.Error as e:
            logger.debug(f"[BATCH] Lettura memoria non disponibile: {e}")
            memory_mb = 0.0
        if memory_mb <= self.memory_ceiling_mb:
            if self.cache is not None and self.cache.health()["status"] == "critical":
                logger.warning("[BATCH] Cache in stato critico: ottimizzazione prima del dispatch")
                await self.cache.optimize()
            return
        logger.warning(
            f"[BATCH] Memoria {memory_mb:.1f}MB oltre soglia {self.memory_ceiling_mb}MB: gc + ottimizzazione cache"
        )
        gc.collect()
        if self.cache is not None:
            await self.cache.optimize()

    async def _run_batch(
        self,
        index: int,
        batch: List[Dict[str, Any]],
        operation: RecordOperation,
        semaphore: asyncio.Semaphore,
        state: _RunState,
        sizing: BatchSizing,
        on_progress: Optional[ProgressObserver],
    ) -> None:
        started = time.monotonic()
        try:
            succeeded, errors, exhausted = await self._execute_with_retry(index, batch, operation)
            failed = len(errors)
        finally:
            semaphore.release()

        result = state.result
        result.processed += len(batch)
        result.succeeded += succeeded
        result.failed += failed
        result.batches_completed += 1
        state.add_errors(errors)
        if exhausted:
            result.failed_batches.append(index)
            result.failed_batch_errors.update((error.row, error) for error in errors)
        state.batch_durations.append(time.monotonic() - started)

        if sizing.report_progress:
            await self._report(state, on_progress)

    async def _execute_with_retry(
        self,
        index: int,
        batch: List[Dict[str, Any]],
        operation: RecordOperation,
    ):
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                succeeded, errors = await asyncio.wait_for(
                    self._execute(batch, operation), timeout=self.batch_timeout
                )
                return succeeded, errors, False
            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(
                    f"[BATCH] Batch {index + 1} timeout ({self.batch_timeout}s), tentativo {attempt}/{self.retry_attempts}"
                )
            except Exception as e:
                last_error = e
                logger.warning(
                    f"[BATCH] Batch {index + 1} fallito: {e}, tentativo {attempt}/{self.retry_attempts}"
                )
            if attempt < self.retry_attempts:
                await self._sleep(self.backoff_delay * attempt)

        logger.error(
            f"[BATCH] Batch {index + 1} fallito dopo {self.retry_attempts} tentativi: {last_error!r}"
        )
        reason = str(last_error) or type(last_error).__name__
        errors = [
            ErrorRecord(
                row=record.get(ROW_KEY, 0),
                column="*",
                value=None,
                message=f"Batch {index + 1} fallito dopo {self.retry_attempts} tentativi: {reason}",
                type=ErrorType.SYSTEM,
            )
            for record in batch
        ]
        return 0, errors, True

    async def _execute(self, batch: List[Dict[str, Any]], operation: RecordOperation):
        succeeded = 0
        errors: List[ErrorRecord] = []
        for record in batch:
            try:
                await operation(record)
                succeeded += 1
            except RecordError as e:
                errors.append(e.error)
        return succeeded, errors

    async def _report(self, state: _RunState, on_progress: Optional[ProgressObserver]) -> None:
        result = state.result
        elapsed = max(time.monotonic() - state.started, 1e-9)
        percentage = round(result.batches_completed / result.batches_total * 100, 1) if result.batches_total else 100.0
        remaining = result.batches_total - result.batches_completed
        mean_batch = sum(state.batch_durations) / len(state.batch_durations)
        progress = BatchProgress(
            total_records=result.total_records,
            processed=result.processed,
            succeeded=result.succeeded,
            failed=result.failed,
            batches_completed=result.batches_completed,
            batches_total=result.batches_total,
            percentage=percentage,
            eta_seconds=round(mean_batch * remaining, 2),
            throughput=round(result.processed / elapsed, 2),
        )

        decile = int(percentage // 10)
        if decile > state.last_decile:
            state.last_decile = decile
            logger.info(
                f"[BATCH] Progresso {progress.percentage:.0f}%: {progress.processed}/{progress.total_records} "
                f"record, ETA {progress.eta_seconds}s, {progress.throughput} rec/s"
            )

        if on_progress is not None:
            outcome = on_progress(progress)
            if inspect.isawaitable(outcome):
                await outcome
