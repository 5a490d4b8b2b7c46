"""
Pipeline Orchestratore - punto di ingresso unico dell'importazione.

Flow sequenziale (ogni stage può interrompere i successivi):
1. Profilo per tipo entità (limiti, colonne richieste, header)
2. Autocorrezione preventiva + validazione con lookup in cache + risoluzione
3. Analisi errori e verdetto di continuazione
4. validate_only o verdetto negativo → esito di sola validazione
5. Trasformazione + batch processing (solo righe senza errori)
6. Job finale consegnato al job store
"""
import logging
import time
import uuid
from typing import Any, Dict, List, Optional, Sequence

from core.errors import (
    DuplicateRecordError,
    ImportConfigurationError,
    ImporterError,
    ImportProcessingError,
    RecordError,
)
from core.logger import log_json, set_request_context
from importer.autocorrection import AutocorrectionEngine
from importer.batch_processor import BatchProcessor, BatchProgress, BatchResult, CancellationToken
from importer.error_handler import ErrorHandler
from importer.interfaces import InventoryStore, JobStore, Transformer
from importer.profiles import EntityProfile, build_profiles, get_profile, required_columns_missing
from importer.resolver import PlaceholderPolicy, SmartResolver
from importer.tracker import ProgressTracker
from importer.transform import ROW_KEY, TRANSFORMERS, is_empty_row, normalize_headers
from importer.types import (
    EntityType,
    ErrorRecord,
    ErrorReport,
    ErrorType,
    ImportJob,
    ImportOptions,
    ImportOutcome,
    JobState,
)
from importer.validation import RowValidationResult, RowValidator
from importer.validation_cache import ValidationCache

logger = logging.getLogger(__name__)

MAX_OUTCOME_ERRORS = 100


class JobRegistry:
    """Job in esecuzione con il relativo token di cancellazione."""

    def __init__(self):
        self._jobs: Dict[str, ImportJob] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._progress: Dict[str, Dict[str, Any]] = {}

    def register(self, job: ImportJob) -> CancellationToken:
        token = CancellationToken()
        self._jobs[job.id] = job
        self._tokens[job.id] = token
        return token

    def get(self, job_id: str) -> Optional[ImportJob]:
        return self._jobs.get(job_id)

    def cancel(self, job_id: str) -> bool:
        token = self._tokens.get(job_id)
        job = self._jobs.get(job_id)
        if token is None or job is None or not job.state.is_cancellable:
            return False
        token.cancel()
        return True

    def set_progress(self, job_id: str, progress: Dict[str, Any]) -> None:
        self._progress[job_id] = progress

    def get_progress(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self._progress.get(job_id)

    def remove(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)
        self._tokens.pop(job_id, None)
        self._progress.pop(job_id, None)

    def list(self, tenant_id: int) -> List[ImportJob]:
        return [job for job in self._jobs.values() if job.tenant_id == tenant_id]

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)


class ImportPipeline:
    """Orchestratore: collega cache, validazione, error handler, resolver, batch e tracker."""

    def __init__(
        self,
        profiles: Dict[EntityType, EntityProfile],
        cache: ValidationCache,
        store: InventoryStore,
        job_store: JobStore,
        error_handler: ErrorHandler,
        engine: AutocorrectionEngine,
        resolver: SmartResolver,
        batch_processor: BatchProcessor,
        tracker: ProgressTracker,
        registry: Optional[JobRegistry] = None,
        transformers: Optional[Dict[EntityType, Transformer]] = None,
    ):
        self.profiles = profiles
        self.cache = cache
        self.store = store
        self.job_store = job_store
        self.error_handler = error_handler
        self.engine = engine
        self.resolver = resolver
        self.batch_processor = batch_processor
        self.tracker = tracker
        self.registry = registry or JobRegistry()
        self.transformers = transformers or dict(TRANSFORMERS)
        self.validator = RowValidator(cache)

    @classmethod
    def from_config(cls, config, store: InventoryStore, job_store: JobStore, **overrides) -> "ImportPipeline":
        """Costruisce la pipeline con i componenti di default."""
        profiles = build_profiles(config)
        cache = overrides.pop("cache", None) or ValidationCache.from_config(store, config)
        error_handler = ErrorHandler.from_profiles(profiles, max_error_rate=config.max_error_rate)
        engine = AutocorrectionEngine.from_profiles(profiles)
        resolver = SmartResolver(
            engine,
            error_handler,
            required_fields={et.value: p.required_columns for et, p in profiles.items()},
            store=store,
            cache=cache,
            placeholders=PlaceholderPolicy.from_config(config),
        )
        return cls(
            profiles=profiles,
            cache=cache,
            store=store,
            job_store=job_store,
            error_handler=error_handler,
            engine=engine,
            resolver=resolver,
            batch_processor=overrides.pop("batch_processor", None) or BatchProcessor.from_config(config, cache=cache),
            tracker=overrides.pop("tracker", None) or ProgressTracker.from_config(config),
            **overrides,
        )

    async def run(
        self,
        file_rows: Sequence[Dict[str, Any]],
        tenant_id: int,
        user_id: int,
        entity_type: Any,
        options: Optional[ImportOptions] = None,
    ) -> ImportOutcome:
        """
        Esegue l'importazione completa.
        
        Args:
            file_rows: Righe dal parser (header già estratti, chiave _row opzionale)
            tenant_id: Tenant proprietario dei dati
            user_id: Utente che avvia l'import
            entity_type: products, suppliers, movements
            options: ImportOptions del chiamante
        
        Returns:
            ImportOutcome (job_id None per esiti di sola validazione)
        
        Raises:
            ImportConfigurationError: tipo non supportato o troppe righe
            CachePopulationError: riferimenti non disponibili
            ImportProcessingError: errore inatteso negli stage 1-3 o nel submit
        """
        options = options or ImportOptions()
        job_id = options.job_id or str(uuid.uuid4())
        set_request_context(tenant_id=tenant_id, job_id=job_id)
        start_time = time.time()
        stage = "config"

        try:
            # Stage 1: profilo
            profile = get_profile(self.profiles, entity_type)
            entity = profile.entity_type
            rows = self._prepare_rows(file_rows, profile)
            if len(rows) > profile.max_records:
                raise ImportConfigurationError(
                    f"Troppe righe per {entity.value}: {len(rows)} (massimo {profile.max_records})"
                )
            structural = self._structural_errors(rows, profile)
            logger.info(f"[PIPELINE] Stage 1: {entity.value}, {len(rows)} righe, job={job_id}")

            # Stage 2: autocorrezione + validazione + risoluzione
            stage = "validation"
            corrections: List = []
            resolution = None
            validation = RowValidationResult()
            if not structural:
                if options.auto_correct:
                    rows, corrections = self._autocorrect(rows, entity)
                validation = await self.validator.validate(rows, entity, tenant_id, options)
                if validation.errors and options.auto_correct:
                    rows, validation, resolution = await self._resolve(rows, validation, entity, tenant_id, options)
            errors = structural + validation.errors

            # Stage 3: analisi
            stage = "analysis"
            report = self.error_handler.analyze(errors, len(rows), entity.value, options.allow_partial)
        except ImporterError:
            raise
        except Exception as e:
            logger.error(f"[PIPELINE] Errore inatteso nello stage {stage}: {e}", exc_info=True)
            raise ImportProcessingError("Elaborazione dell'importazione fallita", stage=stage) from e

        correction_summary = self._correction_summary(corrections, resolution)
        log_json(
            level="info",
            message=f"Validazione completata per {entity.value}",
            tenant_id=tenant_id,
            job_id=job_id,
            stage="analysis",
            entity_type=entity.value,
            rows_total=len(rows),
            rows_valid=len(validation.valid),
            rows_rejected=len(validation.invalid_rows),
            elapsed_sec=round(time.time() - start_time, 3),
            decision="continue" if report.can_continue and not options.validate_only else "stop",
        )

        # Stage 4: sola validazione
        if options.validate_only or not report.can_continue:
            return self._validation_outcome(rows, errors, report, correction_summary, options)

        # Stage 5-6
        return await self._process(
            job_id, rows, validation, report, correction_summary,
            profile, tenant_id, user_id, options, start_time,
        )

    # ------------------------------------------------------------------
    # Stage 1-2
    # ------------------------------------------------------------------

    @staticmethod
    def _prepare_rows(file_rows: Sequence[Dict[str, Any]], profile: EntityProfile) -> List[Dict[str, Any]]:
        rows = []
        for index, raw in enumerate(file_rows):
            row = dict(raw)
            # riga 1 = header
            row.setdefault(ROW_KEY, index + 2)
            rows.append(row)
        if profile.normalize_headers:
            rows = normalize_headers(rows)
        if profile.ignore_empty_rows:
            rows = [row for row in rows if not is_empty_row(row)]
        return rows

    @staticmethod
    def _structural_errors(rows: List[Dict[str, Any]], profile: EntityProfile) -> List[ErrorRecord]:
        if not rows:
            return [ErrorRecord(0, "*", None, "Righe obbligatorie mancanti: il file non contiene dati")]
        columns: List[str] = []
        for row in rows:
            columns.extend(k for k in row.keys() if k not in columns)
        return [
            ErrorRecord(0, column, None, f"Colonna obbligatoria mancante: {column}")
            for column in required_columns_missing(profile, columns)
        ]

    def _autocorrect(self, rows: List[Dict[str, Any]], entity: EntityType):
        corrected_rows = []
        corrections = []
        for row in rows:
            corrected, applied = self.engine.correct_row(row, entity.value)
            corrected_rows.append(corrected)
            corrections.extend(applied)
        if corrections:
            logger.info(f"[PIPELINE] Autocorrezione preventiva: {len(corrections)} correzioni applicate")
        return corrected_rows, corrections

    async def _resolve(
        self,
        rows: List[Dict[str, Any]],
        validation: RowValidationResult,
        entity: EntityType,
        tenant_id: int,
        options: ImportOptions,
    ):
        by_row = {row[ROW_KEY]: row for row in rows}
        context: Dict[str, Any] = {"rows": by_row, "auto_create_products": options.auto_create_products}
        if entity == EntityType.MOVEMENTS:
            context["references"] = await self.cache.get(tenant_id, "products")
        resolution = self.resolver.resolve(validation.errors, entity.value, context)
        touched = SmartResolver.apply_corrections(by_row, resolution)
        if touched:
            logger.info(f"[PIPELINE] Resolver: {len(touched)} righe corrette, nuova validazione")
            validation = await self.validator.validate(rows, entity, tenant_id, options)
        return rows, validation, resolution

    @staticmethod
    def _correction_summary(corrections, resolution) -> Dict[str, Any]:
        applied = list(corrections)
        unresolved = []
        if resolution is not None:
            applied.extend(resolution.corrections)
            unresolved = [r.to_dict() for r in resolution.unresolved]
        return {
            "report": SmartResolver.correction_report(applied),
            "applied": [c.to_dict() for c in applied[:MAX_OUTCOME_ERRORS]],
            "unresolved": unresolved[:MAX_OUTCOME_ERRORS],
        }

    def _validation_outcome(
        self,
        rows: List[Dict[str, Any]],
        errors: List[ErrorRecord],
        report: ErrorReport,
        corrections: Dict[str, Any],
        options: ImportOptions,
    ) -> ImportOutcome:
        clean = options.validate_only and report.can_continue
        message = (
            "Validazione completata" if clean
            else "Importazione interrotta: correggi gli errori e riprova"
        )
        logger.info(f"[PIPELINE] Esito di sola validazione: {len(errors)} errori, can_continue={report.can_continue}")
        return ImportOutcome(
            job_id=None,
            state=JobState.COMPLETED if clean else JobState.ERROR,
            total_records=len(rows),
            error_count=len(errors),
            validation_only=True,
            message=message,
            report=report,
            corrections=corrections,
            errors=errors[:MAX_OUTCOME_ERRORS],
        )

    # ------------------------------------------------------------------
    # Stage 5-6
    # ------------------------------------------------------------------

    async def _process(
        self,
        job_id: str,
        rows: List[Dict[str, Any]],
        validation: RowValidationResult,
        report: ErrorReport,
        corrections: Dict[str, Any],
        profile: EntityProfile,
        tenant_id: int,
        user_id: int,
        options: ImportOptions,
        start_time: float,
    ) -> ImportOutcome:
        entity = profile.entity_type
        job = ImportJob(
            id=job_id,
            tenant_id=tenant_id,
            user_id=user_id,
            entity_type=entity,
            total_records=len(rows),
            source_file=options.source_file,
            options=options.model_dump(exclude={"extra", "job_id"}),
        )
        job.errors = list(validation.errors)
        invalid_rows = validation.invalid_rows
        for error in validation.errors:
            detail = job.row_details.setdefault(error.row, {"status": "failed", "errors": []})
            detail["errors"].append(error.message)

        token = self.registry.register(job)
        self.tracker.start(
            job.id,
            {"tenant_id": tenant_id, "user_id": user_id, "entity_type": entity.value, "total_records": job.total_records},
            profile.stages,
        )
        try:
            job.transition(JobState.PROCESSING)
            self.tracker.stage(job.id, "validation", "completed", errors=len(validation.errors))
            self.tracker.stage(job.id, "analysis", "completed")
            if entity == EntityType.MOVEMENTS:
                self.tracker.record(
                    "info",
                    f"Prodotti da creare automaticamente: {len(set(validation.pending_products.values()))}",
                    {"job_id": job.id, "stage": "product_verification"},
                )
                self.tracker.stage(job.id, "product_verification", "completed")

            self.tracker.stage(job.id, "transformation")
            transform = self.transformers[entity]
            records = []
            for row_number in sorted(validation.valid):
                record = transform(validation.valid[row_number])
                record[ROW_KEY] = row_number
                records.append(record)
            self.tracker.stage(job.id, "transformation", "completed")

            self.tracker.stage(job.id, "persistence")
            operation, failures = self._record_operation(job, validation, options)

            def on_progress(progress: BatchProgress) -> None:
                job.processed = len(invalid_rows) + progress.processed
                job.succeeded = progress.succeeded
                job.failed = len(invalid_rows) + progress.failed
                self.registry.set_progress(job.id, progress.to_dict())
                self.tracker.update(job.id, job.processed, job.succeeded, job.failed)

            result = await self.batch_processor.process(
                records, operation, on_progress=on_progress, cancel_token=token,
            )
            self._apply_result(job, result, invalid_rows, failures)
            if result.succeeded and entity != EntityType.MOVEMENTS:
                await self.cache.invalidate(tenant_id, entity.value)
            self.tracker.stage(
                job.id, "persistence",
                "failed" if result.state == JobState.ERROR else "completed",
                errors=result.total_error_count,
            )
            self.tracker.update(job.id, job.processed, job.succeeded, job.failed)
            self.tracker.record(
                "error" if result.failed else "info",
                f"Salvataggio: {result.succeeded} riusciti, {result.failed} falliti",
                {"job_id": job.id, "stage": "persistence"},
                data={"elapsed_seconds": round(result.elapsed_seconds, 3), "batches": result.batches_completed},
                errors=result.errors,
            )
            if entity == EntityType.MOVEMENTS:
                self.tracker.stage(job.id, "stock_update", "completed")

            if result.state == JobState.CANCELLED:
                job.message = token.reason or "Importazione cancellata"
            elif job.error_count:
                job.message = f"Importazione completata con {job.error_count} errori"
            else:
                job.message = "Importazione completata"
            job.transition(result.state)
        except Exception as e:
            logger.error(f"[PIPELINE] Errore durante l'elaborazione del job {job.id}: {e}", exc_info=True)
            job.message = f"Elaborazione fallita: {e}"
            job.error_count = len(job.errors)
            if job.state.is_cancellable:
                job.transition(JobState.ERROR)
            result = None
        finally:
            self.tracker.finish(job.id)
            self.registry.remove(job.id)

        try:
            await self.job_store.submit(job)
        except Exception as e:
            logger.error(f"[PIPELINE] Submit del job {job.id} fallito: {e}", exc_info=True)
            raise ImportProcessingError("Impossibile salvare lo stato del job", stage="submit") from e

        log_json(
            level="info" if job.state == JobState.COMPLETED else "warning",
            message=f"Importazione {job.state.value}",
            tenant_id=tenant_id,
            job_id=job.id,
            stage="submit",
            entity_type=entity.value,
            rows_total=job.total_records,
            rows_valid=job.succeeded,
            rows_rejected=job.failed,
            elapsed_sec=round(time.time() - start_time, 3),
            decision=job.state.value,
        )

        return ImportOutcome(
            job_id=job.id,
            state=job.state,
            total_records=job.total_records,
            error_count=job.error_count,
            message=job.message or "",
            report=report,
            batch_result=result,
            corrections=corrections,
            errors=job.errors[:MAX_OUTCOME_ERRORS],
        )

    def _record_operation(self, job: ImportJob, validation: RowValidationResult, options: ImportOptions):
        """Operazione per record idempotente (i retry del batch non duplicano le scritture)."""
        persisted: Dict[int, Dict[str, Any]] = {}
        failures: Dict[int, ErrorRecord] = {}
        tenant_id = job.tenant_id
        entity = job.entity_type

        async def persist(record: Dict[str, Any]) -> Dict[str, Any]:
            row_number = record[ROW_KEY]
            if row_number in persisted:
                return persisted[row_number]
            data = {k: v for k, v in record.items() if k != ROW_KEY}
            detail: Dict[str, Any] = {"status": "success"}
            try:
                if entity == EntityType.PRODUCTS:
                    saved = await self._persist_product(tenant_id, row_number, data, validation, detail)
                elif entity == EntityType.SUPPLIERS:
                    saved = await self._persist_supplier(tenant_id, row_number, data, validation, detail)
                else:
                    saved = await self._persist_movement(tenant_id, row_number, data, options, detail)
            except DuplicateRecordError as e:
                error = ErrorRecord(row_number, "name", data.get("name"), str(e), ErrorType.DUPLICATE)
                job.row_details[row_number] = {"status": "failed", "errors": [error.message]}
                failures[row_number] = error
                raise RecordError(error) from e
            except RecordError as e:
                job.row_details[row_number] = {"status": "failed", "errors": [e.error.message]}
                failures[row_number] = e.error
                raise
            detail["id"] = saved.get("id")
            job.row_details[row_number] = detail
            persisted[row_number] = saved
            failures.pop(row_number, None)
            return saved

        return persist, failures

    async def _persist_product(self, tenant_id, row_number, data, validation, detail):
        existing = validation.existing.get(row_number)
        if existing is not None:
            detail["action"] = "updated"
            return await self.store.update_product(tenant_id, existing["id"], data)
        detail["action"] = "created"
        return await self.store.create_product(tenant_id, data)

    async def _persist_supplier(self, tenant_id, row_number, data, validation, detail):
        existing = validation.existing.get(row_number)
        if existing is not None:
            detail["action"] = "updated"
            return await self.store.update_supplier(tenant_id, existing["id"], data)
        detail["action"] = "created"
        return await self.store.create_supplier(tenant_id, data)

    async def _persist_movement(self, tenant_id, row_number, data, options: ImportOptions, detail):
        product, created = await self.resolver.ensure_product(
            tenant_id, data["product"], auto_create=options.auto_create_products
        )
        if product is None:
            raise RecordError(ErrorRecord(
                row_number, "product", data["product"],
                f"Prodotto non trovato: {data['product']}", ErrorType.REFERENCE,
            ))
        detail["product_created"] = created
        data["product_id"] = product["id"]

        if data.get("supplier"):
            if options.auto_create_suppliers:
                supplier, supplier_created = await self.resolver.ensure_supplier(tenant_id, data["supplier"])
            else:
                supplier = await self.store.find_supplier(tenant_id, name=data["supplier"])
                supplier_created = False
                if supplier is None:
                    raise RecordError(ErrorRecord(
                        row_number, "supplier", data["supplier"],
                        f"Fornitore non trovato: {data['supplier']}", ErrorType.REFERENCE,
                    ))
            detail["supplier_created"] = supplier_created
            data["supplier_id"] = supplier["id"]

        if data["type"] == "SALIDA" and not options.allow_negative_stock:
            current = await self.store.find_product(tenant_id, name=product.get("name"), sku=product.get("sku"))
            available = (current or product).get("stock") or 0
            if available < data["quantity"]:
                raise RecordError(ErrorRecord(
                    row_number, "quantity", data["quantity"],
                    f"Stock insufficiente per {product.get('name')}: disponibile {available}, richiesto {data['quantity']}",
                    ErrorType.VALIDATION,
                ))
        return await self.store.create_movement(tenant_id, data)

    @staticmethod
    def _apply_result(
        job: ImportJob,
        result: BatchResult,
        invalid_rows,
        failures: Dict[int, ErrorRecord],
    ) -> None:
        """Consolida conteggi ed errori (di riga e di sistema) sul job."""
        exhausted = result.failed_batch_errors
        for row_number, error in sorted(exhausted.items()):
            detail = {"status": "failed", "errors": [error.message]}
            if job.row_details.get(row_number, {}).get("status") == "success":
                detail["persisted"] = True
            job.row_details[row_number] = detail
            job.errors.append(error)
        job.errors.extend(
            error for row_number, error in sorted(failures.items()) if row_number not in exhausted
        )
        job.processed = len(invalid_rows) + result.processed
        job.succeeded = result.succeeded
        job.failed = len(invalid_rows) + result.failed
        job.error_count = len(job.errors)
