"""
Gerarchia eccezioni del motore di importazione.
"""
from typing import Any, Optional


class ImporterError(Exception):
    """Errore base del motore di importazione."""


class ImportConfigurationError(ImporterError):
    """Configurazione mancante o tipo entità non supportato."""


class ImportProcessingError(ImporterError):
    """Errore inatteso durante l'elaborazione, mostrato all'utente."""

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage


class CachePopulationError(ImporterError):
    """La sorgente dati di riferimento non è disponibile."""

    def __init__(self, tenant_id: Any, entity_kind: str, cause: Exception):
        super().__init__(
            f"Impossibile caricare riferimenti {entity_kind} per tenant {tenant_id}: {cause}"
        )
        self.tenant_id = tenant_id
        self.entity_kind = entity_kind
        self.cause = cause


class JobNotFoundError(ImporterError):
    """Job inesistente o appartenente a un altro tenant."""

    def __init__(self, job_id: str):
        super().__init__(f"Job di importazione non trovato: {job_id}")
        self.job_id = job_id


class JobStateError(ImporterError):
    """Transizione di stato non ammessa."""


class RecordError(ImporterError):
    """
    Errore a livello di riga: non viene ritentato dal batch processor.

    Porta con sé l'ErrorRecord da riportare nel risultato.
    """

    def __init__(self, error):
        super().__init__(error.message)
        self.error = error


class DuplicateRecordError(ImporterError):
    """Violazione di unicità nello store (es. SKU o email già presenti)."""
