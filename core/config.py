"""
Configurazione per inventory-importer usando pydantic-settings.

Gestisce variabili d'ambiente, soglie e policy del motore di importazione.
"""
import logging
from typing import Dict, List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

# Carica .env
load_dotenv()

logger = logging.getLogger(__name__)


class ImporterConfig(BaseSettings):
    """Configurazione completa del motore di importazione."""
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )
    
    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./importer.db",
        description="URL connessione database (driver async)"
    )
    
    # Cache validazione
    cache_enabled: bool = Field(default=True, description="Abilita cache dati di riferimento")
    cache_ttl_seconds: float = Field(default=1800, gt=0, description="TTL entry cache (30 minuti)")
    cache_max_entries: int = Field(default=100, ge=1, le=100000, description="Numero massimo entry in cache")
    cache_max_memory_mb: float = Field(default=50, gt=0, description="Memoria approssimativa massima cache (MB)")
    cache_cleanup_interval_seconds: float = Field(default=300, gt=0, description="Intervallo sweep entry scadute")
    
    # Batch / code
    retry_attempts: int = Field(default=3, ge=1, le=10, description="Tentativi per batch")
    batch_timeout_seconds: float = Field(default=30, gt=0, description="Timeout per singolo batch")
    backoff_delay_seconds: float = Field(default=1.0, ge=0, description="Ritardo base backoff lineare")
    memory_ceiling_mb: float = Field(default=512, gt=0, description="Soglia memoria per backpressure")
    max_detailed_errors: int = Field(default=100, ge=1, description="Errori dettagliati conservati nel risultato")
    
    # Logging
    log_level: str = Field(default="INFO", description="Livello logging root")
    max_logs_per_job: int = Field(default=1000, ge=10, description="Log conservati per job")
    log_flush_interval_seconds: float = Field(default=5.0, gt=0, description="Intervallo flush log bufferizzati")
    log_flush_batch_size: int = Field(default=50, ge=1, description="Flush immediato oltre questa soglia")
    log_retention_seconds: float = Field(default=86400, gt=0, description="Retention dati tracker per job chiusi")
    
    # Validazione / continuazione
    max_error_rate: float = Field(default=0.20, ge=0.0, le=1.0, description="Tasso errori massimo per continuare")
    
    # Profili per tipo entità
    products_max_records: int = Field(default=10000, ge=1, description="Max righe import prodotti")
    suppliers_max_records: int = Field(default=5000, ge=1, description="Max righe import fornitori")
    movements_max_records: int = Field(default=10000, ge=1, description="Max righe import movimenti")
    products_min_confidence: int = Field(default=70, ge=0, le=100, description="Confidenza minima correzioni prodotti")
    suppliers_min_confidence: int = Field(default=80, ge=0, le=100, description="Confidenza minima correzioni fornitori")
    movements_min_confidence: int = Field(default=75, ge=0, le=100, description="Confidenza minima correzioni movimenti")
    
    # Placeholder per entità auto-create
    placeholder_email: str = Field(default="sin-email@placeholder.local", description="Email sintetica entità auto-create")
    placeholder_phone: str = Field(default="Sin teléfono", description="Telefono sintetico entità auto-create")
    placeholder_description: str = Field(
        default="Producto creado automáticamente",
        description="Descrizione prodotti auto-creati"
    )
    placeholder_tags: str = Field(default="AUTO-CREADO,IMPORTACION", description="Etichette entità auto-create")
    placeholder_sku_prefix: str = Field(default="PROD", description="Prefisso SKU generato")
    placeholder_min_stock: int = Field(default=10, ge=0, description="Stock minimo prodotti auto-creati")
    
    # Info
    importer_name: str = Field(default="Inventory Importer", description="Nome servizio")
    importer_version: str = Field(default="1.0.0", description="Versione servizio")
    
    def get_placeholder_tags_list(self) -> List[str]:
        """Ritorna lista etichette placeholder."""
        return [tag.strip() for tag in self.placeholder_tags.split(",") if tag.strip()]
    
    def min_confidence_by_entity(self) -> Dict[str, int]:
        """Confidenza minima per tipo entità."""
        return {
            "products": self.products_min_confidence,
            "suppliers": self.suppliers_min_confidence,
            "movements": self.movements_min_confidence,
        }
    
    def max_records_by_entity(self) -> Dict[str, int]:
        """Numero massimo di righe per tipo entità."""
        return {
            "products": self.products_max_records,
            "suppliers": self.suppliers_max_records,
            "movements": self.movements_max_records,
        }
    
    def validate_config(self) -> bool:
        """Valida configurazione critica."""
        errors = []
        
        if not self.database_url:
            errors.append("DATABASE_URL non configurato")
        
        if "+" not in self.database_url.split("://", 1)[0]:
            logger.warning("DATABASE_URL senza driver async esplicito - lo store SQLAlchemy potrebbe non avviarsi")
        
        if self.batch_timeout_seconds * self.retry_attempts > 600:
            errors.append("batch_timeout_seconds * retry_attempts supera 10 minuti")
        
        if errors:
            error_msg = "❌ Configurazione importer non valida:\n" + "\n".join(f"  - {error}" for error in errors)
            logger.error(error_msg)
            raise ValueError(error_msg)
        
        logger.info("✅ Configurazione importer validata con successo")
        return True


# Istanza globale configurazione (solo composition root)
_config: ImporterConfig | None = None


def get_config() -> ImporterConfig:
    """Ottiene istanza configurazione (singleton)."""
    global _config
    if _config is None:
        _config = ImporterConfig()
        _config.validate_config()
    return _config
