"""
Profili di elaborazione per tipo entità.

Ogni profilo raccoglie limiti, colonne richieste, campi critici e valori
di default usati da validazione, error handler e resolver.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from core.config import ImporterConfig
from core.errors import ImportConfigurationError
from importer.types import EntityType


@dataclass(frozen=True)
class EntityProfile:
    entity_type: EntityType
    max_records: int
    required_columns: Tuple[str, ...]
    critical_fields: Tuple[str, ...]
    min_confidence: int
    normalize_headers: bool = True
    ignore_empty_rows: bool = True
    defaults: Dict[str, Any] = field(default_factory=dict)
    # Chiavi usate dalla cache per indicizzare i riferimenti
    code_keys: Tuple[str, ...] = ()
    # Tipo entità referenziata (per i movimenti)
    references: Tuple[str, ...] = ()
    # Stage mostrati nel progresso
    stages: Tuple[str, ...] = ()


_BASE_STAGES = ("validation", "analysis", "transformation", "persistence", "finalization")

PRODUCT_DEFAULTS: Dict[str, Any] = {
    "stock": 0,
    "purchase_price": 0,
    "sale_price": 0,
    "min_stock": 0,
    "description": "Sin descripción",
    "category": "Sin categoría",
    "unit": "unidad",
}

SUPPLIER_DEFAULTS: Dict[str, Any] = {
    "email": "sin-email@empresa.com",
    "phone": "Sin teléfono",
    "address": "Sin dirección",
    "city": "Sin ciudad",
}

MOVEMENT_DEFAULTS: Dict[str, Any] = {
    "unit_price": 0,
    "reason": "Importación automática",
    "reference": "SIN-REF",
    "notes": "Sin notas",
}


def build_profiles(config: ImporterConfig) -> Dict[EntityType, EntityProfile]:
    """Costruisce i profili dai valori di configurazione."""
    max_records = config.max_records_by_entity()
    min_confidence = config.min_confidence_by_entity()
    return {
        EntityType.PRODUCTS: EntityProfile(
            entity_type=EntityType.PRODUCTS,
            max_records=max_records["products"],
            required_columns=("name",),
            critical_fields=("name", "id", "tenant_id"),
            min_confidence=min_confidence["products"],
            defaults=dict(PRODUCT_DEFAULTS),
            code_keys=("sku", "barcode"),
            stages=_BASE_STAGES,
        ),
        EntityType.SUPPLIERS: EntityProfile(
            entity_type=EntityType.SUPPLIERS,
            max_records=max_records["suppliers"],
            required_columns=("name",),
            critical_fields=("name", "id", "tenant_id"),
            min_confidence=min_confidence["suppliers"],
            defaults=dict(SUPPLIER_DEFAULTS),
            code_keys=("email",),
            stages=_BASE_STAGES,
        ),
        EntityType.MOVEMENTS: EntityProfile(
            entity_type=EntityType.MOVEMENTS,
            max_records=max_records["movements"],
            required_columns=("product", "type", "quantity"),
            critical_fields=("product", "type", "quantity", "tenant_id"),
            min_confidence=min_confidence["movements"],
            defaults=dict(MOVEMENT_DEFAULTS),
            references=("products", "suppliers"),
            stages=(
                "validation",
                "analysis",
                "product_verification",
                "transformation",
                "persistence",
                "stock_update",
                "finalization",
            ),
        ),
    }


def get_profile(
    profiles: Dict[EntityType, EntityProfile],
    entity_type: Any
) -> EntityProfile:
    """
    Risolve il profilo per un tipo entità.
    
    Raises:
        ImportConfigurationError: tipo entità non supportato
    """
    try:
        key = EntityType.parse(entity_type)
    except ValueError:
        raise ImportConfigurationError(f"Tipo di importazione non supportato: {entity_type}")
    profile = profiles.get(key)
    if profile is None:
        raise ImportConfigurationError(f"Nessuna configurazione per tipo: {key.value}")
    return profile


def required_columns_missing(profile: EntityProfile, columns: List[str]) -> List[str]:
    present = set(columns)
    return [col for col in profile.required_columns if col not in present]
