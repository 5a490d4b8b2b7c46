"""
Smart resolver - risoluzione automatica degli errori di validazione.

Per ogni errore prova una correzione con confidenza; applica solo quelle
sopra la soglia del tipo entità. Gestisce anche la creazione automatica
delle entità referenziate (prodotti/fornitori) con una policy placeholder
esplicita.
"""
import asyncio
import logging
import re
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from rapidfuzz import fuzz, process

from importer.autocorrection import DEFAULT_CONFIDENCE, AutocorrectionEngine, suggest_alternatives
from importer.error_handler import ErrorHandler
from importer.interfaces import InventoryStore
from importer.transform import MOVEMENT_TYPES, is_na
from importer.types import (
    Correction,
    CorrectionKind,
    ErrorRecord,
    ErrorType,
    ResolutionAction,
    Severity,
)
from importer.validation import lookup_reference
from importer.validation_cache import ValidationCache

logger = logging.getLogger(__name__)

REFERENCE_MATCH_CUTOFF = 90
ENUM_MATCH_CUTOFF = 80

_INTERVENTION_HINTS = {
    "name": "Inserisci un nome valido per la riga",
    "email": "Usa un indirizzo nel formato nome@dominio.ext",
    "phone": "Usa solo cifre (7-15)",
    "date": "Usa il formato DD/MM/YYYY o YYYY-MM-DD",
    "quantity": "Inserisci un intero positivo",
    "product": "Verifica che il prodotto esista o abilita la creazione automatica",
    "type": "Usa ENTRADA o SALIDA",
}


@dataclass(frozen=True)
class PlaceholderPolicy:
    """
    Valori sintetici per le entità create automaticamente.
    
    L'email fornitore è derivata da placeholder_email aggiungendo uno slug
    del nome (local+slug@dominio) per restare unica nel tenant.
    """
    email: str = "sin-email@placeholder.local"
    phone: str = "Sin teléfono"
    description: str = "Producto creado automáticamente"
    tags: Tuple[str, ...] = ("AUTO-CREADO", "IMPORTACION")
    sku_prefix: str = "PROD"
    initial_stock: int = 0
    purchase_price: float = 0.0
    sale_price: float = 0.0
    min_stock: int = 10
    max_auto_products: int = 10000

    @classmethod
    def from_config(cls, config) -> "PlaceholderPolicy":
        return cls(
            email=config.placeholder_email,
            phone=config.placeholder_phone,
            description=config.placeholder_description,
            tags=tuple(config.get_placeholder_tags_list()),
            sku_prefix=config.placeholder_sku_prefix,
            min_stock=config.placeholder_min_stock,
        )

    @staticmethod
    def slug(name: str) -> str:
        return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")[:40] or "sin-nombre"

    def supplier_email(self, name: str) -> str:
        local, _, domain = self.email.partition("@")
        return f"{local}+{self.slug(name)}@{domain}"

    def generate_sku(self, name: str) -> str:
        short = re.sub(r"[^A-Z0-9]", "", name[:10].upper())
        return f"{self.sku_prefix}-{short}-{uuid.uuid4().hex[:6].upper()}"

    def product_data(self, name: str) -> Dict[str, Any]:
        clean = name.strip()[:100]
        return {
            "name": clean,
            "description": self.description,
            "sku": self.generate_sku(clean),
            "stock": self.initial_stock,
            "purchase_price": self.purchase_price,
            "sale_price": self.sale_price,
            "min_stock": self.min_stock,
            "tags": list(self.tags),
            "auto_created": True,
        }

    def supplier_data(self, name: str) -> Dict[str, Any]:
        clean = name.strip()[:100]
        return {
            "name": clean,
            "email": self.supplier_email(clean),
            "phone": self.phone,
            "tags": list(self.tags),
            "auto_created": True,
        }


@dataclass
class ResolvedError:
    error: ErrorRecord
    action: ResolutionAction
    corrected_value: Any = None
    confidence: int = 0
    correction: Optional[Correction] = None
    suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error.to_dict(),
            "action": self.action.value,
            "corrected_value": self.corrected_value,
            "confidence": self.confidence,
            "suggestions": list(self.suggestions),
        }


@dataclass
class ResolutionResult:
    resolved: List[ResolvedError] = field(default_factory=list)
    corrections: List[Correction] = field(default_factory=list)
    unresolved: List[ResolvedError] = field(default_factory=list)

    @property
    def remaining_errors(self) -> List[ErrorRecord]:
        return [r.error for r in self.unresolved]


class SmartResolver:
    """Risolve errori con correzioni a confidenza e crea riferimenti mancanti."""

    def __init__(
        self,
        engine: AutocorrectionEngine,
        error_handler: ErrorHandler,
        required_fields: Optional[Dict[str, Sequence[str]]] = None,
        store: Optional[InventoryStore] = None,
        cache: Optional[ValidationCache] = None,
        placeholders: Optional[PlaceholderPolicy] = None,
    ):
        self.engine = engine
        self.error_handler = error_handler
        self.required_fields = {k: tuple(v) for k, v in (required_fields or {}).items()}
        self.store = store
        self.cache = cache
        self.placeholders = placeholders or PlaceholderPolicy()
        self._creation_lock = asyncio.Lock()

    def resolve(
        self,
        errors: Sequence[ErrorRecord],
        entity_type: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> ResolutionResult:
        """
        Tenta la risoluzione di ogni errore.
        
        Args:
            errors: Errori da risolvere
            entity_type: products, suppliers, movements
            context: 'rows' (riga → dict), 'references' (lookup prodotti),
                'auto_create_products' (bool)
        
        Returns:
            ResolutionResult: resolved (corrected/ignored), corrections
            applicate (confidence >= soglia), unresolved (suggested/needs_intervention)
        """
        context = context or {}
        result = ResolutionResult()
        for error in errors:
            resolved = self._resolve_one(error, entity_type, context)
            if resolved.action in (ResolutionAction.CORRECTED, ResolutionAction.IGNORED):
                result.resolved.append(resolved)
                if resolved.correction is not None:
                    resolved.correction.applied = True
                    resolved.correction.row = error.row
                    result.corrections.append(resolved.correction)
            else:
                result.unresolved.append(resolved)

        logger.info(
            f"[RESOLVER] {entity_type}: {len(result.resolved)} risolti, "
            f"{len(result.unresolved)} non risolti su {len(errors)} errori"
        )
        return result

    def _current_value(self, error: ErrorRecord, context: Dict[str, Any]) -> Any:
        row = (context.get("rows") or {}).get(error.row)
        if row is not None and error.column in row:
            return row[error.column]
        return error.value

    def _resolve_one(self, error: ErrorRecord, entity_type: str, context: Dict[str, Any]) -> ResolvedError:
        if error.type == ErrorType.SYSTEM:
            return ResolvedError(error, ResolutionAction.NEEDS_INTERVENTION, suggestions=[
                "Errore di sistema: riprova l'importazione"
            ])
        if error.type == ErrorType.DUPLICATE:
            return ResolvedError(error, ResolutionAction.NEEDS_INTERVENTION, suggestions=[
                "Rimuovi il duplicato o abilita la sovrascrittura dei record esistenti"
            ])
        if error.type == ErrorType.REFERENCE:
            return self._resolve_reference(error, entity_type, context)

        value = self._current_value(error, context)
        threshold = self.engine.threshold(entity_type)

        if is_na(value) and error.column in self.required_fields.get(entity_type, ()):
            return self._needs_intervention(error)

        correction = self.engine.correct_value(error.column, value, entity_type)
        if correction is None and error.column == "type" and entity_type == "movements":
            correction = self._correct_movement_type(error.column, value)
        if (correction is None or correction.noop) and error.type == ErrorType.FORMAT:
            correction = self._default_for(error.column, value, entity_type) or correction

        if correction is not None and not correction.noop:
            if correction.confidence >= threshold:
                return ResolvedError(
                    error, ResolutionAction.CORRECTED, correction.corrected,
                    correction.confidence, correction,
                )
            return ResolvedError(
                error, ResolutionAction.SUGGESTED, correction.corrected,
                correction.confidence, suggestions=[str(correction.corrected)],
            )

        severity = self.error_handler.severity_of(error)
        if severity == Severity.LOW and error.column not in self.required_fields.get(entity_type, ()):
            return ResolvedError(error, ResolutionAction.IGNORED, None, 100)

        alternatives = suggest_alternatives(error.column, value)
        if alternatives:
            return ResolvedError(
                error, ResolutionAction.SUGGESTED, None, 50, suggestions=alternatives,
            )
        return self._needs_intervention(error)

    def _needs_intervention(self, error: ErrorRecord) -> ResolvedError:
        hint = _INTERVENTION_HINTS.get(error.column, f"Verifica il valore della colonna '{error.column}'")
        return ResolvedError(error, ResolutionAction.NEEDS_INTERVENTION, suggestions=[hint])

    def _default_for(self, column: str, value: Any, entity_type: str) -> Optional[Correction]:
        """Default del tipo entità al posto di un valore malformato."""
        default = self.engine.defaults.get(entity_type, {}).get(column)
        if default is None:
            return None
        return Correction(
            column, value, default, CorrectionKind.DEFAULT_VALUE, DEFAULT_CONFIDENCE,
            reason="valore non valido sostituito con il default",
        )

    def _correct_movement_type(self, column: str, value: Any) -> Optional[Correction]:
        if is_na(value):
            return None
        text = str(value).strip().lower()
        match = process.extractOne(text, list(MOVEMENT_TYPES.keys()), scorer=fuzz.ratio, score_cutoff=ENUM_MATCH_CUTOFF)
        if not match:
            return None
        corrected = MOVEMENT_TYPES[match[0]]
        return Correction(column, value, corrected, CorrectionKind.VALIDATION, int(match[1]), reason="tipo movimento simile")

    def _resolve_reference(self, error: ErrorRecord, entity_type: str, context: Dict[str, Any]) -> ResolvedError:
        value = self._current_value(error, context)
        references = context.get("references") or {}
        threshold = self.engine.threshold(entity_type)

        match = self.fuzzy_reference(references, value)
        if match is not None:
            record, score = match
            correction = Correction(
                error.column, value, record["name"], CorrectionKind.NORMALIZATION, score,
                reason="riferimento simile esistente",
            )
            if score >= threshold:
                return ResolvedError(error, ResolutionAction.CORRECTED, record["name"], score, correction)
            return ResolvedError(error, ResolutionAction.SUGGESTED, record["name"], score, suggestions=[record["name"]])

        if context.get("auto_create_products"):
            correction = Correction(
                error.column, value, value, CorrectionKind.VALIDATION, DEFAULT_CONFIDENCE,
                reason="creazione automatica",
            )
            return ResolvedError(error, ResolutionAction.CORRECTED, value, DEFAULT_CONFIDENCE, correction)

        names = sorted({r["name"] for r in references.values() if r.get("name")})
        suggestions = []
        if names and not is_na(value):
            suggestions = [m[0] for m in process.extract(str(value), names, scorer=fuzz.WRatio, limit=3)]
        return ResolvedError(
            error, ResolutionAction.NEEDS_INTERVENTION,
            suggestions=suggestions or [_INTERVENTION_HINTS["product"]],
        )

    @staticmethod
    def fuzzy_reference(
        references: Dict[str, Dict[str, Any]],
        value: Any,
        cutoff: int = REFERENCE_MATCH_CUTOFF,
    ) -> Optional[Tuple[Dict[str, Any], int]]:
        """Match fuzzy (token_set_ratio) sul nome dei riferimenti."""
        if is_na(value) or not references:
            return None
        by_name = {
            str(r["name"]).strip().lower(): r
            for r in references.values() if r.get("name")
        }
        match = process.extractOne(
            str(value).strip().lower(),
            list(by_name.keys()),
            scorer=fuzz.token_set_ratio,
            score_cutoff=cutoff,
        )
        if not match:
            return None
        return by_name[match[0]], int(match[1])

    @staticmethod
    def apply_corrections(
        rows: Dict[int, Dict[str, Any]],
        result: ResolutionResult,
    ) -> List[int]:
        """
        Applica alle righe le correzioni risolte; i campi ignorati vengono svuotati.
        
        Returns:
            Righe modificate
        """
        touched = []
        for resolved in result.resolved:
            row = rows.get(resolved.error.row)
            if row is None:
                continue
            if resolved.action == ResolutionAction.CORRECTED:
                row[resolved.error.column] = resolved.corrected_value
            elif resolved.action == ResolutionAction.IGNORED:
                row[resolved.error.column] = None
            touched.append(resolved.error.row)
        return sorted(set(touched))

    @staticmethod
    def correction_report(corrections: Sequence[Correction]) -> Dict[str, Any]:
        """Totali per tipo, campi più corretti e confidenza media."""
        if not corrections:
            return {"total": 0, "by_kind": {}, "top_fields": [], "average_confidence": 0.0}
        by_kind = Counter(c.kind.value for c in corrections)
        by_field = Counter(c.field for c in corrections)
        return {
            "total": len(corrections),
            "by_kind": dict(by_kind),
            "top_fields": [{"field": f, "count": n} for f, n in by_field.most_common(5)],
            "average_confidence": round(sum(c.confidence for c in corrections) / len(corrections), 1),
        }

    async def ensure_product(
        self,
        tenant_id: int,
        identifier: str,
        auto_create: bool = True,
    ) -> Tuple[Optional[Dict[str, Any]], bool]:
        """
        Trova un prodotto per nome/codice/id o lo crea con la policy placeholder.
        
        Returns:
            (prodotto, creato). (None, False) se non trovato e auto_create disabilitato
        """
        if self.store is None:
            raise RuntimeError("SmartResolver senza store: impossibile risolvere prodotti")

        if self.cache is not None:
            lookup = await self.cache.get(tenant_id, "products")
            found = lookup_reference(lookup, identifier)
            if found is None:
                fuzzy = self.fuzzy_reference(lookup, identifier)
                found = fuzzy[0] if fuzzy else None
            if found is not None:
                return found, False

        async with self._creation_lock:
            found = await self.store.find_product(tenant_id, name=identifier, sku=identifier, barcode=identifier)
            if found is not None:
                return found, False
            if not auto_create:
                return None, False

            total = await self.store.count(tenant_id, "products")
            if total >= self.placeholders.max_auto_products:
                raise RuntimeError(
                    f"Limite prodotti raggiunto ({self.placeholders.max_auto_products}): creazione automatica negata"
                )
            created = await self.store.create_product(tenant_id, self.placeholders.product_data(identifier))
            logger.info(f"[RESOLVER] Prodotto creato automaticamente: {created.get('name')} (id={created.get('id')})")

        if self.cache is not None:
            await self.cache.invalidate(tenant_id, "products")
        return created, True

    async def ensure_supplier(self, tenant_id: int, name: str) -> Tuple[Dict[str, Any], bool]:
        """Trova un fornitore per nome o lo crea con email/telefono placeholder."""
        if self.store is None:
            raise RuntimeError("SmartResolver senza store: impossibile risolvere fornitori")
        async with self._creation_lock:
            found = await self.store.find_supplier(tenant_id, name=name)
            if found is not None:
                return found, False
            created = await self.store.create_supplier(tenant_id, self.placeholders.supplier_data(name))
            logger.info(f"[RESOLVER] Fornitore creato automaticamente: {created.get('name')} (id={created.get('id')})")
        if self.cache is not None:
            await self.cache.invalidate(tenant_id, "suppliers")
        return created, True
