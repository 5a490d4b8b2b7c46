"""
Validazione righe per tipo entità (modelli Pydantic + controlli di riferimento).

Le regole di campo vivono nei modelli; duplicati e riferimenti usano la
validation cache del tenant.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, Field, ValidationError, field_validator

from importer.autocorrection import EMAIL_RE
from importer.transform import (
    ROW_KEY,
    is_na,
    normalize_movement_type,
    normalize_string_field,
    parse_date,
    parse_number,
)
from importer.types import EntityType, ErrorRecord, ErrorType, ImportOptions
from importer.validation_cache import ValidationCache

logger = logging.getLogger(__name__)

FORMAT_FIELDS = ("email", "phone", "date")
_VALUE_ERROR_PREFIX = "Value error, "


def _required_text(value: Any, field_name: str) -> str:
    text = normalize_string_field(value)
    if text is None:
        raise ValueError(f"Campo obbligatorio mancante: {field_name}")
    return text


def _non_negative(value: Any, message: str) -> Optional[float]:
    if is_na(value):
        return None
    number = parse_number(value)
    if number is None:
        raise ValueError(f"{message}: valore non numerico")
    if number < 0:
        raise ValueError(f"{message}: deve essere >= 0")
    return number


class ProductRowModel(BaseModel):
    """Riga prodotto."""

    name: str = Field(..., description="Nome prodotto (obbligatorio)")
    sku: Optional[str] = None
    barcode: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    unit: Optional[str] = None
    stock: Optional[int] = Field(None, description="Stock iniziale (>= 0)")
    min_stock: Optional[int] = None
    purchase_price: Optional[float] = Field(None, description="Prezzo acquisto (>= 0)")
    sale_price: Optional[float] = Field(None, description="Prezzo vendita (>= 0)")
    supplier: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def validate_name(cls, v: Any) -> str:
        return _required_text(v, "name")

    @field_validator("sku", "barcode", "description", "category", "unit", "supplier", mode="before")
    @classmethod
    def validate_optional_text(cls, v: Any) -> Optional[str]:
        return normalize_string_field(v)

    @field_validator("stock", "min_stock", mode="before")
    @classmethod
    def validate_stock(cls, v: Any) -> Optional[int]:
        number = _non_negative(v, "Stock non valido")
        if number is None:
            return None
        if number != int(number):
            raise ValueError("Stock non valido: deve essere un intero")
        return int(number)

    @field_validator("purchase_price", "sale_price", mode="before")
    @classmethod
    def validate_price(cls, v: Any) -> Optional[float]:
        return _non_negative(v, "Prezzo non valido")


class SupplierRowModel(BaseModel):
    """Riga fornitore."""

    name: str = Field(..., description="Ragione sociale (obbligatoria)")
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    contact: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def validate_name(cls, v: Any) -> str:
        return _required_text(v, "name")

    @field_validator("email", mode="before")
    @classmethod
    def validate_email(cls, v: Any) -> Optional[str]:
        text = normalize_string_field(v)
        if text is None:
            return None
        if not EMAIL_RE.match(text.lower()):
            raise ValueError(f"Email non valida: {text}")
        return text.lower()

    @field_validator("phone", mode="before")
    @classmethod
    def validate_phone(cls, v: Any) -> Optional[str]:
        text = normalize_string_field(v)
        if text is None:
            return None
        digits = "".join(ch for ch in text if ch.isdigit())
        if not 7 <= len(digits) <= 15:
            raise ValueError(f"Telefono non valido: {text}")
        return text

    @field_validator("address", "city", "contact", mode="before")
    @classmethod
    def validate_optional_text(cls, v: Any) -> Optional[str]:
        return normalize_string_field(v)


class MovementRowModel(BaseModel):
    """Riga movimento di inventario."""

    product: str = Field(..., description="Nome, codice o id prodotto")
    type: str = Field(..., description="ENTRADA o SALIDA")
    quantity: int = Field(..., description="Quantità (> 0)")
    date: Optional[str] = None
    supplier: Optional[str] = None
    unit_price: Optional[float] = None
    reason: Optional[str] = None
    reference: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("product", mode="before")
    @classmethod
    def validate_product(cls, v: Any) -> str:
        return _required_text(v, "product")

    @field_validator("type", mode="before")
    @classmethod
    def validate_type(cls, v: Any) -> str:
        _required_text(v, "type")
        movement_type = normalize_movement_type(v)
        if movement_type is None:
            raise ValueError(f"Tipo movimento non valido: {v} (ammessi ENTRADA, SALIDA)")
        return movement_type

    @field_validator("quantity", mode="before")
    @classmethod
    def validate_quantity(cls, v: Any) -> int:
        if is_na(v):
            raise ValueError("Campo obbligatorio mancante: quantity")
        number = parse_number(v)
        if number is None or number <= 0 or number != int(number):
            raise ValueError("Quantità non valida: deve essere un intero positivo")
        return int(number)

    @field_validator("date", mode="before")
    @classmethod
    def validate_date(cls, v: Any) -> Optional[str]:
        if is_na(v):
            return None
        parsed = parse_date(v)
        if parsed is None:
            raise ValueError(f"Data non valida: {v}")
        return parsed.isoformat()

    @field_validator("unit_price", mode="before")
    @classmethod
    def validate_price(cls, v: Any) -> Optional[float]:
        return _non_negative(v, "Prezzo non valido")

    @field_validator("supplier", "reason", "reference", "notes", mode="before")
    @classmethod
    def validate_optional_text(cls, v: Any) -> Optional[str]:
        return normalize_string_field(v)


ROW_MODELS: Dict[EntityType, Type[BaseModel]] = {
    EntityType.PRODUCTS: ProductRowModel,
    EntityType.SUPPLIERS: SupplierRowModel,
    EntityType.MOVEMENTS: MovementRowModel,
}


def pydantic_errors(exc: ValidationError, row_number: int, row: Dict[str, Any]) -> List[ErrorRecord]:
    """Converte gli errori Pydantic in ErrorRecord."""
    records = []
    for err in exc.errors():
        column = str(err["loc"][0]) if err.get("loc") else "row"
        if err.get("type") == "missing":
            message = f"Campo obbligatorio mancante: {column}"
        else:
            message = str(err.get("msg", "Valore non valido"))
            if message.startswith(_VALUE_ERROR_PREFIX):
                message = message[len(_VALUE_ERROR_PREFIX):]
        error_type = ErrorType.FORMAT if column in FORMAT_FIELDS else ErrorType.VALIDATION
        records.append(ErrorRecord(row_number, column, row.get(column), message, error_type))
    return records


def lookup_reference(lookup: Dict[str, Dict[str, Any]], value: Any) -> Optional[Dict[str, Any]]:
    """Cerca un riferimento per nome, codice o id."""
    if is_na(value):
        return None
    text = str(value).strip()
    return (
        lookup.get(text.lower())
        or lookup.get(text)
        or lookup.get(text.upper())
        or lookup.get(f"id:{text}")
    )


@dataclass
class RowValidationResult:
    valid: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    errors: List[ErrorRecord] = field(default_factory=list)
    # riga → record esistente da aggiornare (overwrite_existing)
    existing: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    # riga → nome prodotto da creare
    pending_products: Dict[int, str] = field(default_factory=dict)

    @property
    def invalid_rows(self) -> set:
        return {e.row for e in self.errors}


class RowValidator:
    """
    Valida righe con i modelli Pydantic e con i riferimenti del tenant.
    
    Le lookup map arrivano dalla ValidationCache; gli errori di popolamento
    della cache si propagano al chiamante.
    """

    def __init__(self, cache: ValidationCache):
        self.cache = cache

    async def validate(
        self,
        rows: List[Dict[str, Any]],
        entity_type: EntityType,
        tenant_id: int,
        options: ImportOptions,
    ) -> RowValidationResult:
        result = RowValidationResult()
        model = ROW_MODELS[entity_type]

        references: Dict[str, Dict[str, Dict[str, Any]]] = {}
        if entity_type == EntityType.MOVEMENTS:
            references["products"] = await self.cache.get(tenant_id, "products")
        else:
            references[entity_type.value] = await self.cache.get(tenant_id, entity_type.value)

        seen: Dict[str, int] = {}
        for row in rows:
            row_number = row[ROW_KEY]
            try:
                record = model(**{k: v for k, v in row.items() if k != ROW_KEY}).model_dump()
            except ValidationError as e:
                result.errors.extend(pydantic_errors(e, row_number, row))
                continue

            if entity_type == EntityType.MOVEMENTS:
                product = lookup_reference(references["products"], record["product"])
                if product is None:
                    if options.auto_create_products:
                        result.pending_products[row_number] = record["product"]
                    else:
                        result.errors.append(ErrorRecord(
                            row_number, "product", record["product"],
                            f"Prodotto non trovato: {record['product']}",
                            ErrorType.REFERENCE,
                        ))
                        continue
            else:
                duplicate = self._check_duplicates(
                    record, row_number, entity_type, references[entity_type.value], seen, options, result
                )
                if duplicate is not None:
                    result.errors.append(duplicate)
                    continue

            result.valid[row_number] = record

        logger.info(
            f"[VALIDATION] {entity_type.value}: {len(result.valid)}/{len(rows)} righe valide, "
            f"{len(result.errors)} errori"
        )
        return result

    def _check_duplicates(
        self,
        record: Dict[str, Any],
        row_number: int,
        entity_type: EntityType,
        lookup: Dict[str, Dict[str, Any]],
        seen: Dict[str, int],
        options: ImportOptions,
        result: RowValidationResult,
    ) -> Optional[ErrorRecord]:
        keys = [("name", record["name"].strip().lower())]
        code_fields = ("sku", "barcode") if entity_type == EntityType.PRODUCTS else ("email",)
        for code_field in code_fields:
            if record.get(code_field):
                keys.append((code_field, str(record[code_field]).strip()))

        for column, key in keys:
            seen_key = f"{column}:{key.lower()}"
            if seen_key in seen:
                return ErrorRecord(
                    row_number, column, record.get(column),
                    f"Valore duplicato nel file (riga {seen[seen_key]}): {record.get(column)}",
                    ErrorType.DUPLICATE,
                )

        for column, key in keys:
            existing = lookup.get(key) or lookup.get(key.lower())
            if existing is not None:
                if options.overwrite_existing:
                    result.existing[row_number] = existing
                    break
                return ErrorRecord(
                    row_number, column, record.get(column),
                    f"Record già esistente con {column}={record.get(column)}",
                    ErrorType.DUPLICATE,
                )

        for column, key in keys:
            seen[f"{column}:{key.lower()}"] = row_number
        return None
