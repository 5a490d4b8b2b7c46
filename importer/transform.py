"""
Normalizzazione header e trasformazione righe → record di dominio.

Le funzioni transform_* sono pure: ricevono una riga già validata e
restituiscono il dict passato allo store di persistenza.
"""
import math
import re
import logging
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional
from rapidfuzz import fuzz, process

from importer.types import EntityType

logger = logging.getLogger(__name__)

ROW_KEY = "_row"

# Sinonimi header (spagnolo/italiano/inglese) → nome standard
HEADER_ALIASES = {
    'name': ['nombre', 'nome', 'name', 'producto nombre', 'nombre producto', 'razon social', 'razón social', 'proveedor nombre'],
    'sku': ['sku', 'codigo', 'código', 'codice', 'code', 'referencia interna'],
    'barcode': ['codigo barras', 'codigobarras', 'código de barras', 'barcode', 'ean', 'codice a barre'],
    'description': ['descripcion', 'descripción', 'descrizione', 'description', 'detalle'],
    'category': ['categoria', 'categoría', 'category', 'tipo producto'],
    'unit': ['unidad', 'unidad medida', 'unidadmedida', 'unit', 'unità'],
    'stock': ['stock', 'existencias', 'inventario', 'giacenza', 'stock actual'],
    'min_stock': ['stock minimo', 'stockminimo', 'stock mínimo', 'min stock', 'scorta minima'],
    'purchase_price': ['precio compra', 'preciocompra', 'costo', 'cost', 'prezzo acquisto', 'purchase price'],
    'sale_price': ['precio venta', 'precioventa', 'precio', 'price', 'prezzo', 'prezzo vendita', 'sale price'],
    'supplier': ['proveedor', 'fornitore', 'supplier', 'proveedor nombre'],
    'email': ['email', 'correo', 'correo electronico', 'e-mail', 'mail'],
    'phone': ['telefono', 'teléfono', 'phone', 'tel', 'celular', 'movil'],
    'address': ['direccion', 'dirección', 'indirizzo', 'address'],
    'city': ['ciudad', 'città', 'city'],
    'contact': ['contacto', 'contatto', 'contact'],
    'product': ['producto', 'productoid', 'producto id', 'productonombre', 'prodotto', 'product'],
    'type': ['tipo', 'tipo movimiento', 'type', 'movimiento'],
    'quantity': ['cantidad', 'quantità', 'qty', 'quantity', 'unidades'],
    'date': ['fecha', 'fechamovimiento', 'fecha movimiento', 'data', 'date'],
    'unit_price': ['precio unitario', 'preciounitario', 'prezzo unitario', 'unit price'],
    'reason': ['motivo', 'causale', 'reason'],
    'reference': ['referencia', 'riferimento', 'reference'],
    'notes': ['notas', 'note', 'notes', 'observaciones'],
}

MOVEMENT_TYPES = {
    'entrada': 'ENTRADA',
    'ingreso': 'ENTRADA',
    'in': 'ENTRADA',
    'carico': 'ENTRADA',
    'salida': 'SALIDA',
    'egreso': 'SALIDA',
    'out': 'SALIDA',
    'scarico': 'SALIDA',
}

_NA_TOKENS = ('nan', 'none', 'null', 'n/a', 'na', 'undefined')


def normalize_column_name(col_name: str) -> str:
    """
    Normalizza nome colonna per matching: lowercase, strip, senza simboli.
    
    "precioVenta" diventa "precio venta" (split camelCase).
    """
    if not col_name:
        return ""
    normalized = re.sub(r'(?<=[a-z])(?=[A-Z])', ' ', str(col_name).strip())
    normalized = normalized.lower()
    normalized = re.sub(r'[^\w\s\-]', '', normalized)
    normalized = re.sub(r'[_\-]+', ' ', normalized)
    normalized = re.sub(r'\s+', ' ', normalized)
    return normalized.strip()


def map_headers(original_columns: List[str], confidence_threshold: float = 0.85) -> Dict[str, str]:
    """
    Mappa header colonne verso nomi standard usando rapidfuzz.
    
    Args:
        original_columns: Nomi colonne come arrivano dal parser
        confidence_threshold: Soglia fuzzy (0-1)
    
    Returns:
        Dict {'colonna originale': 'nome standard'}
    """
    target_list = []
    target_to_standard = {}
    for standard_name, variants in HEADER_ALIASES.items():
        for variant in variants + [standard_name]:
            normalized_variant = normalize_column_name(variant)
            target_list.append(normalized_variant)
            target_to_standard.setdefault(normalized_variant, standard_name)
    
    rename_mapping: Dict[str, str] = {}
    mapped_standard_names = set()
    
    for orig_col in original_columns:
        if orig_col == ROW_KEY:
            continue
        normalized_col = normalize_column_name(orig_col)
        
        # Match esatto prima del fuzzy
        if normalized_col in target_to_standard:
            standard_name = target_to_standard[normalized_col]
        else:
            result = process.extractOne(
                normalized_col,
                target_list,
                scorer=fuzz.ratio,
                score_cutoff=int(confidence_threshold * 100)
            )
            if not result:
                logger.debug(f"[TRANSFORM] Header '{orig_col}' non mappato, mantenuto")
                continue
            standard_name = target_to_standard[result[0]]
        
        if standard_name in mapped_standard_names:
            logger.debug(f"[TRANSFORM] Header '{orig_col}' ignorato: '{standard_name}' già mappato")
            continue
        rename_mapping[orig_col] = standard_name
        mapped_standard_names.add(standard_name)
    
    return rename_mapping


def normalize_headers(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Rinomina le chiavi di tutte le righe secondo map_headers."""
    if not rows:
        return rows
    columns: List[str] = []
    for row in rows:
        for key in row.keys():
            if key not in columns:
                columns.append(key)
    mapping = map_headers(columns)
    if mapping:
        logger.info(f"[TRANSFORM] Header mapping: {len(mapping)}/{len(columns)} colonne mappate")
    return [{mapping.get(k, k): v for k, v in row.items()} for row in rows]


def is_na(value: Any) -> bool:
    """
    Verifica se valore è null/NaN o stringa vuota.
    """
    if value is None:
        return True
    if isinstance(value, float):
        return math.isnan(value)
    if isinstance(value, str):
        return value.strip() == '' or value.strip().lower() in _NA_TOKENS
    return False


def is_empty_row(row: Dict[str, Any]) -> bool:
    return all(is_na(v) for k, v in row.items() if k != ROW_KEY)


def normalize_string_field(value: Any) -> Optional[str]:
    """Normalizza campo stringa opzionale."""
    if is_na(value):
        return None
    value_str = str(value).strip()
    return value_str or None


def parse_number(value: Any) -> Optional[float]:
    """
    Converte un valore numerico tollerando simboli valuta e virgola decimale.
    
    A differenza di normalize_price non azzera i negativi: la validazione
    deve poterli segnalare.
    """
    if is_na(value):
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    value_str = re.sub(r'[€$£\s]', '', str(value))
    if ',' in value_str and '.' in value_str:
        # 1.234,56 → 1234.56 / 1,234.56 → 1234.56
        if value_str.rfind(',') > value_str.rfind('.'):
            value_str = value_str.replace('.', '').replace(',', '.')
        else:
            value_str = value_str.replace(',', '')
    else:
        value_str = value_str.replace(',', '.')
    try:
        return float(value_str)
    except ValueError:
        return None


def normalize_price(value: Any) -> Optional[float]:
    """
    Normalizza prezzo (>= 0, due decimali) o None se non interpretabile.
    """
    number = parse_number(value)
    if number is None or number < 0:
        return None
    return round(number, 2)


def normalize_qty(value: Any) -> int:
    """Normalizza quantità intera (default 0)."""
    number = parse_number(value)
    if number is None:
        return 0
    return int(number)


def normalize_movement_type(value: Any) -> Optional[str]:
    """Mappa il tipo movimento su ENTRADA/SALIDA."""
    text = normalize_string_field(value)
    if text is None:
        return None
    return MOVEMENT_TYPES.get(text.lower())


def parse_date(value: Any) -> Optional[date]:
    """Interpreta date ISO, DD/MM/YYYY e DD-MM-YYYY."""
    if is_na(value):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    for fmt in ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%Y-%m-%dT%H:%M:%S", "%Y/%m/%d"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def transform_product(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "name": normalize_string_field(row.get("name")),
        "sku": normalize_string_field(row.get("sku")),
        "barcode": normalize_string_field(row.get("barcode")),
        "description": normalize_string_field(row.get("description")),
        "category": normalize_string_field(row.get("category")),
        "unit": normalize_string_field(row.get("unit")) or "unidad",
        "stock": max(0, normalize_qty(row.get("stock"))),
        "min_stock": max(0, normalize_qty(row.get("min_stock"))),
        "purchase_price": normalize_price(row.get("purchase_price")) or 0.0,
        "sale_price": normalize_price(row.get("sale_price")) or 0.0,
        "supplier": normalize_string_field(row.get("supplier")),
    }


def transform_supplier(row: Dict[str, Any]) -> Dict[str, Any]:
    email = normalize_string_field(row.get("email"))
    return {
        "name": normalize_string_field(row.get("name")),
        "email": email.lower() if email else None,
        "phone": normalize_string_field(row.get("phone")),
        "address": normalize_string_field(row.get("address")),
        "city": normalize_string_field(row.get("city")),
        "contact": normalize_string_field(row.get("contact")),
    }


def transform_movement(row: Dict[str, Any]) -> Dict[str, Any]:
    movement_date = parse_date(row.get("date"))
    return {
        "product": normalize_string_field(row.get("product")),
        "type": normalize_movement_type(row.get("type")),
        "quantity": normalize_qty(row.get("quantity")),
        "date": movement_date.isoformat() if movement_date else None,
        "supplier": normalize_string_field(row.get("supplier")),
        "unit_price": normalize_price(row.get("unit_price")),
        "reason": normalize_string_field(row.get("reason")),
        "reference": normalize_string_field(row.get("reference")),
        "notes": normalize_string_field(row.get("notes")),
    }


TRANSFORMERS: Dict[EntityType, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    EntityType.PRODUCTS: transform_product,
    EntityType.SUPPLIERS: transform_supplier,
    EntityType.MOVEMENTS: transform_movement,
}
