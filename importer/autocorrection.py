"""
Autocorrezione - correttori di formato, dizionario e sinonimi.

I correttori di formato sono una tabella (predicato sul nome colonna →
funzione). Ogni correzione porta una confidenza 0-100; un valore già
corretto restituisce se stesso con confidenza 100 (no-op).
"""
from __future__ import annotations

import logging
import pathlib
import re
from datetime import datetime
from functools import lru_cache
from statistics import mean
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from rapidfuzz import fuzz, process

from importer.transform import is_na
from importer.types import Correction, CorrectionKind

logger = logging.getLogger(__name__)

PRICE_CONFIDENCE = 85
DATE_CONFIDENCE = 80
EMAIL_CONFIDENCE = 75
PHONE_CONFIDENCE = 70
TEXT_CONFIDENCE = 60
CODE_CONFIDENCE = 95
QUANTITY_CONFIDENCE = 90
DEFAULT_CONFIDENCE = 90
SYNONYM_CONFIDENCE = 50
MAX_SYNONYMS = 5

VOCABULARY_CONFIDENCE = 100
MISSPELLING_CONFIDENCE = 95
FUZZY_WORD_CONFIDENCE = 70
FUZZY_WORD_CUTOFF = 88

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_DATE_FORMATS = ("%d/%m/%Y", "%d-%m-%Y", "%Y-%m-%d")


@lru_cache(maxsize=1)
def load_dictionary() -> Dict[str, Any]:
    """Carica vocabolario, errori comuni e sinonimi dal file YAML."""
    path = pathlib.Path(__file__).resolve().parent / "data" / "dictionary.yml"
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return {
        "vocabulary": {w.lower() for w in data.get("vocabulary", [])},
        "stopwords": {str(w).lower() for w in data.get("stopwords", [])},
        "misspellings": {k.lower(): v for k, v in (data.get("misspellings") or {}).items()},
        "synonyms": {k.lower(): list(v) for k, v in (data.get("synonyms") or {}).items()},
        "categories": list(data.get("categories", [])),
        "states": list(data.get("states", [])),
        "movement_types": list(data.get("movement_types", [])),
    }


def _result(field: str, original: Any, corrected: Any, kind: CorrectionKind, confidence: int, reason: str) -> Correction:
    if corrected == original:
        return Correction(field, original, corrected, kind, 100, reason="già corretto", noop=True)
    return Correction(field, original, corrected, kind, confidence, reason=reason)


def correct_price(field: str, value: Any) -> Optional[Correction]:
    """Rimuove simboli, virgola → punto, due decimali. Rifiuta negativi."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if value < 0:
            return None
        corrected = round(float(value), 2)
        if corrected == value:
            return Correction(field, value, value, CorrectionKind.FORMAT, 100, reason="già corretto", noop=True)
        return Correction(field, value, corrected, CorrectionKind.FORMAT, PRICE_CONFIDENCE, reason="arrotondato a 2 decimali")
    text = str(value).strip()
    cleaned = re.sub(r"[^\d,.\-]", "", text)
    if "," in cleaned and "." in cleaned:
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    else:
        cleaned = cleaned.replace(",", ".")
    try:
        number = float(cleaned)
    except ValueError:
        return None
    if number < 0:
        return None
    return _result(field, text, f"{number:.2f}", CorrectionKind.FORMAT, PRICE_CONFIDENCE, "prezzo normalizzato")


def correct_date(field: str, value: Any) -> Optional[Correction]:
    """DD/MM/YYYY, DD-MM-YYYY, YYYY-MM-DD → ISO. Rifiuta date non interpretabili."""
    if isinstance(value, datetime):
        return _result(field, value, value.date().isoformat(), CorrectionKind.FORMAT, DATE_CONFIDENCE, "data in formato ISO")
    text = str(value).strip()
    for fmt in _DATE_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        return _result(field, text, parsed.date().isoformat(), CorrectionKind.FORMAT, DATE_CONFIDENCE, "data in formato ISO")
    return None


def correct_email(field: str, value: Any) -> Optional[Correction]:
    text = str(value)
    corrected = text.strip().lower()
    if not EMAIL_RE.match(corrected):
        return None
    return _result(field, text, corrected, CorrectionKind.FORMAT, EMAIL_CONFIDENCE, "email normalizzata")


def correct_phone(field: str, value: Any) -> Optional[Correction]:
    text = str(value).strip()
    digits = re.sub(r"\D", "", text)
    if not 7 <= len(digits) <= 15:
        return None
    return _result(field, text, digits, CorrectionKind.FORMAT, PHONE_CONFIDENCE, "telefono solo cifre")


def correct_text(field: str, value: Any) -> Optional[Correction]:
    text = str(value)
    collapsed = re.sub(r"\s+", " ", text).strip()
    if not collapsed:
        return None
    return _result(field, text, collapsed.title(), CorrectionKind.NORMALIZATION, TEXT_CONFIDENCE, "spazi e maiuscole normalizzati")


def correct_code(field: str, value: Any) -> Optional[Correction]:
    text = str(value)
    corrected = re.sub(r"\s+", "", text).upper()
    if not corrected:
        return None
    return _result(field, text, corrected, CorrectionKind.FORMAT, CODE_CONFIDENCE, "codice normalizzato")


def correct_quantity(field: str, value: Any) -> Optional[Correction]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return _result(field, value, value, CorrectionKind.FORMAT, QUANTITY_CONFIDENCE, "") if value >= 0 else None
    text = str(value).strip()
    cleaned = re.sub(r"[^\d.,\-]", "", text).replace(",", ".")
    try:
        number = float(cleaned)
    except ValueError:
        return None
    if number < 0 or number != int(number):
        return None
    return _result(field, value, int(number), CorrectionKind.FORMAT, QUANTITY_CONFIDENCE, "quantità intera")


def _has(*tokens: str) -> Callable[[str], bool]:
    return lambda column: any(token in column for token in tokens)


# Ordine rilevante: "unit_price" è un prezzo, "min_stock" una quantità
FORMAT_CORRECTORS: List[Tuple[Callable[[str], bool], Callable[[str, Any], Optional[Correction]]]] = [
    (_has("price", "precio", "prezzo", "cost"), correct_price),
    (_has("date", "fecha"), correct_date),
    (_has("email", "correo"), correct_email),
    (_has("phone", "telefono", "teléfono"), correct_phone),
    (_has("sku", "barcode", "codigo", "código"), correct_code),
    (_has("quantity", "stock", "cantidad"), correct_quantity),
    (_has("name", "nombre", "description", "descripcion", "descripción"), correct_text),
]


def find_corrector(column: str) -> Optional[Callable[[str, Any], Optional[Correction]]]:
    key = (column or "").lower()
    for predicate, corrector in FORMAT_CORRECTORS:
        if predicate(key):
            return corrector
    return None


def correct_word(word: str) -> Tuple[str, int]:
    """
    Corregge una singola parola.
    
    Returns:
        (parola corretta, confidenza): vocabolario 100, errore comune 95,
        match fuzzy sul vocabolario 70, sconosciuta 0
    """
    dictionary = load_dictionary()
    lower = word.lower()
    if lower in dictionary["vocabulary"] or lower in dictionary["stopwords"] or lower.isdigit():
        return word, VOCABULARY_CONFIDENCE
    if lower in dictionary["misspellings"]:
        return _match_case(word, dictionary["misspellings"][lower]), MISSPELLING_CONFIDENCE
    if len(lower) >= 4:
        match = process.extractOne(
            lower,
            dictionary["vocabulary"],
            scorer=fuzz.ratio,
            score_cutoff=FUZZY_WORD_CUTOFF,
        )
        if match:
            return _match_case(word, match[0]), FUZZY_WORD_CONFIDENCE
    return word, 0


def _match_case(original: str, replacement: str) -> str:
    if original.isupper() and len(original) > 1:
        return replacement.upper()
    if original[:1].isupper():
        return replacement[:1].upper() + replacement[1:]
    return replacement


def correct_spelling(field: str, value: Any) -> Optional[Correction]:
    """
    Correzione ortografica parola per parola.
    
    La confidenza è la media delle confidenze delle singole parole.
    """
    if is_na(value):
        return None
    text = re.sub(r"\s+", " ", str(value)).strip()
    words = text.split(" ")
    results = [correct_word(word) for word in words]
    corrected = " ".join(word for word, _ in results)
    confidence = int(round(mean(conf for _, conf in results)))
    if corrected == text:
        if confidence == VOCABULARY_CONFIDENCE:
            return Correction(field, value, value, CorrectionKind.NORMALIZATION, 100, reason="già corretto", noop=True)
        return Correction(field, value, corrected, CorrectionKind.NORMALIZATION, confidence, reason="parole non riconosciute")
    return Correction(field, value, corrected, CorrectionKind.NORMALIZATION, confidence, reason="correzione ortografica")


def suggest_alternatives(field: str, value: Any) -> List[str]:
    """
    Alternative per campi categoria/stato/tipo (solo informative).
    
    Returns:
        Al massimo 5 valori
    """
    if is_na(value):
        return []
    dictionary = load_dictionary()
    text = str(value).strip().lower()
    column = (field or "").lower()

    candidates: List[str] = []
    if "categor" in column:
        candidates = dictionary["categories"]
    elif "state" in column or "estado" in column or "status" in column:
        candidates = dictionary["states"]
    elif column in ("type", "tipo"):
        candidates = dictionary["movement_types"]

    suggestions: List[str] = []
    if candidates:
        matches = process.extract(text, candidates, scorer=fuzz.WRatio, limit=MAX_SYNONYMS)
        suggestions.extend(match[0] for match in matches)
    for synonym in dictionary["synonyms"].get(text, []):
        if synonym not in suggestions:
            suggestions.append(synonym)
    return suggestions[:MAX_SYNONYMS]


class AutocorrectionEngine:
    """
    Applica correzioni con soglia di confidenza per tipo entità.
    
    Una correzione viene applicata se e solo se confidence >= minimo del
    tipo entità. I default sostituiscono solo valori mancanti.
    """

    SPELLING_FIELDS = ("category", "unit", "reason", "notes")

    def __init__(
        self,
        min_confidence: Dict[str, int],
        defaults: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        self.min_confidence = dict(min_confidence)
        self.defaults = {k: dict(v) for k, v in (defaults or {}).items()}

    @classmethod
    def from_profiles(cls, profiles) -> "AutocorrectionEngine":
        return cls(
            min_confidence={et.value: p.min_confidence for et, p in profiles.items()},
            defaults={et.value: p.defaults for et, p in profiles.items()},
        )

    def threshold(self, entity_type: str) -> int:
        return self.min_confidence.get(entity_type, 100)

    def is_applicable(self, correction: Correction, entity_type: str) -> bool:
        return correction.confidence >= self.threshold(entity_type)

    def correct_value(self, field: str, value: Any, entity_type: str) -> Optional[Correction]:
        """
        Correzione per un singolo campo: formato, poi default, poi ortografia.
        
        Returns:
            Correction (eventualmente no-op) o None se nessuna correzione possibile
        """
        if is_na(value):
            default = self.defaults.get(entity_type, {}).get(field)
            if default is None:
                return None
            return Correction(field, value, default, CorrectionKind.DEFAULT_VALUE, DEFAULT_CONFIDENCE, reason="valore di default")

        corrector = find_corrector(field)
        if corrector is not None:
            return corrector(field, value)
        if field in self.SPELLING_FIELDS:
            return correct_spelling(field, value)
        return None

    def correct_row(
        self,
        row: Dict[str, Any],
        entity_type: str,
        fields: Optional[List[str]] = None,
    ) -> Tuple[Dict[str, Any], List[Correction]]:
        """
        Corregge una riga e ritorna (riga corretta, correzioni applicate).
        
        Le correzioni sotto soglia e i no-op non modificano la riga.
        """
        corrected_row = dict(row)
        applied: List[Correction] = []
        for field in fields or [k for k in row.keys() if not k.startswith("_")]:
            correction = self.correct_value(field, row.get(field), entity_type)
            if correction is None or correction.noop:
                continue
            if correction.kind == CorrectionKind.DEFAULT_VALUE:
                # Default applicati solo su campi presenti nella riga
                if field not in row:
                    continue
            if self.is_applicable(correction, entity_type):
                correction.applied = True
                correction.row = row.get("_row")
                corrected_row[field] = correction.corrected
                applied.append(correction)
        return corrected_row, applied
