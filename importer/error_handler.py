"""
Error handler - tassonomia errori, severità e policy di continuazione.

Trasforma una lista piatta di errori di validazione in un report con
suggerimenti e decide se l'import può proseguire.
"""
import logging
import re
from collections import Counter, defaultdict
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from importer.types import ErrorRecord, ErrorReport, ErrorType, Severity

logger = logging.getLogger(__name__)

# (pattern messaggio, severità, etichetta)
SEVERITY_PATTERNS: List[Tuple[re.Pattern, Severity, str]] = [
    (re.compile(r"(obbligatori|required|requerid)", re.I), Severity.CRITICAL, "required_field"),
    (re.compile(r"email.*(non valid|invalid|inválid)|(non valid|invalid|inválid).*email", re.I), Severity.MEDIUM, "email_invalid"),
    (re.compile(r"prezzo|price|precio", re.I), Severity.HIGH, "price_invalid"),
    (re.compile(r"duplicat|ya existe|già esist|already exists", re.I), Severity.MEDIUM, "duplicate_found"),
    (re.compile(r"non trovat|not found|no encontrad|inesistent", re.I), Severity.HIGH, "reference_not_found"),
    (re.compile(r"data|date|fecha", re.I), Severity.MEDIUM, "date_invalid"),
    (re.compile(r"stock|quantit|cantidad|quantity", re.I), Severity.HIGH, "quantity_invalid"),
    (re.compile(r"telefono|phone|teléfono", re.I), Severity.LOW, "phone_invalid"),
]

TYPE_SEVERITY: Dict[ErrorType, Severity] = {
    ErrorType.SYSTEM: Severity.CRITICAL,
    ErrorType.REFERENCE: Severity.HIGH,
    ErrorType.VALIDATION: Severity.MEDIUM,
    ErrorType.DUPLICATE: Severity.LOW,
    ErrorType.FORMAT: Severity.LOW,
}

CRITICAL_TYPES = (ErrorType.SYSTEM, ErrorType.REFERENCE)
CRITICAL_MESSAGE_TOKENS = (
    "required", "invalid",
    "requerido", "inválido", "invalido",
    "obbligatori", "non valid",
)

# Minuti stimati per errore
MINUTES_BY_SEVERITY: Dict[Severity, float] = {
    Severity.LOW: 0.5,
    Severity.MEDIUM: 1.0,
    Severity.HIGH: 2.0,
    Severity.CRITICAL: 5.0,
}
AUTO_FIXABLE_TYPES = (ErrorType.FORMAT, ErrorType.VALIDATION)
AUTO_FIX_FACTOR = 0.5

_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2, Severity.CRITICAL: 3}

_TYPE_HINTS: Dict[ErrorType, str] = {
    ErrorType.VALIDATION: "verifica formato e valori ammessi",
    ErrorType.DUPLICATE: "rimuovi i duplicati o abilita la sovrascrittura",
    ErrorType.REFERENCE: "crea prima le entità referenziate o abilita la creazione automatica",
    ErrorType.FORMAT: "uniforma il formato dei valori",
    ErrorType.SYSTEM: "riprova più tardi o contatta il supporto",
}


class ErrorHandler:
    """
    Classifica errori, calcola severità e decide la continuazione.
    
    Tasso errori = error_count / total_records (0 se total_records == 0).
    Si prosegue solo se allow_partial, nessun errore critico bloccante
    (sistema o strutturale) e tasso <= max_error_rate. Gli errori critici
    di riga escludono la riga ma non fermano l'import.
    """

    def __init__(
        self,
        critical_fields: Optional[Dict[str, Sequence[str]]] = None,
        max_error_rate: float = 0.20,
    ):
        self.critical_fields = {k: tuple(v) for k, v in (critical_fields or {}).items()}
        self.max_error_rate = max_error_rate

    @classmethod
    def from_profiles(cls, profiles, max_error_rate: float = 0.20) -> "ErrorHandler":
        return cls(
            critical_fields={et.value: p.critical_fields for et, p in profiles.items()},
            max_error_rate=max_error_rate,
        )

    def severity_of(self, error: ErrorRecord) -> Severity:
        """Severità dal messaggio, con fallback sul tipo."""
        if error.type == ErrorType.SYSTEM:
            return Severity.CRITICAL
        for pattern, severity, _label in SEVERITY_PATTERNS:
            if pattern.search(error.message or ""):
                return severity
        return TYPE_SEVERITY.get(error.type, Severity.MEDIUM)

    def pattern_label(self, error: ErrorRecord) -> Optional[str]:
        for pattern, _severity, label in SEVERITY_PATTERNS:
            if pattern.search(error.message or ""):
                return label
        return None

    def is_critical(self, error: ErrorRecord, entity_type: Optional[str] = None) -> bool:
        if error.type in CRITICAL_TYPES:
            return True
        fields = self.critical_fields.get(entity_type or "", ())
        if error.column in fields:
            return True
        message = (error.message or "").lower()
        if any(token in message for token in CRITICAL_MESSAGE_TOKENS):
            return True
        return self.severity_of(error) == Severity.CRITICAL

    def is_blocking(self, error: ErrorRecord, entity_type: Optional[str] = None) -> bool:
        """
        Errore critico non isolabile in una riga: blocca l'intero import.

        Gli errori critici di riga escludono solo la propria riga.
        """
        if not self.is_critical(error, entity_type):
            return False
        return error.type == ErrorType.SYSTEM or error.row <= 0

    def error_rate(self, error_count: int, total_records: int) -> float:
        if total_records <= 0:
            return 0.0
        return error_count / total_records

    def can_continue(
        self,
        error_count: int,
        total_records: int,
        blocking_count: int,
        allow_partial: bool = True,
    ) -> bool:
        if error_count == 0:
            return True
        if not allow_partial:
            return False
        if blocking_count > 0:
            return False
        return self.error_rate(error_count, total_records) <= self.max_error_rate

    def analyze(
        self,
        errors: Sequence[ErrorRecord],
        total_records: int,
        entity_type: Optional[str] = None,
        allow_partial: bool = True,
    ) -> ErrorReport:
        """
        Costruisce l'ErrorReport per una lista di errori.
        
        Args:
            errors: Errori prodotti dalla validazione
            total_records: Righe totali dell'import
            entity_type: products, suppliers, movements
            allow_partial: Il chiamante accetta import parziali
        
        Returns:
            ErrorReport con conteggi, partizione critici/warning,
            suggerimenti, verdetto, tempo stimato e priorità
        """
        report = ErrorReport(total_errors=len(errors), total_records=total_records)
        report.error_rate = self.error_rate(len(errors), total_records)

        by_type: Counter = Counter()
        by_column: Counter = Counter()
        by_severity: Counter = Counter()
        severities: List[Severity] = []

        for error in errors:
            severity = self.severity_of(error)
            severities.append(severity)
            by_type[error.type.value] += 1
            by_column[error.column] += 1
            by_severity[severity.value] += 1
            if self.is_critical(error, entity_type):
                report.critical_errors.append(error)
                if self.is_blocking(error, entity_type):
                    report.blocking_errors.append(error)
            else:
                report.warnings.append(error)

        report.by_type = dict(by_type)
        report.by_column = dict(by_column)
        report.by_severity = dict(by_severity)
        report.can_continue = self.can_continue(
            len(errors), total_records, len(report.blocking_errors), allow_partial
        )
        report.suggestions = self.suggestions(errors)
        report.estimated_fix_minutes = self.estimate_fix_minutes(errors, severities)
        report.priority = self.priority(report, severities)

        logger.info(
            f"[ERROR_HANDLER] Analisi: {len(errors)} errori su {total_records} righe "
            f"(critici={len(report.critical_errors)}, rate={report.error_rate:.2%}, "
            f"continue={report.can_continue})"
        )
        return report

    def suggestions(self, errors: Sequence[ErrorRecord]) -> List[str]:
        """Suggerimenti consolidati per colonna+tipo e euristiche generali."""
        suggestions: List[str] = []
        grouped: Counter = Counter((e.column, e.type) for e in errors)
        for (column, error_type), count in grouped.most_common():
            if count > 2:
                hint = _TYPE_HINTS.get(error_type, "verifica i dati")
                suggestions.append(
                    f"Colonna '{column}': {count} errori di tipo {error_type.value} - {hint}"
                )

        types = {e.type for e in errors}
        if len(errors) > 100:
            suggestions.append("Molti errori: dividi il file in parti più piccole o usa batch ridotti")
        if ErrorType.DUPLICATE in types:
            suggestions.append("Sono presenti duplicati: abilita 'sovrascrivi esistenti' per aggiornarli")
        if ErrorType.REFERENCE in types:
            suggestions.append("Riferimenti mancanti: abilita la creazione automatica delle entità")
        if ErrorType.SYSTEM in types:
            suggestions.append("Errori di sistema: riprova l'importazione più tardi")
        if any(self.severity_of(e) == Severity.CRITICAL for e in errors):
            suggestions.append("Correggi gli errori critici prima di riprovare")
        return suggestions

    def estimate_fix_minutes(
        self,
        errors: Sequence[ErrorRecord],
        severities: Optional[Sequence[Severity]] = None,
    ) -> float:
        if not errors:
            return 0.0
        if severities is None:
            severities = [self.severity_of(e) for e in errors]
        total = 0.0
        for error, severity in zip(errors, severities):
            minutes = MINUTES_BY_SEVERITY[severity]
            if error.type in AUTO_FIXABLE_TYPES:
                minutes *= AUTO_FIX_FACTOR
            total += minutes
        if len(errors) > 100:
            total *= 0.8
        elif len(errors) < 10:
            total *= 1.2
        return round(total, 2)

    def priority(self, report: ErrorReport, severities: Sequence[Severity]) -> str:
        if report.critical_errors:
            return "urgent"
        if report.error_rate > 0.10:
            return "high"
        if any(s == Severity.HIGH for s in severities):
            return "medium"
        return "low"

    def summarize(self, errors: Sequence[ErrorRecord], top: int = 5) -> Dict[str, object]:
        """Riepilogo con i messaggi più frequenti."""
        messages = Counter(e.message for e in errors)
        return {
            "total": len(errors),
            "by_type": dict(Counter(e.type.value for e in errors)),
            "rows_affected": len({e.row for e in errors}),
            "top_issues": [
                {"message": message, "count": count}
                for message, count in messages.most_common(top)
            ],
        }

    @staticmethod
    def group_by_row(errors: Iterable[ErrorRecord]) -> Dict[int, List[ErrorRecord]]:
        grouped: Dict[int, List[ErrorRecord]] = defaultdict(list)
        for error in errors:
            grouped[error.row].append(error)
        return dict(grouped)

    def filter_by_severity(
        self,
        errors: Iterable[ErrorRecord],
        minimum: Severity,
    ) -> List[ErrorRecord]:
        """Errori con severità >= minimum."""
        threshold = _SEVERITY_RANK[minimum]
        return [e for e in errors if _SEVERITY_RANK[self.severity_of(e)] >= threshold]
