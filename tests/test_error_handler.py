"""
Test per ErrorHandler: severità, criticità e policy di continuazione.
"""
import pytest

from importer.error_handler import ErrorHandler
from importer.types import ErrorRecord, ErrorType, Severity


def _errors(count, message="Formato non uniforme", error_type=ErrorType.FORMAT, column="name"):
    return [ErrorRecord(row=i + 2, column=column, value="x", message=message, type=error_type) for i in range(count)]


@pytest.fixture
def handler():
    return ErrorHandler(critical_fields={"products": ("name", "sku")}, max_error_rate=0.20)


class TestSeverity:
    """Test per severity_of."""

    def test_system_is_critical(self, handler):
        error = ErrorRecord(0, "*", None, "Timeout database", ErrorType.SYSTEM)
        assert handler.severity_of(error) == Severity.CRITICAL

    def test_message_patterns(self, handler):
        """Test severità dal messaggio."""
        assert handler.severity_of(ErrorRecord(2, "name", None, "Campo obbligatorio")) == Severity.CRITICAL
        assert handler.severity_of(ErrorRecord(2, "sale_price", -1, "Prezzo negativo")) == Severity.HIGH
        assert handler.severity_of(ErrorRecord(2, "phone", "12", "Telefono troppo corto")) == Severity.LOW

    def test_fallback_on_type(self, handler):
        error = ErrorRecord(2, "tags", "a", "Valore strano", ErrorType.DUPLICATE)
        assert handler.severity_of(error) == Severity.LOW

    def test_filter_by_severity(self, handler):
        errors = [
            ErrorRecord(2, "phone", "12", "Telefono troppo corto"),
            ErrorRecord(3, "sale_price", -1, "Prezzo negativo"),
        ]
        high = handler.filter_by_severity(errors, Severity.HIGH)
        assert [e.row for e in high] == [3]


class TestCriticality:
    """Test per is_critical e is_blocking."""

    def test_reference_is_critical_not_blocking(self, handler):
        error = ErrorRecord(4, "product", "X", "Prodotto non trovato", ErrorType.REFERENCE)
        assert handler.is_critical(error, "products")
        assert not handler.is_blocking(error, "products")

    def test_critical_field(self, handler):
        error = ErrorRecord(4, "sku", "", "Valore vuoto", ErrorType.FORMAT)
        assert handler.is_critical(error, "products")
        assert not handler.is_critical(error, "suppliers")

    def test_structural_error_is_blocking(self, handler):
        error = ErrorRecord(0, "sku", None, "Colonna obbligatoria mancante: sku", ErrorType.VALIDATION)
        assert handler.is_blocking(error, "products")

    def test_system_error_is_blocking(self, handler):
        error = ErrorRecord(7, "*", None, "Batch fallito", ErrorType.SYSTEM)
        assert handler.is_blocking(error)


class TestContinuation:
    """Test per la soglia del tasso di errore."""

    def test_exactly_twenty_percent_continues(self, handler):
        """Test 20% esatto: si prosegue."""
        report = handler.analyze(_errors(10), total_records=50)
        assert report.error_rate == pytest.approx(0.20)
        assert report.can_continue is True

    def test_above_twenty_percent_stops(self, handler):
        """Test 20.01%: stop."""
        report = handler.analyze(_errors(2001), total_records=10000)
        assert report.error_rate == pytest.approx(0.2001)
        assert report.can_continue is False

    def test_no_partial_stops_on_any_error(self, handler):
        report = handler.analyze(_errors(1), total_records=100, allow_partial=False)
        assert report.can_continue is False

    def test_no_errors_always_continues(self, handler):
        report = handler.analyze([], total_records=0, allow_partial=False)
        assert report.can_continue is True
        assert report.error_rate == 0.0
        assert report.priority == "low"

    def test_blocking_error_stops(self, handler):
        errors = [ErrorRecord(0, "sku", None, "Colonna obbligatoria mancante: sku")]
        report = handler.analyze(errors, total_records=100, entity_type="products")
        assert report.blocking_errors == errors
        assert report.can_continue is False

    def test_row_critical_errors_do_not_block(self, handler):
        """Test 5 prezzi negativi su 50: critici di riga, si prosegue."""
        errors = [
            ErrorRecord(i, "sale_price", -5, "Prezzo di vendita non valido", ErrorType.VALIDATION)
            for i in range(2, 7)
        ]
        report = handler.analyze(errors, total_records=50, entity_type="products")
        assert len(report.critical_errors) == 5
        assert report.blocking_errors == []
        assert report.can_continue is True
        assert report.priority == "urgent"


class TestReport:
    """Test per suggerimenti, stime e riepiloghi."""

    def test_grouped_suggestion_after_three(self, handler):
        errors = _errors(3, message="Email non valida", error_type=ErrorType.VALIDATION, column="email")
        report = handler.analyze(errors, total_records=100)
        assert any("Colonna 'email'" in s for s in report.suggestions)

    def test_duplicate_and_reference_suggestions(self, handler):
        errors = [
            ErrorRecord(2, "sku", "A", "SKU già esistente", ErrorType.DUPLICATE),
            ErrorRecord(3, "product", "B", "Prodotto non trovato", ErrorType.REFERENCE),
        ]
        suggestions = handler.suggestions(errors)
        assert any("sovrascrivi" in s for s in suggestions)
        assert any("creazione automatica" in s for s in suggestions)

    def test_estimate_fix_minutes(self, handler):
        """Test stima: pochi errori +20%, tipi auto-correggibili dimezzati."""
        errors = [
            ErrorRecord(2, "phone", "1", "Telefono corto", ErrorType.FORMAT),
            ErrorRecord(3, "product", "X", "Prodotto non trovato", ErrorType.REFERENCE),
        ]
        # (0.5 * 0.5 + 2.0) * 1.2
        assert handler.estimate_fix_minutes(errors) == pytest.approx(2.7)
        assert handler.estimate_fix_minutes([]) == 0.0

    def test_summarize_and_group(self, handler):
        errors = [
            ErrorRecord(2, "name", "", "Campo obbligatorio"),
            ErrorRecord(2, "sku", "", "Campo obbligatorio"),
            ErrorRecord(5, "sku", "", "SKU duplicato", ErrorType.DUPLICATE),
        ]
        summary = handler.summarize(errors)
        assert summary["total"] == 3
        assert summary["rows_affected"] == 2
        assert summary["top_issues"][0] == {"message": "Campo obbligatorio", "count": 2}
        assert set(handler.group_by_row(errors)) == {2, 5}

    def test_report_to_dict(self, handler):
        report = handler.analyze(_errors(2), total_records=10)
        data = report.to_dict()
        assert data["total_errors"] == 2
        assert data["error_rate"] == 0.2
        assert isinstance(data["warnings"], list)
