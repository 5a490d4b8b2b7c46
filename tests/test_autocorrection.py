"""
Test per l'autocorrezione: correttori di formato, ortografia, soglie.
"""
import pytest

from importer.autocorrection import (
    AutocorrectionEngine,
    correct_code,
    correct_date,
    correct_email,
    correct_phone,
    correct_price,
    correct_quantity,
    correct_spelling,
    find_corrector,
    suggest_alternatives,
)
from importer.types import CorrectionKind


@pytest.fixture
def engine():
    return AutocorrectionEngine(
        min_confidence={"products": 70, "suppliers": 80, "movements": 75},
        defaults={"products": {"description": "Sin descripción"}},
    )


class TestFormatCorrectors:
    """Test per i correttori di formato."""

    def test_price_with_symbols(self):
        correction = correct_price("sale_price", "$1.234,50")
        assert correction.corrected == "1234.50"
        assert correction.confidence == 85
        assert correction.kind == CorrectionKind.FORMAT

    def test_negative_price_rejected(self):
        assert correct_price("sale_price", -5) is None
        assert correct_price("sale_price", "-3,00") is None
        assert correct_price("sale_price", "abc") is None

    def test_date_to_iso(self):
        assert correct_date("date", "25/12/2024").corrected == "2024-12-25"
        assert correct_date("date", "25-12-2024").corrected == "2024-12-25"
        assert correct_date("date", "ieri") is None

    def test_email_lowercased(self):
        correction = correct_email("email", " Ventas@Central.MX ")
        assert correction.corrected == "ventas@central.mx"
        assert correction.confidence == 75
        assert correct_email("email", "non-una-email") is None

    def test_phone_digits_only(self):
        assert correct_phone("phone", "(55) 1234-5678").corrected == "5512345678"
        assert correct_phone("phone", "12") is None

    def test_code_normalized(self):
        correction = correct_code("sku", " ab 12 ")
        assert correction.corrected == "AB12"
        assert correction.confidence == 95

    def test_quantity(self):
        assert correct_quantity("quantity", "10").corrected == 10
        assert correct_quantity("quantity", "-3") is None
        assert correct_quantity("quantity", "2.5") is None

    def test_corrector_dispatch_by_column(self):
        """Test unit_price è un prezzo, min_stock una quantità."""
        assert find_corrector("unit_price") is correct_price
        assert find_corrector("min_stock") is correct_quantity
        assert find_corrector("fecha") is correct_date
        assert find_corrector("tags") is None


class TestIdempotence:
    """Un valore già corretto ritorna se stesso con confidenza 100."""

    @pytest.mark.parametrize("corrector, column, value", [
        (correct_price, "sale_price", "$1.234,50"),
        (correct_date, "date", "25/12/2024"),
        (correct_email, "email", " Ventas@Central.MX "),
        (correct_phone, "phone", "(55) 1234-5678"),
        (correct_code, "sku", " ab 12 "),
        (correct_quantity, "quantity", "10"),
    ])
    def test_second_pass_is_noop(self, corrector, column, value):
        first = corrector(column, value)
        second = corrector(column, first.corrected)
        assert second.noop is True
        assert second.confidence == 100
        assert second.corrected == first.corrected

    def test_numeric_price_already_correct(self):
        correction = correct_price("sale_price", 12.5)
        assert correction.noop is True
        assert correction.confidence == 100


class TestSpelling:
    """Test per la correzione ortografica."""

    def test_common_misspelling(self):
        correction = correct_spelling("category", "electronico")
        assert correction.corrected == "electrónico"
        assert correction.confidence == 95

    def test_preserves_capitalization(self):
        assert correct_spelling("category", "Electronico").corrected == "Electrónico"

    def test_known_word_is_noop(self):
        correction = correct_spelling("unit", "unidad")
        assert correction.noop is True

    def test_suggestions_capped(self):
        suggestions = suggest_alternatives("category", "electronicos")
        assert "Electrónicos" in suggestions
        assert len(suggestions) <= 5
        assert suggest_alternatives("category", None) == []


class TestEngine:
    """Test per AutocorrectionEngine e le soglie per tipo entità."""

    def test_threshold_by_entity(self, engine):
        assert engine.threshold("products") == 70
        assert engine.threshold("suppliers") == 80
        assert engine.threshold("unknown") == 100

    def test_default_for_missing_value(self, engine):
        correction = engine.correct_value("description", None, "products")
        assert correction.corrected == "Sin descripción"
        assert correction.kind == CorrectionKind.DEFAULT_VALUE
        assert engine.correct_value("sku", None, "products") is None

    def test_correct_row_applies_only_above_threshold(self, engine):
        """Test prezzo (85) applicato, nome (60) no per i prodotti."""
        row = {"_row": 4, "name": "  tornillo   largo ", "sale_price": "$10,5", "description": ""}
        corrected, applied = engine.correct_row(row, "products")

        assert corrected["sale_price"] == "10.50"
        assert corrected["name"] == row["name"]
        assert corrected["description"] == "Sin descripción"
        assert {c.field for c in applied} == {"sale_price", "description"}
        assert all(c.applied and c.row == 4 for c in applied)

    def test_supplier_email_below_threshold(self, engine):
        """Test email (75) sotto la soglia fornitori (80)."""
        corrected, applied = engine.correct_row({"_row": 2, "email": "A@B.COM"}, "suppliers")
        assert corrected["email"] == "A@B.COM"
        assert applied == []

    def test_correct_row_skips_noop(self, engine):
        _, applied = engine.correct_row({"_row": 2, "sale_price": 12.5, "sku": "AB12"}, "products")
        assert applied == []
