"""
Test per RowValidator: modelli riga, duplicati e riferimenti.
"""
import pytest

from core.errors import CachePopulationError
from importer.types import EntityType, ErrorType, ImportOptions
from importer.validation import RowValidator, lookup_reference
from importer.validation_cache import ValidationCache, build_lookup_map
from tests.mocks import FakeReferenceSource


def _rows(*rows):
    return [{"_row": i + 2, **row} for i, row in enumerate(rows)]


@pytest.fixture
def source():
    return FakeReferenceSource({
        (1, "products"): [{"id": 7, "name": "Tornillo 5mm", "sku": "TOR-5"}],
        (1, "suppliers"): [{"id": 3, "name": "Acme", "email": "ventas@acme.mx"}],
    })


@pytest.fixture
def validator(source):
    return RowValidator(ValidationCache(source))


class TestProducts:
    """Test validazione prodotti."""

    @pytest.mark.asyncio
    async def test_valid_rows(self, validator):
        rows = _rows(
            {"name": "Martillo", "sku": "MAR-1", "stock": "4", "sale_price": "$10,50"},
            {"name": "Clavo", "stock": 0},
        )
        result = await validator.validate(rows, EntityType.PRODUCTS, 1, ImportOptions())

        assert result.errors == []
        assert set(result.valid) == {2, 3}
        assert result.valid[2]["sale_price"] == 10.5
        assert result.valid[2]["stock"] == 4

    @pytest.mark.asyncio
    async def test_negative_price(self, validator):
        rows = _rows({"name": "Martillo", "sale_price": -5})
        result = await validator.validate(rows, EntityType.PRODUCTS, 1, ImportOptions())

        error = result.errors[0]
        assert error.row == 2
        assert error.column == "sale_price"
        assert error.type == ErrorType.VALIDATION
        assert error.message == "Prezzo non valido: deve essere >= 0"
        assert result.invalid_rows == {2}

    @pytest.mark.asyncio
    async def test_missing_name(self, validator):
        rows = _rows({"sku": "X-1"}, {"name": "", "sku": "X-2"})
        result = await validator.validate(rows, EntityType.PRODUCTS, 1, ImportOptions())

        messages = [e.message for e in result.errors]
        assert messages == ["Campo obbligatorio mancante: name"] * 2

    @pytest.mark.asyncio
    async def test_duplicate_in_file(self, validator):
        rows = _rows({"name": "Martillo", "sku": "MAR-1"}, {"name": "Martillo grande", "sku": "mar-1"})
        result = await validator.validate(rows, EntityType.PRODUCTS, 1, ImportOptions())

        assert list(result.valid) == [2]
        error = result.errors[0]
        assert error.type == ErrorType.DUPLICATE
        assert "riga 2" in error.message

    @pytest.mark.asyncio
    async def test_existing_record(self, validator):
        rows = _rows({"name": "tornillo 5MM"})
        result = await validator.validate(rows, EntityType.PRODUCTS, 1, ImportOptions())
        assert result.errors[0].type == ErrorType.DUPLICATE
        assert "già esistente" in result.errors[0].message

    @pytest.mark.asyncio
    async def test_existing_record_overwrite(self, validator):
        rows = _rows({"name": "Tornillo M5", "sku": "TOR-5"})
        result = await validator.validate(rows, EntityType.PRODUCTS, 1, ImportOptions(overwrite_existing=True))
        assert result.errors == []
        assert result.existing[2]["id"] == 7

    @pytest.mark.asyncio
    async def test_cache_error_propagates(self, source, validator):
        source.fail = True
        with pytest.raises(CachePopulationError):
            await validator.validate(_rows({"name": "x"}), EntityType.PRODUCTS, 1, ImportOptions())


class TestSuppliers:
    """Test validazione fornitori."""

    @pytest.mark.asyncio
    async def test_invalid_email_is_format_error(self, validator):
        rows = _rows({"name": "Beta", "email": "beta-at-mail"})
        result = await validator.validate(rows, EntityType.SUPPLIERS, 1, ImportOptions())
        error = result.errors[0]
        assert error.column == "email"
        assert error.type == ErrorType.FORMAT
        assert error.value == "beta-at-mail"

    @pytest.mark.asyncio
    async def test_duplicate_email_existing(self, validator):
        rows = _rows({"name": "Acme Nuevo", "email": "VENTAS@acme.mx"})
        result = await validator.validate(rows, EntityType.SUPPLIERS, 1, ImportOptions())
        assert result.errors[0].column == "email"
        assert result.errors[0].type == ErrorType.DUPLICATE


class TestMovements:
    """Test validazione movimenti."""

    @pytest.mark.asyncio
    async def test_known_product(self, validator):
        rows = _rows({"product": "TOR-5", "type": "salida", "quantity": "2"})
        result = await validator.validate(rows, EntityType.MOVEMENTS, 1, ImportOptions())
        assert result.valid[2]["type"] == "SALIDA"
        assert result.pending_products == {}

    @pytest.mark.asyncio
    async def test_unknown_product_pending(self, validator):
        rows = _rows({"product": "Martillo", "type": "entrada", "quantity": 3})
        result = await validator.validate(rows, EntityType.MOVEMENTS, 1, ImportOptions())
        assert result.pending_products == {2: "Martillo"}
        assert 2 in result.valid

    @pytest.mark.asyncio
    async def test_unknown_product_without_auto_create(self, validator):
        rows = _rows({"product": "Martillo", "type": "entrada", "quantity": 3})
        options = ImportOptions(auto_create_products=False)
        result = await validator.validate(rows, EntityType.MOVEMENTS, 1, options)
        assert result.errors[0].type == ErrorType.REFERENCE
        assert result.valid == {}

    @pytest.mark.asyncio
    async def test_invalid_type_and_quantity(self, validator):
        rows = _rows({"product": "TOR-5", "type": "prestito", "quantity": 0})
        result = await validator.validate(rows, EntityType.MOVEMENTS, 1, ImportOptions())
        columns = {e.column for e in result.errors}
        assert columns == {"type", "quantity"}


class TestLookupReference:
    """Test per lookup_reference."""

    def test_lookup_by_name_code_and_id(self):
        lookup = build_lookup_map([{"id": 7, "name": "Tornillo", "sku": "TOR-5"}], "products")
        assert lookup_reference(lookup, "TORNILLO")["id"] == 7
        assert lookup_reference(lookup, "tor-5")["id"] == 7
        assert lookup_reference(lookup, 7)["id"] == 7
        assert lookup_reference(lookup, None) is None
