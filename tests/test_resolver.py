"""
Test per SmartResolver: azioni di risoluzione e creazione automatica.
"""
import asyncio

import pytest

from core.config import ImporterConfig
from importer.autocorrection import AutocorrectionEngine
from importer.error_handler import ErrorHandler
from importer.profiles import build_profiles
from importer.resolver import PlaceholderPolicy, ResolutionResult, ResolvedError, SmartResolver
from importer.types import CorrectionKind, ErrorRecord, ErrorType, ResolutionAction
from importer.validation_cache import ValidationCache, build_lookup_map
from tests.mocks import InMemoryInventoryStore

REQUIRED = {
    "products": ("name",),
    "suppliers": ("name",),
    "movements": ("product", "type", "quantity"),
}


@pytest.fixture
def resolver():
    engine = AutocorrectionEngine({"products": 70, "suppliers": 80, "movements": 75})
    return SmartResolver(engine, ErrorHandler(), required_fields=REQUIRED)


@pytest.fixture
def store():
    store = InMemoryInventoryStore()
    store.seed_product(1, name="Tornillo 5mm", sku="TOR-5", stock=20)
    return store


@pytest.fixture
def store_resolver(store):
    engine = AutocorrectionEngine({"movements": 75})
    cache = ValidationCache(store)
    return SmartResolver(engine, ErrorHandler(), required_fields=REQUIRED, store=store, cache=cache)


def _action(result: ResolutionResult, row: int) -> ResolvedError:
    for resolved in result.resolved + result.unresolved:
        if resolved.error.row == row:
            return resolved
    raise AssertionError(f"riga {row} non presente")


class TestResolveActions:
    """Test per le azioni di risoluzione per errore."""

    def test_system_and_duplicate_need_intervention(self, resolver):
        errors = [
            ErrorRecord(2, "*", None, "Batch fallito", ErrorType.SYSTEM),
            ErrorRecord(3, "sku", "A", "Valore duplicato nel file", ErrorType.DUPLICATE),
        ]
        result = resolver.resolve(errors, "products")
        assert result.resolved == []
        assert all(r.action == ResolutionAction.NEEDS_INTERVENTION for r in result.unresolved)
        assert result.remaining_errors == errors

    def test_missing_required_field(self, resolver):
        error = ErrorRecord(2, "name", None, "Campo obbligatorio mancante: name")
        result = resolver.resolve([error], "products")
        resolved = result.unresolved[0]
        assert resolved.action == ResolutionAction.NEEDS_INTERVENTION
        assert "nome" in resolved.suggestions[0]

    def test_correction_above_threshold(self, resolver):
        """Test email (75) corretta per prodotti (soglia 70)."""
        error = ErrorRecord(2, "email", " A@B.COM ", "Email non valida", ErrorType.FORMAT)
        result = resolver.resolve([error], "products")
        resolved = result.resolved[0]
        assert resolved.action == ResolutionAction.CORRECTED
        assert resolved.corrected_value == "a@b.com"
        assert result.corrections[0].applied is True
        assert result.corrections[0].row == 2

    def test_correction_below_threshold_is_suggested(self, resolver):
        """Test email (75) solo suggerita per fornitori (soglia 80)."""
        error = ErrorRecord(2, "email", " A@B.COM ", "Email non valida", ErrorType.FORMAT)
        result = resolver.resolve([error], "suppliers")
        resolved = result.unresolved[0]
        assert resolved.action == ResolutionAction.SUGGESTED
        assert resolved.suggestions == ["a@b.com"]
        assert result.corrections == []

    def test_movement_type_fuzzy(self, resolver):
        error = ErrorRecord(2, "type", "entrda", "Tipo movimento non valido: entrda")
        result = resolver.resolve([error], "movements")
        resolved = result.resolved[0]
        assert resolved.action == ResolutionAction.CORRECTED
        assert resolved.corrected_value == "ENTRADA"
        assert resolved.correction.kind == CorrectionKind.VALIDATION

    def test_low_severity_optional_field_ignored(self, resolver):
        error = ErrorRecord(2, "phone", "12", "Telefono non valido: 12", ErrorType.FORMAT)
        result = resolver.resolve([error], "suppliers")
        assert result.resolved[0].action == ResolutionAction.IGNORED

    def test_uses_current_row_value(self, resolver):
        """Test valore letto dalla riga nel contesto."""
        error = ErrorRecord(5, "sale_price", None, "Prezzo non valido")
        context = {"rows": {5: {"sale_price": "$7,5"}}}
        result = resolver.resolve([error], "products", context)
        assert result.resolved[0].corrected_value == "7.50"

    def test_negative_price_needs_intervention(self, resolver):
        error = ErrorRecord(3, "sale_price", -5, "Prezzo non valido: deve essere >= 0")
        result = resolver.resolve([error], "products")
        assert result.unresolved[0].action == ResolutionAction.NEEDS_INTERVENTION


class TestDefaultSubstitution:
    """Test per la sostituzione con i default del tipo entità."""

    @pytest.fixture
    def profile_resolver(self):
        profiles = build_profiles(ImporterConfig())
        return SmartResolver(AutocorrectionEngine.from_profiles(profiles), ErrorHandler(), required_fields=REQUIRED)

    def test_malformed_email_gets_default(self, profile_resolver):
        error = ErrorRecord(2, "email", "not-an-email", "Email non valida: not-an-email", ErrorType.FORMAT)
        result = profile_resolver.resolve([error], "suppliers")
        resolved = result.resolved[0]
        assert resolved.action == ResolutionAction.CORRECTED
        assert resolved.corrected_value == "sin-email@empresa.com"
        assert resolved.confidence == 90
        assert resolved.correction.kind == CorrectionKind.DEFAULT_VALUE

    def test_malformed_phone_gets_default(self, profile_resolver):
        error = ErrorRecord(3, "phone", "12", "Telefono non valido: 12", ErrorType.FORMAT)
        result = profile_resolver.resolve([error], "suppliers")
        assert result.resolved[0].corrected_value == "Sin teléfono"

    def test_rule_violation_keeps_error(self, profile_resolver):
        error = ErrorRecord(3, "sale_price", -5, "Prezzo non valido: deve essere >= 0")
        result = profile_resolver.resolve([error], "products")
        assert result.unresolved[0].action == ResolutionAction.NEEDS_INTERVENTION


class TestReferences:
    """Test per gli errori di riferimento."""

    REFERENCES = build_lookup_map([
        {"id": 1, "name": "Tornillo 5mm"},
        {"id": 2, "name": "Tuerca 5mm"},
    ], "products")

    def test_fuzzy_match_corrected(self, resolver):
        error = ErrorRecord(2, "product", "tornillo 5mm acero", "Prodotto non trovato", ErrorType.REFERENCE)
        result = resolver.resolve([error], "movements", {"references": self.REFERENCES})
        resolved = result.resolved[0]
        assert resolved.action == ResolutionAction.CORRECTED
        assert resolved.corrected_value == "Tornillo 5mm"

    def test_auto_create_marks_corrected(self, resolver):
        error = ErrorRecord(2, "product", "Martillo", "Prodotto non trovato", ErrorType.REFERENCE)
        context = {"references": self.REFERENCES, "auto_create_products": True}
        result = resolver.resolve([error], "movements", context)
        assert result.resolved[0].corrected_value == "Martillo"

    def test_without_auto_create_needs_intervention(self, resolver):
        error = ErrorRecord(2, "product", "Martillo", "Prodotto non trovato", ErrorType.REFERENCE)
        result = resolver.resolve([error], "movements", {"references": self.REFERENCES})
        resolved = result.unresolved[0]
        assert resolved.action == ResolutionAction.NEEDS_INTERVENTION
        assert set(resolved.suggestions) <= {"Tornillo 5mm", "Tuerca 5mm"}

    def test_fuzzy_reference_cutoff(self):
        assert SmartResolver.fuzzy_reference(self.REFERENCES, "martillo") is None
        assert SmartResolver.fuzzy_reference({}, "tornillo") is None
        record, score = SmartResolver.fuzzy_reference(self.REFERENCES, "TORNILLO 5MM")
        assert record["id"] == 1
        assert score == 100


class TestApplyCorrections:
    """Test per apply_corrections e correction_report."""

    def test_apply_and_report(self, resolver):
        rows = {
            2: {"_row": 2, "email": " A@B.COM ", "phone": "12"},
        }
        errors = [
            ErrorRecord(2, "email", " A@B.COM ", "Email non valida", ErrorType.FORMAT),
            ErrorRecord(2, "phone", "12", "Telefono non valido: 12", ErrorType.FORMAT),
        ]
        result = resolver.resolve(errors, "products", {"rows": rows})
        touched = SmartResolver.apply_corrections(rows, result)

        assert touched == [2]
        assert rows[2]["email"] == "a@b.com"
        assert rows[2]["phone"] is None

        report = SmartResolver.correction_report(result.corrections)
        assert report["total"] == 1
        assert report["by_kind"] == {"format": 1}
        assert report["top_fields"] == [{"field": "email", "count": 1}]
        assert report["average_confidence"] == 75.0

    def test_empty_report(self):
        assert SmartResolver.correction_report([])["total"] == 0


class TestPlaceholders:
    """Test per la policy placeholder."""

    def test_product_data(self):
        policy = PlaceholderPolicy()
        data = policy.product_data("Martillo de acero")
        assert data["auto_created"] is True
        assert data["sku"].startswith("PROD-MARTILLOD-")
        assert data["min_stock"] == 10
        assert data["tags"] == ["AUTO-CREADO", "IMPORTACION"]

    def test_supplier_email_unique_per_name(self):
        policy = PlaceholderPolicy()
        assert policy.supplier_email("Acme Corp") == "sin-email+acme-corp@placeholder.local"
        assert policy.supplier_email("Acme Corp") != policy.supplier_email("Beta")

    def test_from_config(self, config):
        policy = PlaceholderPolicy.from_config(config)
        assert policy.sku_prefix == config.placeholder_sku_prefix
        assert list(policy.tags) == config.get_placeholder_tags_list()


class TestEnsureEntities:
    """Test per la creazione automatica di prodotti e fornitori."""

    @pytest.mark.asyncio
    async def test_existing_product_found_in_cache(self, store_resolver, store):
        product, created = await store_resolver.ensure_product(1, "tor-5")
        assert created is False
        assert product["name"] == "Tornillo 5mm"
        assert "create_product" not in store.calls

    @pytest.mark.asyncio
    async def test_missing_product_created(self, store_resolver, store):
        await store_resolver.cache.get(1, "products")
        product, created = await store_resolver.ensure_product(1, "Martillo")

        assert created is True
        assert product["auto_created"] is True
        assert product["stock"] == 0
        assert "products:1" not in store_resolver.cache

    @pytest.mark.asyncio
    async def test_no_auto_create(self, store_resolver, store):
        product, created = await store_resolver.ensure_product(1, "Martillo", auto_create=False)
        assert product is None
        assert created is False

    @pytest.mark.asyncio
    async def test_concurrent_creation_once(self, store_resolver, store):
        """Test richieste concorrenti per lo stesso prodotto: una sola creazione."""
        results = await asyncio.gather(*[store_resolver.ensure_product(1, "Martillo") for _ in range(5)])

        assert store.calls["create_product"] == 1
        assert sum(1 for _, created in results if created) == 1
        assert len({p["id"] for p, _ in results}) == 1

    @pytest.mark.asyncio
    async def test_auto_create_limit(self, store):
        policy = PlaceholderPolicy(max_auto_products=1)
        resolver = SmartResolver(AutocorrectionEngine({}), ErrorHandler(), store=store, placeholders=policy)
        with pytest.raises(RuntimeError):
            await resolver.ensure_product(1, "Martillo")

    @pytest.mark.asyncio
    async def test_supplier_created_with_placeholders(self, store_resolver, store):
        supplier, created = await store_resolver.ensure_supplier(1, "Acme Corp")
        again, created_again = await store_resolver.ensure_supplier(1, "acme corp")

        assert created is True
        assert created_again is False
        assert supplier["email"] == "sin-email+acme-corp@placeholder.local"
        assert again["id"] == supplier["id"]
