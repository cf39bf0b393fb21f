"""
Tests for the model catalog.

Covers load-time invariants, alias remapping and both resolution paths.
"""

import json
from decimal import Decimal

import pytest

from mycelia_billing.config import ConfigurationError
from mycelia_billing.exceptions import (
    ModelNotFoundError,
    ModelTypeMismatchError,
    UnsupportedModelError,
)
from mycelia_billing.models.api import Capability, ModelType, Provider
from mycelia_billing.models.domain import ModelDescriptor, TokenPricing, UnitPricing
from mycelia_billing.services.model_catalog import (
    BUILTIN_MODELS,
    ModelCatalog,
    build_default_catalog,
    load_model_catalog,
    parse_catalog_document,
)


def text_model(model_id: str, is_default: bool = False) -> ModelDescriptor:
    provider = Provider(model_id.split("/", 1)[0])
    return ModelDescriptor(
        id=model_id,
        provider=provider,
        model_type=ModelType.TEXT,
        capabilities=frozenset({Capability.CHAT}),
        pricing=TokenPricing(Decimal("0.001"), Decimal("0.002")),
        display_name=model_id,
        is_default_for_type=is_default,
    )


def image_model(model_id: str, is_default: bool = False) -> ModelDescriptor:
    provider = Provider(model_id.split("/", 1)[0])
    return ModelDescriptor(
        id=model_id,
        provider=provider,
        model_type=ModelType.IMAGE,
        capabilities=frozenset({Capability.IMAGE}),
        pricing=UnitPricing(usd_per_unit=Decimal("0.04")),
        display_name=model_id,
        is_default_for_type=is_default,
    )


class TestCatalogInvariants:
    """Tests for load-time validation."""

    def test_every_model_type_resolves_a_default(self, catalog: ModelCatalog) -> None:
        """Each active model type has exactly one usable default."""
        for model_type in ModelType:
            default = catalog.default_for(model_type)
            assert default is not None
            assert default.model_type == model_type

    def test_builtin_defaults(self, catalog: ModelCatalog) -> None:
        assert catalog.default_for(ModelType.TEXT).id == "openai/gpt-4.1-mini"
        assert catalog.default_for(ModelType.IMAGE).id == "google/imagen-4.0-generate-001"

    def test_builtin_has_at_most_one_flagged_default_per_type(self) -> None:
        for model_type in ModelType:
            flagged = [
                m for m in BUILTIN_MODELS if m.model_type == model_type and m.is_default_for_type
            ]
            assert len(flagged) <= 1

    def test_two_defaults_for_one_type_rejected(self) -> None:
        """More than one flagged default is a configuration error."""
        with pytest.raises(ConfigurationError, match="More than one default text model"):
            ModelCatalog(
                [
                    text_model("openai/a", is_default=True),
                    text_model("openai/b", is_default=True),
                ]
            )

    def test_duplicate_ids_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="Duplicate model id"):
            ModelCatalog([text_model("openai/a"), text_model("openai/a")])

    def test_first_model_is_default_when_none_flagged(self) -> None:
        """A type with no flagged default falls back to its first model."""
        catalog = ModelCatalog([text_model("openai/a"), text_model("openai/b")])
        assert catalog.default_for(ModelType.TEXT).id == "openai/a"
        assert catalog.default_for(ModelType.IMAGE) is None

    def test_descriptor_id_must_be_namespaced(self) -> None:
        with pytest.raises(ValueError, match="openai/<model-name>"):
            text_model("openai/")
        with pytest.raises(ValueError):
            ModelDescriptor(
                id="gpt-4.1-mini",
                provider=Provider.OPENAI,
                model_type=ModelType.TEXT,
                capabilities=frozenset(),
                pricing=None,
                display_name="bad",
            )

    def test_provider_model_name_strips_namespace(self, catalog: ModelCatalog) -> None:
        descriptor = catalog.get("anthropic/claude-sonnet-4-5")
        assert descriptor is not None
        assert descriptor.provider_model_name == "claude-sonnet-4-5"


class TestResolve:
    """Tests for the lenient resolution path used by pricing."""

    def test_known_id(self, catalog: ModelCatalog) -> None:
        descriptor = catalog.resolve("google/gemini-2.5-pro", ModelType.TEXT)
        assert descriptor.id == "google/gemini-2.5-pro"
        assert descriptor.provider == Provider.GOOGLE

    @pytest.mark.parametrize("model_id", [None, "", "   ", "openai/not-a-real-model"])
    def test_missing_or_unknown_id_falls_back_to_default(
        self, catalog: ModelCatalog, model_id: str | None
    ) -> None:
        assert catalog.resolve(model_id, ModelType.TEXT).id == "openai/gpt-4.1-mini"

    @pytest.mark.parametrize(
        ("legacy_id", "canonical_id"),
        [
            ("google/gemini-1.5-flash", "google/gemini-2.5-flash"),
            ("google/gemini-flash-latest", "google/gemini-2.5-flash"),
            ("google/gemini-1.5-pro-latest", "google/gemini-2.5-pro"),
            ("anthropic/claude-4.5-haiku", "anthropic/claude-haiku-4-5"),
            ("anthropic/claude-4.5-sonnet", "anthropic/claude-sonnet-4-5"),
        ],
    )
    def test_legacy_aliases_remap(
        self, catalog: ModelCatalog, legacy_id: str, canonical_id: str
    ) -> None:
        assert catalog.resolve(legacy_id, ModelType.TEXT).id == canonical_id

    def test_whitespace_is_stripped(self, catalog: ModelCatalog) -> None:
        assert catalog.resolve("  openai/gpt-4.1-nano ", ModelType.TEXT).id == "openai/gpt-4.1-nano"

    def test_image_model_for_text_action_is_mismatch(self, catalog: ModelCatalog) -> None:
        with pytest.raises(ModelTypeMismatchError) as exc_info:
            catalog.resolve("openai/gpt-image-1", ModelType.TEXT)

        assert exc_info.value.expected_type == ModelType.TEXT
        assert exc_info.value.actual_type == ModelType.IMAGE
        assert isinstance(exc_info.value, UnsupportedModelError)

    def test_no_default_for_type_raises_not_found(self) -> None:
        catalog = ModelCatalog([text_model("openai/a")])
        with pytest.raises(ModelNotFoundError):
            catalog.resolve(None, ModelType.IMAGE)


class TestRequire:
    """Tests for the strict resolution path used by the router."""

    def test_unknown_id_raises(self, catalog: ModelCatalog) -> None:
        with pytest.raises(ModelNotFoundError) as exc_info:
            catalog.require("openai/not-a-real-model", ModelType.TEXT)
        assert exc_info.value.model_id == "openai/not-a-real-model"

    def test_blank_id_selects_default(self, catalog: ModelCatalog) -> None:
        assert catalog.require("", ModelType.IMAGE).id == "google/imagen-4.0-generate-001"
        assert catalog.require(None, ModelType.TEXT).id == "openai/gpt-4.1-mini"

    def test_alias_accepted(self, catalog: ModelCatalog) -> None:
        resolved = catalog.require("google/gemini-1.5-pro", ModelType.TEXT)
        assert resolved.id == "google/gemini-2.5-pro"

    def test_text_model_for_image_action_is_mismatch(self, catalog: ModelCatalog) -> None:
        with pytest.raises(ModelTypeMismatchError):
            catalog.require("openai/gpt-4.1-mini", ModelType.IMAGE)


class TestPresetDefaults:
    """Tests for image preset defaults."""

    @pytest.mark.parametrize(
        ("preset", "model_id"),
        [
            ("standard", "google/imagen-4.0-fast-generate-001"),
            ("balanced", "google/imagen-4.0-generate-001"),
            ("high-detail", "google/imagen-4.0-ultra-generate-001"),
            ("unknown", None),
            (None, None),
        ],
    )
    def test_preset_default(self, catalog: ModelCatalog, preset: str | None, model_id: str) -> None:
        assert catalog.preset_default(preset) == model_id

    def test_preset_defaults_exist_in_catalog(self, catalog: ModelCatalog) -> None:
        for preset in ("standard", "balanced", "high-detail"):
            model_id = catalog.preset_default(preset)
            descriptor = catalog.get(model_id)
            assert descriptor is not None
            assert descriptor.model_type == ModelType.IMAGE


class TestCatalogDocument:
    """Tests for the MODEL_CATALOG_JSON override."""

    def test_parse_document(self) -> None:
        document = json.dumps(
            {
                "models": [
                    {
                        "id": "anthropic/claude-haiku-4-5",
                        "provider": "anthropic",
                        "model_type": "text",
                        "capabilities": ["chat", "graph"],
                        "is_default_for_type": True,
                        "pricing": {"input_usd_per_1k": 0.001, "output_usd_per_1k": 0.005},
                    },
                    {
                        "id": "openai/gpt-image-1",
                        "provider": "openai",
                        "model_type": "image",
                        "capabilities": ["image"],
                        "pricing": {"usd_per_unit_by_quality": {"low": 0.011, "high": 0.17}},
                    },
                ]
            }
        )

        catalog = parse_catalog_document(document)

        text_default = catalog.default_for(ModelType.TEXT)
        assert text_default.id == "anthropic/claude-haiku-4-5"
        assert text_default.display_name == "anthropic/claude-haiku-4-5"
        assert text_default.pricing == TokenPricing(Decimal("0.001"), Decimal("0.005"))

        image_default = catalog.default_for(ModelType.IMAGE)
        assert image_default.id == "openai/gpt-image-1"
        assert image_default.pricing.price_for("high") == Decimal("0.17")

        # Built-in aliases still apply when the document has none
        assert catalog.normalize_id("anthropic/claude-4.5-haiku") == "anthropic/claude-haiku-4-5"

    @pytest.mark.parametrize(
        "document",
        [
            "not json",
            json.dumps({"nodels": []}),
            json.dumps({"models": [{"id": "x/y", "provider": "x", "model_type": "text"}]}),
            json.dumps(
                {"models": [{"id": "openai/a", "provider": "openai", "model_type": "audio"}]}
            ),
        ],
    )
    def test_malformed_document_is_configuration_error(self, document: str) -> None:
        with pytest.raises(ConfigurationError, match="MODEL_CATALOG_JSON"):
            parse_catalog_document(document)

    def test_load_uses_builtin_without_override(self) -> None:
        from mycelia_billing.config import settings

        catalog = load_model_catalog(settings.model_copy(update={"model_catalog_json": ""}))
        assert len(catalog.models) == len(build_default_catalog().models)
