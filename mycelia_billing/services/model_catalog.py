"""
Model Catalog - Immutable registry of AI models and their pricing.

Built once at startup and injected into the cost estimator and the model
router. Never mutated after construction.
"""

import json
from collections.abc import Iterable, Mapping
from decimal import Decimal
from types import MappingProxyType
from typing import Any

from structlog import get_logger

from mycelia_billing.config import ConfigurationError, Settings
from mycelia_billing.exceptions import ModelNotFoundError, ModelTypeMismatchError
from mycelia_billing.models.api import Capability, ModelType, Provider
from mycelia_billing.models.domain import ModelDescriptor, Pricing, TokenPricing, UnitPricing

logger = get_logger(__name__)

TEXT_CAPABILITIES = frozenset({Capability.CHAT, Capability.GRAPH})
IMAGE_CAPABILITIES = frozenset({Capability.IMAGE})

# Ids retired by providers or used by older clients
LEGACY_MODEL_ALIASES: Mapping[str, str] = MappingProxyType(
    {
        "google/gemini-1.5-flash": "google/gemini-2.5-flash",
        "google/gemini-1.5-flash-latest": "google/gemini-2.5-flash",
        "google/gemini-flash-latest": "google/gemini-2.5-flash",
        "google/gemini-1.5-pro": "google/gemini-2.5-pro",
        "google/gemini-1.5-pro-latest": "google/gemini-2.5-pro",
        "google/gemini-pro-latest": "google/gemini-2.5-pro",
        "anthropic/claude-4.5-haiku": "anthropic/claude-haiku-4-5",
        "anthropic/claude-4.5-sonnet": "anthropic/claude-sonnet-4-5",
    }
)

# Image generation preset -> model used when the caller names none
PRESET_IMAGE_DEFAULTS: Mapping[str, str] = MappingProxyType(
    {
        "standard": "google/imagen-4.0-fast-generate-001",
        "balanced": "google/imagen-4.0-generate-001",
        "high-detail": "google/imagen-4.0-ultra-generate-001",
    }
)


def _text(
    model_id: str,
    provider: Provider,
    display_name: str,
    input_per_1k: str,
    output_per_1k: str,
    is_default: bool = False,
) -> ModelDescriptor:
    return ModelDescriptor(
        id=model_id,
        provider=provider,
        model_type=ModelType.TEXT,
        capabilities=TEXT_CAPABILITIES,
        pricing=TokenPricing(Decimal(input_per_1k), Decimal(output_per_1k)),
        display_name=display_name,
        is_default_for_type=is_default,
    )


def _image(
    model_id: str,
    provider: Provider,
    display_name: str,
    pricing: UnitPricing,
    is_default: bool = False,
) -> ModelDescriptor:
    return ModelDescriptor(
        id=model_id,
        provider=provider,
        model_type=ModelType.IMAGE,
        capabilities=IMAGE_CAPABILITIES,
        pricing=pricing,
        display_name=display_name,
        is_default_for_type=is_default,
    )


BUILTIN_MODELS: tuple[ModelDescriptor, ...] = (
    # Text
    _text("openai/gpt-4.1-mini", Provider.OPENAI, "GPT-4.1 mini", "0.0004", "0.0016", True),
    _text("openai/gpt-4.1-nano", Provider.OPENAI, "GPT-4.1 nano", "0.0001", "0.0004"),
    _text("anthropic/claude-haiku-4-5", Provider.ANTHROPIC, "Claude Haiku 4.5", "0.001", "0.005"),
    _text(
        "anthropic/claude-sonnet-4-5", Provider.ANTHROPIC, "Claude Sonnet 4.5", "0.003", "0.015"
    ),
    _text("google/gemini-2.5-flash", Provider.GOOGLE, "Gemini 2.5 Flash", "0.0003", "0.0025"),
    _text("google/gemini-2.5-pro", Provider.GOOGLE, "Gemini 2.5 Pro", "0.00125", "0.01"),
    # Image
    _image(
        "openai/gpt-image-1",
        Provider.OPENAI,
        "GPT Image 1",
        UnitPricing(
            usd_per_unit_by_quality={
                "low": Decimal("0.011"),
                "medium": Decimal("0.042"),
                "high": Decimal("0.17"),
            }
        ),
    ),
    _image(
        "google/imagen-4.0-generate-001",
        Provider.GOOGLE,
        "Imagen 4",
        UnitPricing(usd_per_unit=Decimal("0.04")),
        True,
    ),
    _image(
        "google/imagen-4.0-fast-generate-001",
        Provider.GOOGLE,
        "Imagen 4 Fast",
        UnitPricing(usd_per_unit=Decimal("0.02")),
    ),
    _image(
        "google/imagen-4.0-ultra-generate-001",
        Provider.GOOGLE,
        "Imagen 4 Ultra",
        UnitPricing(usd_per_unit=Decimal("0.06")),
    ),
)


class ModelCatalog:
    """
    Read-only lookup of model descriptors.

    Two resolution paths:
    - resolve(): lenient about unknown ids (falls back to the type default),
      used for pricing.
    - require(): strict about unknown ids, used when a model is about to run.
    Both refuse a model of the wrong type.
    """

    def __init__(
        self,
        models: Iterable[ModelDescriptor],
        aliases: Mapping[str, str] | None = None,
        preset_defaults: Mapping[str, str] | None = None,
    ) -> None:
        """Index models and validate load-time invariants."""
        by_id: dict[str, ModelDescriptor] = {}
        for descriptor in models:
            if descriptor.id in by_id:
                raise ConfigurationError(f"Duplicate model id in catalog: {descriptor.id}")
            by_id[descriptor.id] = descriptor

        defaults: dict[ModelType, ModelDescriptor] = {}
        for model_type in ModelType:
            of_type = [d for d in by_id.values() if d.model_type == model_type]
            flagged = [d for d in of_type if d.is_default_for_type]
            if len(flagged) > 1:
                raise ConfigurationError(
                    f"More than one default {model_type.value} model: "
                    + ", ".join(d.id for d in flagged)
                )
            if flagged:
                defaults[model_type] = flagged[0]
            elif of_type:
                defaults[model_type] = of_type[0]

        self._models = MappingProxyType(by_id)
        self._defaults = MappingProxyType(defaults)
        self._aliases = MappingProxyType(dict(aliases or {}))
        self._preset_defaults = MappingProxyType(dict(preset_defaults or {}))

    @property
    def models(self) -> tuple[ModelDescriptor, ...]:
        """All descriptors in registration order."""
        return tuple(self._models.values())

    def normalize_id(self, model_id: str | None) -> str | None:
        """Strip whitespace and apply legacy alias remapping."""
        if model_id is None:
            return None
        cleaned = model_id.strip()
        if not cleaned:
            return None
        return self._aliases.get(cleaned, cleaned)

    def get(self, model_id: str | None) -> ModelDescriptor | None:
        """Exact lookup after alias remapping, no fallback."""
        normalized = self.normalize_id(model_id)
        if normalized is None:
            return None
        return self._models.get(normalized)

    def default_for(self, model_type: ModelType) -> ModelDescriptor | None:
        return self._defaults.get(model_type)

    def preset_default(self, preset: str | None) -> str | None:
        """Model id used for an image preset when the caller names none."""
        if not preset:
            return None
        return self._preset_defaults.get(preset)

    def resolve(self, model_id: str | None, expected_type: ModelType) -> ModelDescriptor:
        """
        Resolve a model id, falling back to the default for expected_type.

        Raises:
            ModelNotFoundError: id unknown and no default for the type
            ModelTypeMismatchError: resolved model has a different type
        """
        descriptor = self.get(model_id)
        if descriptor is None:
            descriptor = self.default_for(expected_type)
            if descriptor is None:
                raise ModelNotFoundError(model_id, expected_type)
        if descriptor.model_type != expected_type:
            raise ModelTypeMismatchError(model_id, expected_type, descriptor.model_type)
        return descriptor

    def require(self, model_id: str | None, expected_type: ModelType) -> ModelDescriptor:
        """
        Resolve a model id without falling back for unknown ids.

        An absent or blank id still selects the type default.

        Raises:
            ModelNotFoundError: id unknown, or absent with no default
            ModelTypeMismatchError: model has a different type
        """
        if self.normalize_id(model_id) is None:
            return self.resolve(None, expected_type)
        descriptor = self.get(model_id)
        if descriptor is None:
            raise ModelNotFoundError(model_id, expected_type)
        if descriptor.model_type != expected_type:
            raise ModelTypeMismatchError(model_id, expected_type, descriptor.model_type)
        return descriptor


def build_default_catalog() -> ModelCatalog:
    """Catalog of the models this service ships with."""
    return ModelCatalog(BUILTIN_MODELS, LEGACY_MODEL_ALIASES, PRESET_IMAGE_DEFAULTS)


def _parse_pricing(raw: Mapping[str, Any] | None) -> Pricing | None:
    if not raw:
        return None
    if "input_usd_per_1k" in raw or "output_usd_per_1k" in raw:
        return TokenPricing(
            input_usd_per_1k=Decimal(str(raw.get("input_usd_per_1k", 0))),
            output_usd_per_1k=Decimal(str(raw.get("output_usd_per_1k", 0))),
        )
    flat = raw.get("usd_per_unit")
    by_quality = raw.get("usd_per_unit_by_quality") or {}
    return UnitPricing(
        usd_per_unit=Decimal(str(flat)) if flat is not None else None,
        usd_per_unit_by_quality={tier: Decimal(str(p)) for tier, p in by_quality.items()},
    )


def parse_catalog_document(document: str) -> ModelCatalog:
    """
    Build a catalog from a JSON document.

    Format:
        {
          "models": [
            {"id": "openai/gpt-4.1-mini", "provider": "openai", "model_type": "text",
             "capabilities": ["chat", "graph"], "display_name": "GPT-4.1 mini",
             "is_default_for_type": true,
             "pricing": {"input_usd_per_1k": 0.0004, "output_usd_per_1k": 0.0016}}
          ],
          "aliases": {"old/id": "new/id"},
          "preset_defaults": {"standard": "google/imagen-4.0-fast-generate-001"}
        }

    Aliases and preset defaults fall back to the built-in tables when omitted.

    Raises:
        ConfigurationError: document is malformed
    """
    try:
        data = json.loads(document)
        models = [
            ModelDescriptor(
                id=entry["id"],
                provider=Provider(entry["provider"]),
                model_type=ModelType(entry["model_type"]),
                capabilities=frozenset(Capability(c) for c in entry.get("capabilities", [])),
                pricing=_parse_pricing(entry.get("pricing")),
                display_name=entry.get("display_name") or entry["id"],
                is_default_for_type=bool(entry.get("is_default_for_type", False)),
            )
            for entry in data["models"]
        ]
    except (ValueError, KeyError, TypeError, ArithmeticError) as exc:
        raise ConfigurationError(f"Invalid MODEL_CATALOG_JSON: {exc}") from exc

    return ModelCatalog(
        models,
        aliases=data.get("aliases", LEGACY_MODEL_ALIASES),
        preset_defaults=data.get("preset_defaults", PRESET_IMAGE_DEFAULTS),
    )


def load_model_catalog(settings: Settings) -> ModelCatalog:
    """Catalog from MODEL_CATALOG_JSON when set, otherwise the built-in one."""
    if settings.model_catalog_json:
        catalog = parse_catalog_document(settings.model_catalog_json)
        source = "env"
    else:
        catalog = build_default_catalog()
        source = "builtin"

    logger.info(
        "model_catalog_loaded",
        source=source,
        model_count=len(catalog.models),
        default_text=getattr(catalog.default_for(ModelType.TEXT), "id", None),
        default_image=getattr(catalog.default_for(ModelType.IMAGE), "id", None),
    )
    return catalog
