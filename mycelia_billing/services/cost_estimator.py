"""
Cost Estimator - Prices an AI action in credits before it runs.

Pure computation over the injected model catalog. Never raises for an
unknown or wrong-typed model id: pricing falls back to the catalog default
so a catalog gap cannot block billing.
"""

import math
from dataclasses import dataclass
from decimal import Decimal

from mycelia_billing.exceptions import UnsupportedModelError
from mycelia_billing.models.api import ActionKind, ModelType
from mycelia_billing.models.domain import (
    ActionCostRequest,
    ModelDescriptor,
    TokenPricing,
    UnitPricing,
)
from mycelia_billing.services.model_catalog import ModelCatalog

AVG_CHARS_PER_TOKEN = 4
MINIMUM_CHARGE_CREDITS = 1
DEFAULT_QUALITY_TIER = "medium"


@dataclass(frozen=True)
class TextActionProfile:
    """Calibrated prompt overhead and expected reply size for a text action."""

    system_prompt_chars: int
    output_tokens: int


CHAT_PROFILE = TextActionProfile(system_prompt_chars=700, output_tokens=220)

TEXT_ACTION_PROFILES: dict[ActionKind, TextActionProfile] = {
    ActionKind.CHAT_MESSAGE: CHAT_PROFILE,
    ActionKind.CHAT_STREAM: CHAT_PROFILE,
    ActionKind.GENERATE_IDEAS: TextActionProfile(system_prompt_chars=1000, output_tokens=1200),
    ActionKind.EXPAND_IDEA: TextActionProfile(system_prompt_chars=1200, output_tokens=900),
}

PRESET_QUALITY_TIERS: dict[str, str] = {
    "standard": "low",
    "high-detail": "high",
}


def quality_tier_for(explicit: str | None, preset: str | None) -> str:
    """Explicit tier wins; otherwise derive from the preset (medium by default)."""
    if explicit and explicit.strip():
        return explicit.strip()
    if preset:
        return PRESET_QUALITY_TIERS.get(preset, DEFAULT_QUALITY_TIER)
    return DEFAULT_QUALITY_TIER


def estimate_tokens(chars: int) -> int:
    return math.ceil(max(chars, 0) / AVG_CHARS_PER_TOKEN)


class CostEstimator:
    """
    Maps an ActionCostRequest to an integer credit charge.

    credits = max(1, ceil(usd * credits_per_usd))
    """

    def __init__(self, catalog: ModelCatalog, credits_per_usd: int) -> None:
        """Initialize estimator with an immutable catalog and exchange rate."""
        self.catalog = catalog
        self.credits_per_usd = Decimal(credits_per_usd)

    def estimate(self, request: ActionCostRequest) -> int:
        """Estimated credits for the action, never less than one."""
        usd = self.estimate_usd(request)
        credits = math.ceil(usd * self.credits_per_usd)
        return max(MINIMUM_CHARGE_CREDITS, credits)

    def estimate_usd(self, request: ActionCostRequest) -> Decimal:
        if request.is_image_action:
            return self._image_cost(request)
        return self._text_cost(request)

    def pricing_models(self, request: ActionCostRequest) -> tuple[ModelDescriptor, ...]:
        """Models the estimate was computed against."""
        if request.is_image_action:
            return self._image_targets(request)
        return (self._lenient(request.model_id, ModelType.TEXT),)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _lenient(self, model_id: str | None, model_type: ModelType) -> ModelDescriptor:
        """Resolve for pricing; a mismatched or unknown id prices as the default."""
        try:
            return self.catalog.resolve(model_id, model_type)
        except UnsupportedModelError:
            return self.catalog.resolve(None, model_type)

    def _text_cost(self, request: ActionCostRequest) -> Decimal:
        kind = request.kind
        profile = TEXT_ACTION_PROFILES.get(kind, CHAT_PROFILE) if kind else CHAT_PROFILE

        descriptor = self._lenient(request.model_id, ModelType.TEXT)
        pricing = descriptor.pricing
        if not isinstance(pricing, TokenPricing):
            return Decimal("0")

        input_tokens = estimate_tokens(
            request.input_chars + request.history_chars + profile.system_prompt_chars
        )
        return (
            Decimal(input_tokens) / 1000 * pricing.input_usd_per_1k
            + Decimal(profile.output_tokens) / 1000 * pricing.output_usd_per_1k
        )

    def _image_targets(self, request: ActionCostRequest) -> tuple[ModelDescriptor, ...]:
        explicit = tuple(m for m in request.model_ids if m and m.strip())
        if explicit:
            return tuple(self._lenient(m, ModelType.IMAGE) for m in explicit)
        model_id = request.model_id if request.model_id and request.model_id.strip() else None
        model_id = model_id or self.catalog.preset_default(request.image_preset)
        return (self._lenient(model_id, ModelType.IMAGE),)

    def _image_cost(self, request: ActionCostRequest) -> Decimal:
        tier = quality_tier_for(request.image_quality, request.image_preset)
        count = max(1, math.floor(request.image_count or 1))

        total = Decimal("0")
        for descriptor in self._image_targets(request):
            pricing = descriptor.pricing
            if isinstance(pricing, UnitPricing):
                total += pricing.price_for(tier) * count
        return total
