"""
Model Router - Resolves a model id to a ready-to-call provider binding.

Strict by design: an unknown or wrong-typed id is a client error here,
unlike in the cost estimator. Runs only after the credit gate accepted.
"""

from collections.abc import Callable, Mapping
from typing import Any

import anthropic
import openai
from google import genai
from structlog import get_logger

from mycelia_billing.config import ConfigurationError, Settings
from mycelia_billing.exceptions import UnsupportedModelError
from mycelia_billing.models.api import ModelType, Provider
from mycelia_billing.models.domain import ModelDescriptor, ProviderBinding
from mycelia_billing.services.model_catalog import ModelCatalog

logger = get_logger(__name__)

ClientFactory = Callable[[str], Any]


def _openai_client(api_key: str) -> Any:
    return openai.AsyncOpenAI(api_key=api_key)


def _anthropic_client(api_key: str) -> Any:
    return anthropic.AsyncAnthropic(api_key=api_key)


def _google_client(api_key: str) -> Any:
    return genai.Client(api_key=api_key)


DEFAULT_CLIENT_FACTORIES: Mapping[Provider, ClientFactory] = {
    Provider.OPENAI: _openai_client,
    Provider.ANTHROPIC: _anthropic_client,
    Provider.GOOGLE: _google_client,
}

# Setting that holds each provider's credential
CREDENTIAL_SETTINGS: Mapping[Provider, str] = {
    Provider.OPENAI: "openai_api_key",
    Provider.ANTHROPIC: "anthropic_api_key",
    Provider.GOOGLE: "google_api_key",
}


class ModelRouter:
    """
    Provider binding resolution.

    One client per provider, created on first use and reused afterwards.
    """

    def __init__(
        self,
        catalog: ModelCatalog,
        settings: Settings,
        client_factories: Mapping[Provider, ClientFactory] | None = None,
    ) -> None:
        """Initialize router with catalog, credentials and client factories."""
        self.catalog = catalog
        self.settings = settings
        self.client_factories = dict(client_factories or DEFAULT_CLIENT_FACTORIES)
        self._clients: dict[Provider, Any] = {}

    def resolve_text_model(self, model_id: str | None) -> ProviderBinding:
        """
        Binding for a chat or idea-generation model.

        Raises:
            ModelNotFoundError: unknown id
            ModelTypeMismatchError: id names an image model
            UnsupportedModelError: provider not served
            ConfigurationError: provider credential missing
        """
        return self._bind(self.catalog.require(model_id, ModelType.TEXT))

    def resolve_image_model(self, model_id: str | None) -> ProviderBinding:
        """
        Binding for an image generation model.

        Raises:
            ModelNotFoundError: unknown id
            ModelTypeMismatchError: id names a text model
            UnsupportedModelError: provider not served
            ConfigurationError: provider credential missing
        """
        return self._bind(self.catalog.require(model_id, ModelType.IMAGE))

    def resolve(self, model_id: str | None, model_type: ModelType) -> ProviderBinding:
        if model_type == ModelType.IMAGE:
            return self.resolve_image_model(model_id)
        return self.resolve_text_model(model_id)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _bind(self, descriptor: ModelDescriptor) -> ProviderBinding:
        return ProviderBinding(
            client=self._client_for(descriptor),
            model_name=descriptor.provider_model_name,
            descriptor=descriptor,
        )

    def _client_for(self, descriptor: ModelDescriptor) -> Any:
        provider = descriptor.provider
        if provider in self._clients:
            return self._clients[provider]

        factory = self.client_factories.get(provider)
        setting_name = CREDENTIAL_SETTINGS.get(provider)
        if factory is None or setting_name is None:
            logger.warning(
                "model_router_unsupported_provider",
                model_id=descriptor.id,
                provider=provider.value,
            )
            raise UnsupportedModelError(descriptor.id, f"Unsupported provider {provider.value}")

        api_key = getattr(self.settings, setting_name, "")
        if not api_key:
            logger.error(
                "model_router_missing_credential",
                provider=provider.value,
                setting=setting_name.upper(),
                model_id=descriptor.id,
            )
            raise ConfigurationError(f"{setting_name.upper()} is not configured")

        client = factory(api_key)
        self._clients[provider] = client
        logger.info("model_router_client_created", provider=provider.value)
        return client
