# maps a provider tag to its single provider instance
# callers dispatch by tag; the concrete classes share no base class

import logging
from typing import Dict, Mapping, Optional

from storyai.core import config
from storyai.core.errors import ConfigurationError
from storyai.providers.base import AIProvider
from storyai.providers.gemini import GeminiProvider
from storyai.providers.local import LocalProvider
from storyai.providers.openai_compat import OpenAIProvider, openrouter_provider

logger = logging.getLogger(__name__)


def default_providers(local_api_url: str = config.LOCAL_API_URL) -> Dict[str, AIProvider]:
    return {
        "local": LocalProvider(local_api_url),
        "openai": OpenAIProvider(),
        "openrouter": openrouter_provider(),
        "gemini": GeminiProvider(),
    }


class ProviderRegistry:
    def __init__(
        self,
        local_api_url: str = config.LOCAL_API_URL,
        providers: Optional[Mapping[str, AIProvider]] = None,
    ) -> None:
        self._providers: Dict[str, AIProvider] = (
            dict(providers) if providers is not None else default_providers(local_api_url)
        )

    def get_provider(self, provider: str) -> AIProvider:
        p = self._providers.get(provider)
        if p is None:
            raise ConfigurationError(f"Provider {provider} not found")
        return p

    def initialize_provider(self, provider: str, credential: Optional[str] = None) -> None:
        logger.info("initializing provider=%s", provider)
        self.get_provider(provider).initialize(credential)

    def update_local_api_url(self, url: str) -> None:
        logger.info("pointing local provider at %s", url)
        self.get_provider("local").initialize(url)
