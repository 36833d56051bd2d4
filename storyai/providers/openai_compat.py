# OpenAI chat-completions family: OpenAI itself and OpenRouter (same wire shape, different base URL)
# both are instances of one provider class configured with their own discovery policy

import logging
from typing import Any, Callable, List, Optional, Sequence

import openai
from openai import AsyncOpenAI

from storyai.core import config
from storyai.core.cancel import CancelToken
from storyai.core.errors import ConfigurationError, DiscoveryError, TransportError
from storyai.providers.base import FragmentStream
from storyai.schemas.settings import AIModel, PromptMessage
from storyai.services.streaming import openai_delta_text, relay_fragments

logger = logging.getLogger(__name__)

# the live API rejects max_tokens for these model families
NO_MAX_TOKENS_PREFIXES = ("gpt-5", "o1", "o3")


def omits_max_tokens(model_id: str) -> bool:
    return model_id.startswith(NO_MAX_TOKENS_PREFIXES)


def heuristic_context_length(model_id: str) -> int:
    if "gpt-4" in model_id:
        return 8192
    if "gpt-3.5-turbo-16k" in model_id:
        return 16384
    if "gpt-3.5" in model_id:
        return 4096
    return 4096


def reported_context_length(model: Any) -> int:
    value = getattr(model, "context_length", None)
    if isinstance(value, int) and value > 0:
        return value
    return heuristic_context_length(model.id)


def is_gpt_model(model: Any) -> bool:
    return model.id.startswith("gpt")


def any_model(model: Any) -> bool:
    return True


def chat_completion_params(
    messages: Sequence[PromptMessage],
    model_id: str,
    temperature: float,
    max_tokens: int,
) -> dict:
    params = {
        "model": model_id,
        "messages": [{"role": m.role, "content": m.content} for m in messages],
        "temperature": temperature,
        "stream": True,
    }
    if not omits_max_tokens(model_id):
        params["max_tokens"] = max_tokens
    return params


class OpenAIProvider:
    def __init__(
        self,
        name: str = "openai",
        base_url: Optional[str] = None,
        include_model: Callable[[Any], bool] = is_gpt_model,
        context_length: Callable[[Any], int] = lambda m: heuristic_context_length(m.id),
    ) -> None:
        self.name = name
        self._base_url = base_url
        self._include_model = include_model
        self._context_length = context_length
        self._client: Optional[AsyncOpenAI] = None

    def initialize(self, credential: Optional[str] = None) -> None:
        if not credential:
            return
        self._client = AsyncOpenAI(api_key=credential, base_url=self._base_url)

    def is_initialized(self) -> bool:
        return self._client is not None

    async def fetch_models(self) -> List[AIModel]:
        if self._client is None:
            logger.warning("%s client not initialized, no models to fetch", self.name)
            return []
        logger.info("fetching %s models", self.name)
        try:
            models = await self._list_models(self._client)
        except Exception as e:
            logger.error("%s model discovery failed: %s", self.name, e)
            return []
        logger.info("fetched %d %s models", len(models), self.name)
        return models

    async def _list_models(self, client: AsyncOpenAI) -> List[AIModel]:
        try:
            page = await client.models.list()
        except openai.APIError as e:
            raise DiscoveryError(f"{self.name} model listing failed: {e}") from e
        return [
            AIModel(
                id=m.id,
                name=m.id,
                provider=self.name,
                context_length=self._context_length(m),
            )
            for m in page.data
            if self._include_model(m)
        ]

    async def generate(
        self,
        messages: Sequence[PromptMessage],
        model_id: str,
        temperature: float,
        max_tokens: int,
        cancel_token: CancelToken,
    ) -> FragmentStream:
        if self._client is None:
            raise ConfigurationError(f"{self.name} client not initialized")
        client = self._client
        params = chat_completion_params(messages, model_id, temperature, max_tokens)

        async def open_stream() -> Any:
            try:
                return await client.chat.completions.create(**params)
            except openai.APIError as e:
                raise TransportError(f"{self.name} request failed: {e}") from e

        return await relay_fragments(open_stream, openai_delta_text, cancel_token)


def openrouter_provider(base_url: str = config.OPENROUTER_BASE_URL) -> OpenAIProvider:
    # OpenRouter lists every upstream model and reports each one's context window
    return OpenAIProvider(
        name="openrouter",
        base_url=base_url,
        include_model=any_model,
        context_length=reported_context_length,
    )
