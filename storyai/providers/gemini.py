"""
Gemini through the google-genai SDK.

Gemini streams whole GenerateContentResponse objects rather than deltas and
takes system prompts as a separate system_instruction, which only the
gemini-* models accept. Other models served by the same API get the system
text folded into the first user turn instead.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from storyai.core.cancel import CancelToken
from storyai.core.errors import ConfigurationError, DiscoveryError, TransportError
from storyai.providers.base import FragmentStream
from storyai.schemas.settings import AIModel, PromptMessage
from storyai.services.streaming import gemini_chunk_text, relay_fragments

logger = logging.getLogger(__name__)

GEMINI_DEFAULT_CONTEXT_LENGTH = 32768
SYSTEM_INSTRUCTION_PREFIX = "gemini-"

Contents = List[Dict[str, Any]]


def supports_system_instruction(model_id: str) -> bool:
    return model_id.startswith(SYSTEM_INSTRUCTION_PREFIX)


def build_gemini_request(
    messages: Sequence[PromptMessage], model_id: str
) -> Tuple[Optional[str], Contents]:
    """
    Split messages into (system_instruction, contents).

    System messages are newline-joined in encounter order. For models that
    cannot take a system instruction the joined text is prepended, followed
    by a blank line, to the first user message and None is returned for it.
    """
    system_parts: List[str] = []
    contents: Contents = []
    for msg in messages:
        if msg.role == "system":
            system_parts.append(msg.content)
        else:
            contents.append({
                "role": "model" if msg.role == "assistant" else "user",
                "parts": [{"text": msg.content}],
            })

    if not system_parts:
        return None, contents
    system_text = "\n".join(system_parts)
    if supports_system_instruction(model_id):
        return system_text, contents

    for content in contents:
        if content["role"] == "user":
            content["parts"][0]["text"] = f"{system_text}\n\n{content['parts'][0]['text']}"
            break
    else:
        contents.insert(0, {"role": "user", "parts": [{"text": system_text}]})
    return None, contents


class GeminiProvider:
    name = "gemini"

    def __init__(self, client_factory: Callable[..., Any] = genai.Client) -> None:
        self._client_factory = client_factory
        self._client: Any = None

    def initialize(self, credential: Optional[str] = None) -> None:
        if not credential:
            return
        self._client = self._client_factory(api_key=credential)

    def is_initialized(self) -> bool:
        return self._client is not None

    async def fetch_models(self) -> List[AIModel]:
        if self._client is None:
            logger.warning("gemini client not initialized, no models to fetch")
            return []
        logger.info("fetching gemini models")
        try:
            models = await self._list_models(self._client)
        except Exception as e:
            logger.error("gemini model discovery failed: %s", e)
            return []
        logger.info("fetched %d gemini models", len(models))
        return models

    async def _list_models(self, client: Any) -> List[AIModel]:
        models: List[AIModel] = []
        try:
            pager = await client.aio.models.list()
            async for model in pager:
                actions = model.supported_actions or []
                if not model.name or "generateContent" not in actions:
                    continue
                model_id = model.name.replace("models/", "", 1)
                models.append(
                    AIModel(
                        id=model_id,
                        name=model.display_name or model_id,
                        provider="gemini",
                        context_length=model.input_token_limit or GEMINI_DEFAULT_CONTEXT_LENGTH,
                    )
                )
        except genai_errors.APIError as e:
            raise DiscoveryError(f"gemini model listing failed: {e}") from e
        return models

    async def generate(
        self,
        messages: Sequence[PromptMessage],
        model_id: str,
        temperature: float,
        max_tokens: int,
        cancel_token: CancelToken,
    ) -> FragmentStream:
        if self._client is None:
            raise ConfigurationError("gemini client not initialized")
        client = self._client

        system_instruction, contents = build_gemini_request(messages, model_id)
        options: Dict[str, Any] = {"temperature": temperature, "max_output_tokens": max_tokens}
        if system_instruction:
            options["system_instruction"] = system_instruction
        generation_config = types.GenerateContentConfig(**options)

        async def open_stream() -> Any:
            try:
                return await client.aio.models.generate_content_stream(
                    model=model_id,
                    contents=contents,
                    config=generation_config,
                )
            except genai_errors.APIError as e:
                raise TransportError(f"gemini request failed: {e}") from e

        return await relay_fragments(open_stream, gemini_chunk_text, cancel_token)
