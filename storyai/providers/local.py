# local inference server speaking the OpenAI chat-completions dialect (LM Studio, llama.cpp, vLLM...)
# talks to it directly over httpx; chunks are plain dicts shaped like OpenAI deltas

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from storyai.core import config
from storyai.core.cancel import CancelToken
from storyai.core.errors import DiscoveryError, TransportError
from storyai.providers.base import FragmentStream
from storyai.schemas.settings import DEFAULT_CONTEXT_LENGTH, AIModel, PromptMessage
from storyai.services.streaming import openai_delta_text, relay_fragments

logger = logging.getLogger(__name__)


def _context_length(item: Dict[str, Any]) -> int:
    for key in ("context_length", "max_context_length"):
        value = item.get(key)
        if isinstance(value, int) and value > 0:
            return value
    return DEFAULT_CONTEXT_LENGTH


async def _iter_chunks(client: httpx.AsyncClient, response: httpx.Response) -> AsyncIterator[Dict[str, Any]]:
    try:
        async for line in response.aiter_lines():
            if not line.startswith("data:"):
                continue
            data = line[len("data:"):].strip()
            if data == "[DONE]":
                break
            try:
                chunk = json.loads(data)
            except json.JSONDecodeError:
                continue
            if not isinstance(chunk, dict):
                continue
            if chunk.get("error"):
                raise TransportError(f"Local server error: {chunk['error']}")
            yield chunk
    finally:
        await response.aclose()
        await client.aclose()


class LocalProvider:
    def __init__(self, api_url: str = config.LOCAL_API_URL) -> None:
        self._api_url = api_url.rstrip("/")

    @property
    def api_url(self) -> str:
        return self._api_url

    # the local provider's "credential" is its base URL
    def initialize(self, credential: Optional[str] = None) -> None:
        if not credential:
            return
        self._api_url = credential.rstrip("/")

    def is_initialized(self) -> bool:
        return bool(self._api_url)

    async def fetch_models(self) -> List[AIModel]:
        logger.info("fetching local models from %s", self._api_url)
        try:
            models = await self._list_models()
        except Exception as e:
            logger.error("local model discovery failed: %s", e)
            return []
        logger.info("fetched %d local models", len(models))
        return models

    async def _list_models(self) -> List[AIModel]:
        timeout = httpx.Timeout(config.DISCOVERY_TIMEOUT, connect=10.0)
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                r = await client.get(f"{self._api_url}/models")
                r.raise_for_status()
                data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DiscoveryError(f"Local server model listing failed: {e}") from e

        models: List[AIModel] = []
        for item in data.get("data", []):
            model_id = item.get("id")
            if not model_id:
                continue
            models.append(
                AIModel(
                    id=model_id,
                    name=item.get("name") or model_id,
                    provider="local",
                    context_length=_context_length(item),
                )
            )
        return models

    async def generate(
        self,
        messages: Sequence[PromptMessage],
        model_id: str,
        temperature: float,
        max_tokens: int,
        cancel_token: CancelToken,
    ) -> FragmentStream:
        payload = {
            "model": model_id,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": True,
        }
        url = f"{self._api_url}/chat/completions"

        async def open_stream() -> AsyncIterator[Dict[str, Any]]:
            # no read timeout: a generation only ends by finishing or by an explicit abort
            client = httpx.AsyncClient(timeout=httpx.Timeout(None))
            try:
                response = await client.send(client.build_request("POST", url, json=payload), stream=True)
                try:
                    response.raise_for_status()
                except httpx.HTTPStatusError:
                    await response.aclose()
                    raise
            except httpx.HTTPError as e:
                await client.aclose()
                raise TransportError(f"Local server HTTP error: {e}") from e
            except BaseException:
                await client.aclose()
                raise
            return _iter_chunks(client, response)

        return await relay_fragments(open_stream, openai_delta_text, cancel_token)
