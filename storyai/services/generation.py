"""
Public facade of the generation core.

One GenerationService instance is created per process (see storyai.main) and
handed to whoever needs it. It owns the cached settings record, model
discovery, lazy provider initialization and the single tracked cancel token.

Failure policy:
- settings reads and writes always raise PersistenceError to the caller
- model discovery never raises; a broken catalog comes back empty
- a generation cancelled before its stream opens returns a 204 response

Only the most recent generation can be aborted. Starting a second one
detaches the first: its stream keeps running and abort_stream() no longer
reaches it.
"""

import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, List, Optional, Sequence

from pydantic import ValidationError
from fastapi.responses import Response, StreamingResponse

from storyai.core import config
from storyai.core.cancel import CancelToken
from storyai.core.errors import ConfigurationError, GenerationCancelled, PersistenceError
from storyai.providers.base import AIProvider, FragmentStream
from storyai.providers.registry import ProviderRegistry
from storyai.schemas.settings import (
    DEFAULT_MODEL_FIELDS,
    KEY_FIELDS,
    AIModel,
    PromptMessage,
    Settings,
    SettingsUpdate,
)
from storyai.services.settings_store import SettingsStore
from storyai.services.streaming import (
    StreamState,
    close_source,
    format_stream_as_sse,
    process_raw_response,
    process_streamed_response,
)

logger = logging.getLogger(__name__)

CANCELLED_STATUS = 204
RAW_MEDIA_TYPE = "text/plain; charset=utf-8"
SSE_MEDIA_TYPE = "text/event-stream"


class GenerationService:
    def __init__(
        self,
        store: SettingsStore,
        registry: Optional[ProviderRegistry] = None,
        default_local_api_url: str = config.LOCAL_API_URL,
    ) -> None:
        self._store = store
        self._default_local_api_url = default_local_api_url
        self._registry = registry or ProviderRegistry(default_local_api_url)
        self._settings: Optional[Settings] = None
        self._cancel_token: Optional[CancelToken] = None

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    @property
    def cancel_token(self) -> Optional[CancelToken]:
        """Token of the generation abort_stream() would cancel, if any."""
        return self._cancel_token

    async def initialize(self) -> None:
        try:
            settings = await self._store.get_settings()
        except PersistenceError:
            logger.exception("failed to fetch AI settings")
            raise
        self._settings = settings

        for provider, field in KEY_FIELDS.items():
            key = getattr(settings, field)
            if key:
                self._registry.initialize_provider(provider, key)
        if settings.local_api_url:
            self._registry.update_local_api_url(settings.local_api_url)

    def _require_settings(self) -> Settings:
        if self._settings is None:
            raise ConfigurationError("GenerationService not initialized")
        return self._settings

    async def update_key(self, provider: str, key: str) -> None:
        logger.info("updating key for provider=%s", provider)
        field = KEY_FIELDS.get(provider)
        if field is None:
            logger.warning("provider=%s takes no API key, ignoring", provider)
            return
        await self._update_settings_field(**{field: key})
        self._registry.initialize_provider(provider, key)
        await self._fetch_available_models(provider)

    # user-triggered refresh; persistence failures surface to the caller
    async def _fetch_available_models(self, provider: str) -> None:
        settings = self._require_settings()
        logger.info("fetching available models for provider=%s", provider)
        models = await self._registry.get_provider(provider).fetch_models()
        logger.info("fetched %d models for provider=%s", len(models), provider)

        # full replacement of this provider's slice; other providers untouched
        kept = [m for m in settings.available_models if m.provider != provider]
        await self._update_settings_field(
            available_models=kept + models,
            last_models_fetch=datetime.now(timezone.utc),
        )

    async def get_available_models(
        self, provider: Optional[str] = None, force_refresh: bool = True
    ) -> List[AIModel]:
        self._require_settings()
        # another session may have changed the record since we cached it
        self._settings = await self._store.get_settings()

        if provider and force_refresh:
            await self._fetch_available_models(provider)

        models = self._require_settings().available_models
        if provider:
            return [m for m in models if m.provider == provider]
        return list(models)

    async def generate(
        self,
        provider_type: str,
        messages: Sequence[PromptMessage],
        model_id: str,
        temperature: float = config.DEFAULT_TEMPERATURE,
        max_tokens: int = config.DEFAULT_MAX_TOKENS,
    ) -> Response:
        """
        Start a generation and return its streaming response.

        The local provider's response carries raw text fragments; every other
        provider's is framed as SSE and ends with `data: [DONE]`. A generation
        aborted before its stream opened returns status 204 with no body.
        """
        token = CancelToken()
        self._cancel_token = token

        try:
            provider = self._registry.get_provider(provider_type)
            if provider_type != "local":
                self._ensure_provider_initialized(provider_type, provider)
            fragments = await provider.generate(messages, model_id, temperature, max_tokens, token)
        except GenerationCancelled:
            logger.info("generation cancelled before streaming provider=%s model=%s", provider_type, model_id)
            self._release(token)
            return Response(status_code=CANCELLED_STATUS)
        except Exception:
            self._release(token)
            raise

        body = self._track(fragments, token)
        if provider_type == "local":
            return StreamingResponse(body, media_type=RAW_MEDIA_TYPE)
        return StreamingResponse(format_stream_as_sse(body), media_type=SSE_MEDIA_TYPE)

    def _ensure_provider_initialized(self, provider_type: str, provider: AIProvider) -> None:
        if provider.is_initialized():
            return
        key = self.get_key(provider_type)
        if not key:
            raise ConfigurationError(f"{provider_type} API key not set")
        self._registry.initialize_provider(provider_type, key)

    def _release(self, token: CancelToken) -> None:
        # a newer generation may already own the tracked slot
        if self._cancel_token is token:
            self._cancel_token = None

    async def _track(self, fragments: FragmentStream, token: CancelToken) -> AsyncIterator[bytes]:
        try:
            async for fragment in fragments:
                yield fragment
        finally:
            await close_source(fragments)
            self._release(token)

    async def handle_streamed_response(
        self,
        response: Response,
        on_token: Callable[[str], None],
        on_complete: Callable[[], None],
        on_error: Callable[[Exception], None],
    ) -> StreamState:
        """Decode a response returned by generate() into callbacks, raw or SSE."""
        if response.status_code == CANCELLED_STATUS:
            logger.info("generation was aborted, nothing to read")
            on_complete()
            return StreamState.COMPLETED
        if response.media_type == RAW_MEDIA_TYPE:
            return await process_raw_response(response.body_iterator, on_token, on_complete, on_error)
        return await process_streamed_response(response.body_iterator, on_token, on_complete, on_error)

    def abort_stream(self) -> None:
        if self._cancel_token is not None:
            logger.info("aborting stream")
            self._cancel_token.cancel()
            self._cancel_token = None

    async def update_default_model(self, provider: str, model_id: Optional[str]) -> None:
        field = DEFAULT_MODEL_FIELDS.get(provider)
        if field is None:
            return
        await self._update_settings_field(**{field: model_id})

    async def update_local_api_url(self, url: str) -> None:
        await self._update_settings_field(local_api_url=url)
        self._registry.update_local_api_url(url)
        await self._fetch_available_models("local")

    async def _update_settings_field(self, **updates: object) -> None:
        settings = self._require_settings()
        try:
            update = SettingsUpdate.model_validate(updates)
        except ValidationError as e:
            raise PersistenceError(f"Invalid AI settings update data: {e}") from e

        try:
            await self._store.update_settings(settings.id, update.to_wire())
        except PersistenceError:
            logger.exception("failed to update AI settings")
            raise
        # merge into whatever copy is cached now; concurrent writers race, last one wins
        self._settings = self._require_settings().model_copy(update=update.changes())

    def get_settings(self) -> Optional[Settings]:
        return self._settings

    def get_key(self, provider: str) -> Optional[str]:
        field = KEY_FIELDS.get(provider)
        if field is None or self._settings is None:
            return None
        return getattr(self._settings, field)

    def get_default_model(self, provider: str) -> Optional[str]:
        field = DEFAULT_MODEL_FIELDS.get(provider)
        if field is None or self._settings is None:
            return None
        return getattr(self._settings, field)

    def get_local_api_url(self) -> str:
        if self._settings is not None and self._settings.local_api_url:
            return self._settings.local_api_url
        return self._default_local_api_url
