import logging
from typing import Optional
from fastapi import APIRouter, Depends
from fastapi.responses import Response
from storyai.api.deps import get_generation_service
from storyai.core.errors import ConfigurationError
from storyai.schemas.generation import DefaultModelUpdate, GenerateRequest, KeyUpdate, LocalUrlUpdate
from storyai.schemas.settings import ProviderName
from storyai.services.generation import GenerationService

router = APIRouter(prefix="/ai", tags=["ai"])
logger = logging.getLogger(__name__)


@router.get("/settings")
async def read_settings(service: GenerationService = Depends(get_generation_service)):
    settings = service.get_settings()
    if settings is None:
        raise ConfigurationError("GenerationService not initialized")
    return settings.model_dump(mode="json", by_alias=True)


@router.put("/keys/{provider}", status_code=204)
async def update_key(
    provider: ProviderName,
    body: KeyUpdate,
    service: GenerationService = Depends(get_generation_service),
):
    await service.update_key(provider, body.key)
    return Response(status_code=204)


@router.get("/models")
async def list_models(
    provider: Optional[ProviderName] = None,
    refresh: bool = False,
    service: GenerationService = Depends(get_generation_service),
):
    models = await service.get_available_models(provider, force_refresh=refresh)
    return {"models": [m.model_dump(mode="json", by_alias=True) for m in models]}


@router.put("/default-model/{provider}", status_code=204)
async def update_default_model(
    provider: ProviderName,
    body: DefaultModelUpdate,
    service: GenerationService = Depends(get_generation_service),
):
    await service.update_default_model(provider, body.model_id)
    return Response(status_code=204)


@router.put("/local-url", status_code=204)
async def update_local_url(
    body: LocalUrlUpdate,
    service: GenerationService = Depends(get_generation_service),
):
    await service.update_local_api_url(body.url)
    return Response(status_code=204)


# streams raw text for the local provider and SSE for the others;
# 204 means the generation was aborted before it started streaming
@router.post("/generate")
async def generate(req: GenerateRequest, service: GenerationService = Depends(get_generation_service)):
    logger.info(
        "generation request provider=%s model=%s temperature=%s max_tokens=%s messages=%d",
        req.provider, req.model_id, req.temperature, req.max_tokens, len(req.messages),
    )
    return await service.generate(req.provider, req.messages, req.model_id, req.temperature, req.max_tokens)


@router.post("/abort")
async def abort(service: GenerationService = Depends(get_generation_service)):
    service.abort_stream()
    return {"status": "ok"}
