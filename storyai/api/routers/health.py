from fastapi import APIRouter, Depends

from storyai.api.deps import get_generation_service
from storyai.services.generation import GenerationService

router = APIRouter(tags=["meta"])


@router.get("/health")
def health(service: GenerationService = Depends(get_generation_service)):
    return {"status": "ok", "settings_loaded": service.get_settings() is not None}
