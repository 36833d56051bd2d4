from fastapi import Request
from storyai.services.generation import GenerationService

def get_generation_service(request: Request) -> GenerationService:
    return request.app.state.generation_service
