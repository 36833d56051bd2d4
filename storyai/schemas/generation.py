from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional

from storyai.core import config
from storyai.schemas.settings import PromptMessage, ProviderName


class GenerateRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    provider: ProviderName
    model_id: str = Field(min_length=1)
    messages: List[PromptMessage] = Field(min_length=1)
    temperature: float = Field(default=config.DEFAULT_TEMPERATURE, ge=0.0, le=2.0)
    max_tokens: int = Field(default=config.DEFAULT_MAX_TOKENS, gt=0)


class KeyUpdate(BaseModel):
    key: str = Field(min_length=1)


class DefaultModelUpdate(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_id: Optional[str] = None


class LocalUrlUpdate(BaseModel):
    url: str = Field(min_length=1)
