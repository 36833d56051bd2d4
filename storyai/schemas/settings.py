from datetime import datetime
from typing import Dict, List, Literal, Optional, Tuple, get_args

from pydantic import BaseModel, ConfigDict, Field

ProviderName = Literal["local", "openai", "openrouter", "gemini"]
PROVIDERS: Tuple[str, ...] = get_args(ProviderName)

Role = Literal["system", "user", "assistant"]

DEFAULT_CONTEXT_LENGTH = 4096

# settings field holding each provider's credential; the local provider has none
KEY_FIELDS: Dict[str, str] = {
    "openai": "openai_key",
    "openrouter": "openrouter_key",
    "gemini": "gemini_key",
}

DEFAULT_MODEL_FIELDS: Dict[str, str] = {
    "local": "default_local_model",
    "openai": "default_openai_model",
    "openrouter": "default_openrouter_model",
    "gemini": "default_gemini_model",
}


class PromptMessage(BaseModel):
    role: Role
    content: str


class AIModel(BaseModel):
    # identity is (provider, id); instances never change after discovery
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    name: str
    provider: ProviderName
    context_length: int = Field(default=DEFAULT_CONTEXT_LENGTH, alias="contextLength")
    enabled: bool = True


class SettingsUpdate(BaseModel):
    """Partial settings update; only fields explicitly set are written."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    openai_key: Optional[str] = Field(default=None, alias="openaiKey")
    openrouter_key: Optional[str] = Field(default=None, alias="openrouterKey")
    gemini_key: Optional[str] = Field(default=None, alias="geminiKey")
    available_models: Optional[List[AIModel]] = Field(default=None, alias="availableModels")
    last_models_fetch: Optional[datetime] = Field(default=None, alias="lastModelsFetch")
    local_api_url: Optional[str] = Field(default=None, alias="localApiUrl")
    default_local_model: Optional[str] = Field(default=None, alias="defaultLocalModel")
    default_openai_model: Optional[str] = Field(default=None, alias="defaultOpenAIModel")
    default_openrouter_model: Optional[str] = Field(default=None, alias="defaultOpenRouterModel")
    default_gemini_model: Optional[str] = Field(default=None, alias="defaultGeminiModel")

    def changes(self) -> Dict[str, object]:
        # field name -> validated value, for merging into a cached Settings
        return {name: getattr(self, name) for name in self.model_fields_set}

    def to_wire(self) -> Dict[str, object]:
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    openai_key: Optional[str] = Field(default=None, alias="openaiKey")
    openrouter_key: Optional[str] = Field(default=None, alias="openrouterKey")
    gemini_key: Optional[str] = Field(default=None, alias="geminiKey")
    available_models: List[AIModel] = Field(default_factory=list, alias="availableModels")
    last_models_fetch: Optional[datetime] = Field(default=None, alias="lastModelsFetch")
    local_api_url: Optional[str] = Field(default=None, alias="localApiUrl")
    default_local_model: Optional[str] = Field(default=None, alias="defaultLocalModel")
    default_openai_model: Optional[str] = Field(default=None, alias="defaultOpenAIModel")
    default_openrouter_model: Optional[str] = Field(default=None, alias="defaultOpenRouterModel")
    default_gemini_model: Optional[str] = Field(default=None, alias="defaultGeminiModel")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
