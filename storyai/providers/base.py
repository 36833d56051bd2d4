# declares the provider contract every backend implements (local/openai/openrouter/gemini)
# lets the registry swap or add providers without touching the generation service

from typing import AsyncIterator, List, Optional, Protocol, Sequence

from storyai.core.cancel import CancelToken
from storyai.schemas.settings import AIModel, PromptMessage

# raw UTF-8 text fragments, unframed
FragmentStream = AsyncIterator[bytes]


class AIProvider(Protocol):
    def initialize(self, credential: Optional[str] = None) -> None:
        """Create or re-point the client; a missing credential is a no-op."""
        ...

    def is_initialized(self) -> bool:
        ...

    async def fetch_models(self) -> List[AIModel]:
        """List the backend's models; any failure is logged and yields []."""
        ...

    async def generate(
        self,
        messages: Sequence[PromptMessage],
        model_id: str,
        temperature: float,
        max_tokens: int,
        cancel_token: CancelToken,
    ) -> FragmentStream:
        """
        Open a streaming completion and return its fragment stream.
        Raises GenerationCancelled if cancel_token fires before the stream opens.
        """
        ...
