"""
Exception hierarchy for the generation core.

Configuration and persistence failures are always raised to the caller.
Transport failures travel through the stream itself, since generate()
returns before the stream drains. Cancellation is converted to a 204
response at the service boundary, and discovery failures are logged and
masked as an empty model list by each provider.
"""


class StoryAIError(Exception):
    """Base exception for the generation core."""


class ConfigurationError(StoryAIError):
    """Missing credential, unknown provider or uninitialized client."""


class PersistenceError(StoryAIError):
    """Settings could not be read from or written to the store."""


class TransportError(StoryAIError):
    """Network failure or malformed upstream stream."""


class DiscoveryError(StoryAIError):
    """Model listing failed; never escapes fetch_models()."""


class GenerationCancelled(StoryAIError):
    """The generation's cancel token fired."""

    def __init__(self, message: str = "generation cancelled") -> None:
        super().__init__(message)
