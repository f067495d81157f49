from .anthropic import AnthropicCapability
from .base import (
    GenerationConfig,
    GenerationResult,
    ModelMessage,
    StreamError,
    StreamEvent,
    StreamFinish,
    TextDelta,
    TextGenerationCapability,
)
from .google import GoogleCapability
from .openai import OpenAICapability
from .registry import ENV_VAR_MAP, MODEL_PROVIDERS, ProviderRegistry, resolve_api_key, resolve_provider

__all__ = [
    "AnthropicCapability",
    "ENV_VAR_MAP",
    "GenerationConfig",
    "GenerationResult",
    "GoogleCapability",
    "MODEL_PROVIDERS",
    "ModelMessage",
    "OpenAICapability",
    "ProviderRegistry",
    "StreamError",
    "StreamEvent",
    "StreamFinish",
    "TextDelta",
    "TextGenerationCapability",
    "resolve_api_key",
    "resolve_provider",
]
