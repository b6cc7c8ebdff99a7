"""Model and browser provider interfaces with their HTTP adapters."""

from cua_orchestrator.providers.browser import (
    BrowserProvider,
    BrowserProviderError,
    BrowserSession,
    HttpBrowserProvider,
)
from cua_orchestrator.providers.model import (
    AnthropicModelProvider,
    ModelProvider,
    ModelProviderError,
    ModelResponse,
    Usage,
)

__all__ = [
    "AnthropicModelProvider",
    "BrowserProvider",
    "BrowserProviderError",
    "BrowserSession",
    "HttpBrowserProvider",
    "ModelProvider",
    "ModelProviderError",
    "ModelResponse",
    "Usage",
]
