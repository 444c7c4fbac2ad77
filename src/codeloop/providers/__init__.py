"""Model clients for codeloop.

Public surface
--------------
- :class:`BaseModelClient`      — abstract base with retry and cancellation helpers
- :class:`AnthropicModelClient` — Claude adapter (Anthropic SDK)
- :func:`resolve_model`         — resolve model name / alias to :class:`ModelInfo`
- :data:`MODELS`                — model catalogue
- :data:`ALIASES`               — short-name → model-id mapping
"""

from __future__ import annotations

from codeloop.providers.anthropic import AnthropicModelClient
from codeloop.providers.base import BaseModelClient
from codeloop.providers.registry import ALIASES, DEFAULT_MODEL, MODELS, resolve_model

__all__ = [
    "ALIASES",
    "AnthropicModelClient",
    "BaseModelClient",
    "DEFAULT_MODEL",
    "MODELS",
    "resolve_model",
]
