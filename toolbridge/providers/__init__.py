"""
ToolBridge providers module.

This module provides the streaming model-provider abstraction.
"""

from toolbridge.providers.base import (
    FunctionCall,
    GeminiProvider,
    ModelProvider,
    ProviderError,
    ProviderFactory,
    StreamItem,
)

__all__ = [
    "FunctionCall",
    "GeminiProvider",
    "ModelProvider",
    "ProviderError",
    "ProviderFactory",
    "StreamItem",
]
