"""
ToolBridge Provider Base - Streaming model providers.

This module defines the interface a model provider must implement to drive
a streamed, function-calling generation, the Gemini implementation, and a
factory for creating provider instances from configuration.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Type

from toolbridge.mcp.naming import FunctionDeclaration
from toolbridge.validation.config import Config

logger = logging.getLogger(__name__)

Turn = Dict[str, Any]


class ProviderError(Exception):
    """Raised when the model provider cannot be reached or fails mid-stream."""

    pass


@dataclass
class FunctionCall:
    """A function call emitted by the model."""

    name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StreamItem:
    """
    One increment of a streamed generation.

    Carries either a text fragment or the function calls the model emitted
    at that point of the stream.
    """

    text: Optional[str] = None
    function_calls: List[FunctionCall] = field(default_factory=list)


class ModelProvider(ABC):
    """
    Abstract base class for streaming model providers.

    Example:
        >>> provider = GeminiProvider(model="gemini-2.5-flash-lite", api_key="...")
        >>> stream = await provider.generate_stream(contents, declarations)
        >>> async for item in stream:
        ...     print(item.text or item.function_calls)
    """

    def __init__(self, model: str, api_key: Optional[str] = None, timeout: Optional[float] = None):
        """
        Initialize the provider.

        Args:
            model: The model identifier.
            api_key: Credential for the provider's API.
            timeout: Per-request timeout in seconds, or None for the SDK default.
        """
        self.model = model
        self.api_key = api_key
        self.timeout = timeout

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def generate_stream(
        self,
        contents: List[Turn],
        declarations: Optional[List[FunctionDeclaration]] = None,
        system_instruction: Optional[str] = None,
    ) -> AsyncIterator[StreamItem]:
        """
        Start a streamed generation.

        Args:
            contents: Ordered turns (``{"role", "parts"}`` dicts).
            declarations: Functions the model may call.
            system_instruction: Free-text system prompt.

        Returns:
            An async iterator of StreamItem. Closing it releases the
            underlying stream.

        Raises:
            ProviderError: If the request cannot be started.
        """
        pass


class GeminiProvider(ModelProvider):
    """Google Gemini provider, via the google-genai SDK."""

    def __init__(self, model: str, api_key: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(model, api_key, timeout)
        self._client: Any = None

    @property
    def provider_name(self) -> str:
        return "google"

    def _get_client(self) -> Any:
        """Lazy-initialize the Gemini client."""
        if self._client is None:
            if not self.api_key:
                raise ProviderError("GEMINI_API_KEY is not set")
            try:
                from google import genai
            except ImportError as e:
                raise ProviderError(
                    "google-genai package required. Install with: pip install google-genai"
                ) from e
            http_options = None
            if self.timeout:
                # HttpOptions.timeout is in milliseconds
                http_options = genai.types.HttpOptions(timeout=int(self.timeout * 1000))
            self._client = genai.Client(api_key=self.api_key, http_options=http_options)
        return self._client

    def _build_config(
        self,
        declarations: Optional[List[FunctionDeclaration]],
        system_instruction: Optional[str],
    ) -> Any:
        from google.genai import types

        config_kwargs: Dict[str, Any] = {}
        if system_instruction:
            config_kwargs["system_instruction"] = system_instruction
        if declarations:
            config_kwargs["tools"] = [
                types.Tool(
                    function_declarations=[
                        types.FunctionDeclaration(
                            name=d.name,
                            description=d.description,
                            parameters_json_schema=d.parameters,
                        )
                        for d in declarations
                    ]
                )
            ]
        return types.GenerateContentConfig(**config_kwargs)

    async def generate_stream(
        self,
        contents: List[Turn],
        declarations: Optional[List[FunctionDeclaration]] = None,
        system_instruction: Optional[str] = None,
    ) -> AsyncIterator[StreamItem]:
        client = self._get_client()
        try:
            stream = await client.aio.models.generate_content_stream(
                model=self.model,
                contents=contents,
                config=self._build_config(declarations, system_instruction),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise ProviderError(f"Gemini request failed: {e}") from e
        return self._iterate(stream)

    async def _iterate(self, stream: Any) -> AsyncIterator[StreamItem]:
        try:
            async for chunk in stream:
                for item in self._parse_chunk(chunk):
                    yield item
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise ProviderError(f"Gemini stream failed: {e}") from e
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    @staticmethod
    def _parse_chunk(chunk: Any) -> Iterator[StreamItem]:
        """Split one response chunk into items, keeping part order."""
        candidates = getattr(chunk, "candidates", None) or []
        if not candidates or candidates[0].content is None:
            return
        for part in candidates[0].content.parts or []:
            if getattr(part, "thought", False):
                continue
            fc = getattr(part, "function_call", None)
            if fc is not None:
                yield StreamItem(function_calls=[FunctionCall(name=fc.name or "", args=dict(fc.args or {}))])
            elif getattr(part, "text", None):
                yield StreamItem(text=part.text)


class ProviderFactory:
    """Factory for creating provider instances."""

    _providers: Dict[str, Type[ModelProvider]] = {
        "google": GeminiProvider,
        "gemini": GeminiProvider,
    }

    @classmethod
    def register(cls, name: str, provider_class: Type[ModelProvider]) -> None:
        """Register a new provider."""
        cls._providers[name] = provider_class

    @classmethod
    def create(cls, config: Config) -> ModelProvider:
        """
        Create the configured provider instance.

        Args:
            config: ToolBridge configuration.

        Returns:
            Provider instance.

        Raises:
            ValueError: If the provider is not recognized.
        """
        provider_name = config.merged.model.provider
        if provider_name not in cls._providers:
            raise ValueError(f"Unknown provider: {provider_name}")

        provider_class = cls._providers[provider_name]
        return provider_class(
            model=config.get_model_name(),
            api_key=config.get_api_key(),
            timeout=config.merged.model.timeout,
        )

    @classmethod
    def available_providers(cls) -> List[str]:
        """Get list of available provider names."""
        return list(cls._providers.keys())
