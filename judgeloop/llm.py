"""LLM and embedding provider abstraction using LangChain."""

import base64
import logging
import threading
from io import BytesIO
from pathlib import Path
from typing import Any, Literal, Optional, Protocol, Sequence

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage
from langchain_openai import ChatOpenAI, OpenAIEmbeddings
from PIL import Image
from pydantic import BaseModel, ConfigDict

import config

from .costs import estimate_tokens
from .errors import AgentInvocationError
from .schemas import Agent, LLMResponse, PromptOptimizerConfig, TokenUsage

logger = logging.getLogger(__name__)

# Anthropic extended-thinking budgets per agent thinking level
THINKING_BUDGETS = {"low": 1024, "medium": 4096, "high": 16000}


def get_chat_model(
    provider: Literal["openai", "anthropic"] | None = None,
    model: str | None = None,
    **kwargs,
) -> BaseChatModel:
    """Get a chat model instance based on provider.

    Args:
        provider: LLM provider ("openai" or "anthropic"). Uses config default if None.
        model: Model name. Uses provider default if None.
        **kwargs: Additional arguments passed to the model constructor.

    Returns:
        LangChain chat model instance.
    """
    provider = provider or config.LLM_PROVIDER

    if provider == "openai":
        return ChatOpenAI(
            model=model or "gpt-4o",
            api_key=config.OPENAI_API_KEY,
            **kwargs,
        )
    elif provider == "anthropic":
        return ChatAnthropic(
            model=model or "claude-sonnet-4-20250514",
            api_key=config.ANTHROPIC_API_KEY,
            **kwargs,
        )
    else:
        raise ValueError(f"Unknown provider: {provider}. Use 'openai' or 'anthropic'.")


def model_for_tier(tier: str, provider: str | None = None) -> str:
    """Resolve an agent model tier ("fast", "standard", "pro") to a model name."""
    provider = provider or config.LLM_PROVIDER
    tiers = config.MODEL_TIERS.get(provider)
    if tiers is None:
        raise ValueError(f"Unknown provider: {provider}")
    return tiers.get(tier, tiers[config.DEFAULT_MODEL_TIER])


class ModelSettings(BaseModel):
    """Per-call model parameters derived from an agent or the optimizer config."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model: str
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    thinking_level: Optional[str] = None

    @classmethod
    def for_agent(cls, agent: Agent, provider: str | None = None) -> "ModelSettings":
        return cls(
            model=model_for_tier(agent.model_tier, provider),
            temperature=agent.temperature,
            max_tokens=agent.max_tokens,
            thinking_level=agent.thinking_level,
        )

    @classmethod
    def for_optimizer(cls, optimizer: PromptOptimizerConfig) -> "ModelSettings":
        return cls(
            model=optimizer.model,
            temperature=optimizer.temperature,
            max_tokens=optimizer.max_tokens,
        )


class LanguageModelClient(Protocol):
    def invoke(self, settings: ModelSettings, messages: Sequence[BaseMessage]) -> LLMResponse:
        ...


class EmbeddingModelClient(Protocol):
    def embed(self, text: str) -> list[float]:
        ...


def _message_text(content: Any) -> str:
    """Flatten LangChain message content (str or list of blocks) to text."""
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


class LLMClient:
    """Invokes chat models for judges and the prompt optimizer."""

    def __init__(self, provider: Literal["openai", "anthropic"] | None = None):
        self.provider = provider or config.LLM_PROVIDER
        self._models: dict[ModelSettings, BaseChatModel] = {}
        self._lock = threading.Lock()

    def _model_kwargs(self, settings: ModelSettings) -> dict:
        kwargs: dict[str, Any] = {"temperature": settings.temperature}
        if settings.max_tokens is not None:
            kwargs["max_tokens"] = settings.max_tokens
        budget = THINKING_BUDGETS.get(settings.thinking_level or "")
        if budget and self.provider == "anthropic":
            # Extended thinking requires temperature 1 and room beyond the budget
            kwargs["temperature"] = 1.0
            kwargs["max_tokens"] = max(kwargs.get("max_tokens") or 0, budget + 1024)
            kwargs["thinking"] = {"type": "enabled", "budget_tokens": budget}
        return kwargs

    def _get_model(self, settings: ModelSettings) -> BaseChatModel:
        with self._lock:
            model = self._models.get(settings)
            if model is None:
                model = get_chat_model(
                    provider=self.provider,
                    model=settings.model,
                    **self._model_kwargs(settings),
                )
                self._models[settings] = model
                logger.debug(f"[MODEL_LOADED] Provider: {self.provider} | Model: {settings.model}")
            return model

    def invoke(self, settings: ModelSettings, messages: Sequence[BaseMessage]) -> LLMResponse:
        try:
            result = self._get_model(settings).invoke(list(messages))
        except Exception as exc:
            raise AgentInvocationError(f"{settings.model} call failed: {exc}") from exc

        text = _message_text(result.content)
        usage = getattr(result, "usage_metadata", None) or {}
        token_usage = TokenUsage(
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0) or estimate_tokens(text),
        )
        return LLMResponse(text=text, token_usage=token_usage)


class EmbeddingClient:
    """Embeds retrieval queries with OpenAI embeddings."""

    def __init__(self, model: str | None = None):
        self.model = model or config.EMBEDDING_MODEL
        self._embeddings: Optional[OpenAIEmbeddings] = None

    @property
    def embeddings(self) -> OpenAIEmbeddings:
        """Lazy-load the embeddings client."""
        if self._embeddings is None:
            self._embeddings = OpenAIEmbeddings(model=self.model, api_key=config.OPENAI_API_KEY)
        return self._embeddings

    def embed(self, text: str) -> list[float]:
        return self.embeddings.embed_query(text)

    def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        return self.embeddings.embed_documents(list(texts))


def image_to_data_url(image: Image.Image | Path | str) -> str:
    """Return a URL a vision model can read.

    http(s) and data URLs pass through unchanged; local files and PIL
    images are encoded as base64 PNG data URLs.
    """
    if isinstance(image, str):
        if image.startswith(("http://", "https://", "data:")):
            return image
        image = Path(image)

    if isinstance(image, Path):
        image = Image.open(image)

    buffer = BytesIO()
    image.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("utf-8")
    return f"data:image/png;base64,{encoded}"
