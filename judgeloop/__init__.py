"""Judge-panel image refinement loop."""

from .schemas import Agent, AgentDocument, GenerationRequest, ImageParams, IterationSnapshot, JudgeResult
from .errors import JudgeLoopError, ValidationError, UnrecoverableError
from .costs import CostAccumulator, PriceTable
from .retrieval import RetrievalIndex
from .judge import JudgePanel, resolve_panel
from .synthesizer import PromptSynthesizer
from .generator import DiffusersImageClient
from .events import EventBus
from .store import JsonRunArchive, MemoryStore
from .pipeline import GenerationOrchestrator
from .llm import EmbeddingClient, LLMClient, get_chat_model

__all__ = [
    "Agent",
    "AgentDocument",
    "GenerationRequest",
    "ImageParams",
    "IterationSnapshot",
    "JudgeResult",
    "JudgeLoopError",
    "ValidationError",
    "UnrecoverableError",
    "CostAccumulator",
    "PriceTable",
    "RetrievalIndex",
    "JudgePanel",
    "resolve_panel",
    "PromptSynthesizer",
    "DiffusersImageClient",
    "EventBus",
    "JsonRunArchive",
    "MemoryStore",
    "GenerationOrchestrator",
    "EmbeddingClient",
    "LLMClient",
    "get_chat_model",
]
