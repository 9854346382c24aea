"""Pydantic schemas for structured data flow in the refinement loop."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

import config


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RequestStatus(str, Enum):
    """Lifecycle states of a generation request."""

    PENDING = "pending"
    OPTIMIZING = "optimizing"
    GENERATING = "generating"
    EVALUATING = "evaluating"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {RequestStatus.COMPLETED, RequestStatus.FAILED, RequestStatus.CANCELLED}
)


class CompletionReason(str, Enum):
    """Why a request reached a terminal state."""

    SUCCESS = "SUCCESS"
    MAX_RETRIES_REACHED = "MAX_RETRIES_REACHED"
    DIMINISHING_RETURNS = "DIMINISHING_RETURNS"
    CANCELLED = "CANCELLED"
    ERROR = "ERROR"


class AgentType(str, Enum):
    EXPERT = "EXPERT"
    AUDIENCE = "AUDIENCE"


class AgentStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class IssueSeverity(str, Enum):
    """Severity of a judge's top issue, most severe first."""

    CRITICAL = "critical"
    MAJOR = "major"
    MODERATE = "moderate"
    MINOR = "minor"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    IssueSeverity.CRITICAL: 0,
    IssueSeverity.MAJOR: 1,
    IssueSeverity.MODERATE: 2,
    IssueSeverity.MINOR: 3,
}


class GenerationMode(str, Enum):
    """How later iterations produce candidates."""

    REGENERATION = "regeneration"
    EDIT = "edit"
    MIXED = "mixed"


class IterationStrategy(str, Enum):
    REGENERATE = "regenerate"
    EDIT = "edit"


class EventType(str, Enum):
    STATUS_CHANGE = "STATUS_CHANGE"
    ITERATION_COMPLETE = "ITERATION_COMPLETE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class RagConfig(BaseModel):
    """Retrieval settings for an agent's reference documents."""

    top_k: int = Field(
        default=config.RAG_TOP_K,
        ge=1,
        le=20,
        description="Maximum number of chunks returned per query",
    )
    similarity_threshold: float = Field(
        default=config.RAG_SIMILARITY_THRESHOLD,
        ge=0.0,
        le=1.0,
        description="Minimum cosine similarity for a chunk to be returned",
    )


class ImageParams(BaseModel):
    """Image generation parameters for a request."""

    images_per_generation: int = Field(
        default=config.DEFAULT_IMAGES_PER_GENERATION,
        ge=1,
        description="Candidates generated and judged per iteration",
    )
    aspect_ratio: Optional[str] = Field(
        default=None,
        description='Aspect ratio hint, e.g. "16:9" or "1:1"',
    )
    quality: Optional[str] = Field(
        default=None,
        description='Quality hint, e.g. "1K", "2K"',
    )
    generation_mode: GenerationMode = Field(
        default=GenerationMode.REGENERATION,
        description="regeneration always prompts from scratch; edit refines the previous best image; mixed picks per iteration",
    )
    plateau_window_size: int = Field(
        default=config.PLATEAU_WINDOW_SIZE,
        ge=2,
        description="Number of recent aggregate scores inspected for diminishing returns",
    )
    plateau_epsilon: float = Field(
        default=config.PLATEAU_EPSILON,
        ge=0.0,
        description="Stop when the recent scores span less than this many points (0 disables)",
    )


class AgentCapabilities(BaseModel):
    """Capability tags that decide how an agent takes part in a panel."""

    can_judge: bool = True
    agent_type: AgentType = AgentType.EXPERT


class Agent(BaseModel):
    """A judge/optimizer persona shared read-only across requests."""

    model_config = ConfigDict(protected_namespaces=())

    id: str = Field(default_factory=_new_id)
    name: str
    system_prompt: str = Field(..., description="Persona instructions")
    judge_prompt: Optional[str] = Field(
        default=None,
        description="Evaluation-specific instructions; the default judge template is used if unset",
    )
    evaluation_categories: list[str] = Field(default_factory=list)
    optimization_weight: int = Field(default=50, ge=0)
    scoring_weight: int = Field(default=50, ge=0)
    rag_config: RagConfig = Field(default_factory=RagConfig)
    capabilities: AgentCapabilities = Field(default_factory=AgentCapabilities)
    model_tier: str = config.DEFAULT_MODEL_TIER
    thinking_level: Optional[str] = None
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1000, ge=1)
    status: AgentStatus = AgentStatus.ACTIVE
    team_agent_ids: list[str] = Field(
        default_factory=list,
        description="Delegate agents expanded into the panel when this agent judges",
    )

    @property
    def can_judge(self) -> bool:
        return self.capabilities.can_judge

    @property
    def agent_type(self) -> AgentType:
        return self.capabilities.agent_type

    @property
    def is_eligible_judge(self) -> bool:
        return self.capabilities.can_judge and self.status == AgentStatus.ACTIVE


class DocumentChunk(BaseModel):
    """A chunk of reference text with its embedding vector."""

    id: str = Field(default_factory=_new_id)
    content: str
    embedding: list[float]
    chunk_index: int = Field(..., ge=0)
    page_number: Optional[int] = None
    section_header: Optional[str] = None


class AgentDocument(BaseModel):
    """Reference material owned by one agent."""

    id: str = Field(default_factory=_new_id)
    agent_id: str
    filename: str
    mime_type: str = "text/plain"
    version: int = Field(default=1, ge=1)
    chunks: list[DocumentChunk] = Field(default_factory=list)
    chunk_count: Optional[int] = None

    @model_validator(mode="after")
    def _check_chunk_count(self) -> "AgentDocument":
        if self.chunk_count is None:
            self.chunk_count = len(self.chunks)
        elif self.chunk_count != len(self.chunks):
            raise ValueError(
                f"chunk_count={self.chunk_count} does not match {len(self.chunks)} chunks"
            )
        return self


class TopIssue(BaseModel):
    """The single most important thing a judge wants fixed."""

    problem: str
    severity: IssueSeverity = IssueSeverity.MODERATE
    fix: str = ""


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


class LLMResponse(BaseModel):
    """Text returned by a language-model call plus its token usage."""

    text: str
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class GeneratedImage(BaseModel):
    """A candidate image produced by the image generation client."""

    id: str = Field(default_factory=_new_id)
    url: str = Field(..., description="http(s) URL, data URL or local file path")
    width: Optional[int] = None
    height: Optional[int] = None
    mime_type: str = "image/png"
    size_bytes: Optional[int] = None
    iteration_number: int = 0
    prompt_used: str = ""


class JudgeResult(BaseModel):
    """One judge's evaluation of one candidate image."""

    agent_id: str
    agent_name: str
    image_id: str
    score: float = Field(..., ge=0.0, le=100.0)
    feedback: str = ""
    scoring_weight: int = Field(default=50, ge=0)
    optimization_weight: int = Field(default=50, ge=0)
    category_scores: dict[str, float] = Field(default_factory=dict)
    top_issue: Optional[TopIssue] = None
    what_worked: list[str] = Field(default_factory=list)
    prompt_instructions: list[str] = Field(default_factory=list)
    retrieved_chunk_ids: list[str] = Field(default_factory=list)
    token_usage: int = 0


class IterationSnapshot(BaseModel):
    """Immutable record of one loop pass."""

    model_config = ConfigDict(frozen=True)

    iteration_number: int = Field(..., ge=1)
    prompt_used: str
    judge_results: tuple[JudgeResult, ...] = ()
    aggregate_score: float = Field(..., ge=0.0, le=100.0)
    selected_image_id: str
    images: tuple[GeneratedImage, ...] = ()
    failed_judge_ids: tuple[str, ...] = ()
    strategy: IterationStrategy = IterationStrategy.REGENERATE
    edit_source_image_id: Optional[str] = None
    consecutive_edit_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def image_ids(self) -> list[str]:
        return [image.id for image in self.images]


class CostTotals(BaseModel):
    """Running usage totals. The monetary estimate is derived, never stored."""

    llm_tokens: int = Field(default=0, ge=0)
    image_generations: int = Field(default=0, ge=0)
    embedding_tokens: int = Field(default=0, ge=0)


class PromptOptimizerConfig(BaseModel):
    """Process-wide optimizer settings, loaded once at startup."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model: str = config.OPTIMIZER_MODEL
    temperature: float = Field(default=config.OPTIMIZER_TEMPERATURE, ge=0.0, le=2.0)
    max_tokens: Optional[int] = config.OPTIMIZER_MAX_TOKENS
    system_prompt: Optional[str] = None

    @classmethod
    def from_config(cls) -> "PromptOptimizerConfig":
        return cls(
            model=config.OPTIMIZER_MODEL,
            temperature=config.OPTIMIZER_TEMPERATURE,
            max_tokens=config.OPTIMIZER_MAX_TOKENS,
        )


class GenerationRequest(BaseModel):
    """The unit of work driven by the orchestrator."""

    id: str = Field(default_factory=_new_id)
    brief: str = Field(..., description="User-supplied description of the desired image")
    reference_image_urls: list[str] = Field(default_factory=list)
    negative_prompts: Optional[str] = None
    judge_ids: list[str] = Field(default_factory=list)
    image_params: ImageParams = Field(default_factory=ImageParams)
    threshold: int = config.DEFAULT_THRESHOLD
    max_iterations: int = config.DEFAULT_MAX_ITERATIONS
    initial_prompt: Optional[str] = Field(
        default=None,
        description="Overrides the brief as the first iteration's prompt",
    )
    status: RequestStatus = RequestStatus.PENDING
    current_iteration: int = 0
    final_image_id: Optional[str] = None
    completion_reason: Optional[CompletionReason] = None
    iterations: list[IterationSnapshot] = Field(default_factory=list)
    costs: CostTotals = Field(default_factory=CostTotals)
    error_message: Optional[str] = None
    description: Optional[str] = None
    version: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def best_iteration(self) -> Optional[IterationSnapshot]:
        """Highest-scoring iteration; ties go to the latest one."""
        best = None
        for snapshot in self.iterations:
            if best is None or snapshot.aggregate_score >= best.aggregate_score:
                best = snapshot
        return best

    def scores(self) -> list[float]:
        return [snapshot.aggregate_score for snapshot in self.iterations]

    def find_image(self, image_id: Optional[str]) -> Optional[GeneratedImage]:
        for snapshot in self.iterations:
            for image in snapshot.images:
                if image.id == image_id:
                    return image
        return None

    def check_invariants(self) -> list[str]:
        """Return a list of violated invariants (empty when consistent)."""
        problems = []
        if not self.judge_ids:
            problems.append("judge_ids is empty")
        if not 0 <= self.threshold <= 100:
            problems.append(f"threshold {self.threshold} outside [0, 100]")
        if not 0 <= self.current_iteration <= self.max_iterations:
            problems.append(
                f"current_iteration {self.current_iteration} outside [0, {self.max_iterations}]"
            )
        if len(self.iterations) != self.current_iteration:
            problems.append(
                f"{len(self.iterations)} iterations recorded but current_iteration={self.current_iteration}"
            )
        if self.is_terminal != (self.completion_reason is not None):
            problems.append("completion_reason must be set iff the request is terminal")
        if (self.status == RequestStatus.COMPLETED) != (self.final_image_id is not None):
            problems.append("final_image_id must be set iff the request completed")
        if (self.status == RequestStatus.FAILED) != bool(self.error_message):
            problems.append("error_message must be set iff the request failed")
        return problems
