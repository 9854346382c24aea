"""Judge panel: weighted multi-agent evaluation of candidate images."""

import json
import logging
import re
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Optional, Sequence

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, Field

import config

from .costs import CostAccumulator, estimate_tokens
from .errors import AgentInvocationError, UnrecoverableError, ValidationError
from .llm import EmbeddingModelClient, LanguageModelClient, ModelSettings, image_to_data_url
from .retrieval import RetrievalIndex, build_context
from .schemas import (
    Agent,
    GeneratedImage,
    GenerationRequest,
    IssueSeverity,
    JudgeResult,
    TopIssue,
)

logger = logging.getLogger(__name__)


DEFAULT_JUDGE_TEMPLATE = """## EVALUATION INSTRUCTIONS

You are judging an AI-generated image against the original brief. Score it on its absolute merits and stay consistent between iterations.

## SCORING CALIBRATION

- 90-100: Ready to publish as-is. Key elements accurate, strong composition, high technical quality.
- 80-89: Very good. Minor issues a casual viewer would miss.
- 70-79: Good, with noticeable problems (proportions, labels, colors, composition).
- 50-69: Mediocre. Several significant issues; the idea is there, the execution is not.
- 30-49: Poor. Major elements wrong or missing.
- 0-29: Does not resemble the brief.

Typical AI images land between 50 and 65. Reserve scores above 80 for genuinely strong work.

## OUTPUT FORMAT

Reply with a single JSON object and nothing else:

{
  "score": <number 0-100>,
  "TOP_ISSUE": {
    "problem": "<the single most important issue>",
    "severity": "critical|major|moderate|minor",
    "fix": "<specific, actionable fix>"
  },
  "categoryScores": { "<category>": <number 0-100> },
  "whatWorked": ["<specific element worth preserving>"],
  "promptInstructions": ["<exact text to include verbatim in the next prompt>"],
  "feedback": "<detailed feedback referencing visual elements>"
}"""


class IterationContext(BaseModel):
    """Where the loop stands, shown to judges to discourage score drift."""

    current_iteration: int = 1
    max_iterations: int = 1
    previous_scores: list[float] = Field(default_factory=list)


class PanelEvaluation(BaseModel):
    """All judges' verdicts on one candidate image."""

    image_id: str
    aggregate_score: float
    results: list[JudgeResult] = Field(default_factory=list)
    failures: dict[str, str] = Field(
        default_factory=dict,
        description="agent_id -> error message for judges excluded this iteration",
    )
    llm_tokens: int = 0
    embedding_tokens: int = 0


def aggregate(results: Sequence[JudgeResult]) -> float:
    """Weighted mean of scores over the judges that returned a result.

    Falls back to the plain mean when every succeeding judge has weight 0.
    """
    if not results:
        raise ValueError("Cannot aggregate an empty result set")
    total_weight = sum(r.scoring_weight for r in results)
    if total_weight == 0:
        return sum(r.score for r in results) / len(results)
    return sum(r.score * r.scoring_weight for r in results) / total_weight


def resolve_panel(
    judge_ids: Sequence[str],
    load_agent: Callable[[str], Optional[Agent]],
) -> list[Agent]:
    """Resolve configured judge ids to the eligible panel.

    Team members of each eligible judge are appended after it (depth-first,
    each agent at most once). Agents that cannot judge or are inactive are
    dropped.

    Raises:
        ValidationError: a configured id is unknown or no eligible judge remains.
    """
    panel: list[Agent] = []
    seen: set[str] = set()

    def visit(agent_id: str, required: bool) -> None:
        if agent_id in seen:
            return
        seen.add(agent_id)
        agent = load_agent(agent_id)
        if agent is None:
            if required:
                raise ValidationError(f"Unknown judge agent id: {agent_id}")
            logger.warning(f"[PANEL_SKIP] Team member {agent_id} not found")
            return
        if not agent.is_eligible_judge:
            logger.warning(
                f"[PANEL_FILTER] Agent {agent.name} skipped "
                f"(can_judge={agent.can_judge}, status={agent.status.value})"
            )
            return
        panel.append(agent)
        for member_id in agent.team_agent_ids:
            visit(member_id, required=False)

    for judge_id in judge_ids:
        visit(judge_id, required=True)

    if not panel:
        raise ValidationError("No eligible judge agents: every configured agent is inactive or cannot judge")
    logger.info(
        "[PANEL_RESOLVED] "
        + ", ".join(f"{a.name}(w:{a.scoring_weight})" for a in panel)
    )
    return panel


def detect_team_cycle(
    agent_id: str,
    proposed_team_ids: Sequence[str],
    load_agent: Callable[[str], Optional[Agent]],
) -> Optional[list[str]]:
    """Return the cycle path if giving ``agent_id`` this team would create one."""
    team = list(proposed_team_ids)

    def team_of(current: str) -> list[str]:
        if current == agent_id:
            return team
        agent = load_agent(current)
        return agent.team_agent_ids if agent else []

    path: list[str] = []
    on_path: set[str] = set()
    finished: set[str] = set()

    def dfs(current: str) -> Optional[list[str]]:
        path.append(current)
        on_path.add(current)
        for member in team_of(current):
            if member in on_path:
                return path[path.index(member):] + [member]
            if member not in finished:
                cycle = dfs(member)
                if cycle:
                    return cycle
        on_path.discard(current)
        finished.add(current)
        path.pop()
        return None

    return dfs(agent_id)


_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_EMBEDDING_CACHE_SIZE = 256


def parse_judge_response(text: str) -> dict:
    """Extract the judge's verdict from its reply.

    Raises:
        AgentInvocationError: no JSON object or no numeric score was found.
    """
    match = _JSON_OBJECT.search(text or "")
    if not match:
        raise AgentInvocationError("Judge response contained no JSON object")
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise AgentInvocationError(f"Judge response JSON is malformed: {exc}") from exc

    try:
        score = float(parsed["score"])
    except (KeyError, TypeError, ValueError) as exc:
        raise AgentInvocationError("Judge response has no numeric score") from exc
    if score != score:  # NaN
        raise AgentInvocationError("Judge response score is NaN")

    top_issue = None
    raw_issue = parsed.get("TOP_ISSUE") or parsed.get("topIssue") or parsed.get("top_issue")
    if isinstance(raw_issue, dict) and raw_issue.get("problem"):
        try:
            severity = IssueSeverity(str(raw_issue.get("severity", "moderate")).lower())
        except ValueError:
            severity = IssueSeverity.MODERATE
        top_issue = TopIssue(
            problem=str(raw_issue["problem"]),
            severity=severity,
            fix=str(raw_issue.get("fix") or ""),
        )

    category_scores = {}
    for name, value in (parsed.get("categoryScores") or parsed.get("category_scores") or {}).items():
        try:
            category_scores[str(name)] = min(100.0, max(0.0, float(value)))
        except (TypeError, ValueError):
            continue

    def _strings(*keys: str) -> list[str]:
        for key in keys:
            value = parsed.get(key)
            if isinstance(value, list):
                return [str(item).strip() for item in value if isinstance(item, str) and item.strip()]
        return []

    return {
        "score": min(100.0, max(0.0, score)),
        "feedback": str(parsed.get("feedback") or "No feedback provided"),
        "top_issue": top_issue,
        "category_scores": category_scores,
        "what_worked": _strings("whatWorked", "what_worked"),
        "prompt_instructions": _strings("promptInstructions", "prompt_instructions"),
    }


def build_evaluation_prompt(
    agent: Agent,
    brief: str,
    prompt_used: str,
    reference_context: str = "",
    context: Optional[IterationContext] = None,
) -> str:
    parts = ["## Task: Evaluate this image", ""]

    if context and context.previous_scores:
        previous = ", ".join(f"{s:.1f}" for s in context.previous_scores)
        parts += [
            "### Iteration Context",
            f"This is iteration {context.current_iteration} of {context.max_iterations}. "
            f"Previous scores: [{previous}].",
            "Score on absolute merit. Raise the score only if earlier problems were actually fixed.",
            "",
        ]

    parts += ["### Original Brief", brief, "", "### Prompt Used for Generation", prompt_used, ""]

    if reference_context:
        parts += [reference_context, ""]

    if agent.evaluation_categories:
        parts += ["### Evaluation Categories"]
        parts += [f"- {category}" for category in agent.evaluation_categories]
        parts += [""]

    return "\n".join(parts)


class JudgePanel:
    """Runs every panel judge against candidate images in parallel."""

    def __init__(
        self,
        llm: LanguageModelClient,
        embedder: Optional[EmbeddingModelClient] = None,
        index: Optional[RetrievalIndex] = None,
        timeout: float = config.JUDGE_TIMEOUT_SECONDS,
        max_workers: int = config.JUDGE_MAX_WORKERS,
        drain_timeout: float = config.JUDGE_DRAIN_SECONDS,
    ):
        """Initialize the panel.

        Args:
            llm: Chat model client used for every judge call.
            embedder: Embeds retrieval queries. Retrieval is skipped if None.
            index: Reference-document index. Retrieval is skipped if None.
            timeout: Seconds a single judge call may run before it is treated as failed.
            max_workers: Upper bound on concurrent judge calls per evaluation.
            drain_timeout: Seconds ``drain`` waits for timed-out calls to finish.
        """
        self.llm = llm
        self.embedder = embedder
        self.index = index
        self.timeout = timeout
        self.max_workers = max_workers
        self.drain_timeout = drain_timeout
        self._embedding_cache: dict[str, list[float]] = {}
        self._embedding_lock = threading.Lock()
        # Timed-out calls still running, with the accumulator they charge
        self._stragglers: list[tuple[CostAccumulator, Future]] = []
        self._stragglers_lock = threading.Lock()

    def _query_embedding(self, text: str, costs: Optional[CostAccumulator]) -> list[float]:
        with self._embedding_lock:
            cached = self._embedding_cache.get(text)
            if cached is not None:
                return cached
            vector = self.embedder.embed(text)
            if len(self._embedding_cache) >= _EMBEDDING_CACHE_SIZE:
                self._embedding_cache.clear()
            self._embedding_cache[text] = vector
        if costs is not None:
            costs.add(embedding_tokens=estimate_tokens(text))
        return vector

    def _reference_context(
        self,
        agent: Agent,
        request: GenerationRequest,
        prompt_used: str,
        costs: Optional[CostAccumulator],
    ) -> tuple[str, list[str]]:
        if self.index is None or self.embedder is None or not self.index.has_documents(agent.id):
            return "", []
        query = f"{request.brief} {prompt_used}"
        chunks = self.index.query(agent.id, self._query_embedding(query, costs), rag_config=agent.rag_config)
        if not chunks:
            logger.debug(f"[EVAL_RAG_EMPTY] Agent: {agent.name} - No relevant chunks found")
        return build_context(chunks), [chunk.chunk_id for chunk in chunks]

    def reference_context(
        self,
        panel: Sequence[Agent],
        request: GenerationRequest,
        prompt_used: str,
        costs: Optional[CostAccumulator] = None,
        top_k: int = config.RAG_TOP_K,
    ) -> str:
        """Reference guidelines pooled from every panel agent's documents.

        Raises:
            AgentInvocationError: embedding the query or searching the index failed.
        """
        if self.index is None or self.embedder is None:
            return ""
        agents = [agent for agent in panel if self.index.has_documents(agent.id)]
        if not agents:
            return ""
        pooled = {}
        try:
            embedding = self._query_embedding(f"{request.brief} {prompt_used}", costs)
            for agent in agents:
                for chunk in self.index.query(agent.id, embedding, rag_config=agent.rag_config):
                    pooled.setdefault(chunk.chunk_id, chunk)
        except Exception as exc:
            raise AgentInvocationError(f"Reference retrieval failed: {exc}") from exc
        ranked = sorted(pooled.values(), key=lambda c: (-c.similarity, c.chunk_index, c.document_id))
        return build_context(ranked[:top_k])

    def judge(
        self,
        agent: Agent,
        image: GeneratedImage,
        request: GenerationRequest,
        context: Optional[IterationContext] = None,
        costs: Optional[CostAccumulator] = None,
    ) -> JudgeResult:
        """Evaluate ``image`` with a single judge.

        Raises:
            AgentInvocationError: the model call or response parsing failed.
        """
        start = time.monotonic()
        prompt_used = image.prompt_used or request.brief
        try:
            reference_context, chunk_ids = self._reference_context(agent, request, prompt_used, costs)
        except Exception as exc:
            raise AgentInvocationError(f"Retrieval failed for {agent.name}: {exc}", agent.id) from exc

        system = f"{agent.system_prompt}\n\n{agent.judge_prompt or DEFAULT_JUDGE_TEMPLATE}"
        text = build_evaluation_prompt(agent, request.brief, prompt_used, reference_context, context)
        messages = [
            SystemMessage(content=system),
            HumanMessage(content=[
                {"type": "text", "text": text},
                {"type": "image_url", "image_url": {"url": image_to_data_url(image.url)}},
            ]),
        ]

        try:
            response = self.llm.invoke(ModelSettings.for_agent(agent), messages)
        except AgentInvocationError as exc:
            exc.agent_id = agent.id
            raise
        except Exception as exc:
            raise AgentInvocationError(f"Judge {agent.name} failed: {exc}", agent.id) from exc

        tokens = response.token_usage.total
        if costs is not None:
            costs.add(llm_tokens=tokens)

        try:
            verdict = parse_judge_response(response.text)
        except AgentInvocationError as exc:
            logger.warning(f"[EVAL_PARSE_FAIL] Agent: {agent.name} | {exc} | Response: {response.text[:200]!r}")
            exc.agent_id = agent.id
            raise

        logger.info(
            f"[EVAL_COMPLETE] Agent: {agent.name} | ImageID: {image.id} | "
            f"Score: {verdict['score']:.1f} | Weight: {agent.scoring_weight} | "
            f"Time: {int((time.monotonic() - start) * 1000)}ms"
        )
        return JudgeResult(
            agent_id=agent.id,
            agent_name=agent.name,
            image_id=image.id,
            scoring_weight=agent.scoring_weight,
            optimization_weight=agent.optimization_weight,
            retrieved_chunk_ids=chunk_ids,
            token_usage=tokens,
            **verdict,
        )

    def evaluate(
        self,
        image: GeneratedImage,
        request: GenerationRequest,
        panel: Sequence[Agent],
        context: Optional[IterationContext] = None,
        costs: Optional[CostAccumulator] = None,
    ) -> PanelEvaluation:
        """Score one candidate with the whole panel."""
        return self.evaluate_candidates([image], request, panel, context, costs)[0]

    def evaluate_candidates(
        self,
        images: Sequence[GeneratedImage],
        request: GenerationRequest,
        panel: Sequence[Agent],
        context: Optional[IterationContext] = None,
        costs: Optional[CostAccumulator] = None,
    ) -> list[PanelEvaluation]:
        """Score every candidate with every judge, fanning all calls out at once.

        A judge that raises or runs past ``timeout`` is excluded for that
        candidate and the remaining weights are re-normalized.

        Raises:
            UnrecoverableError: every judge failed for some candidate.
        """
        if not panel:
            raise ValidationError("Judge panel is empty")

        started_at: dict[tuple[str, str], float] = {}
        usage: dict[tuple[str, str], int] = {}

        def run(agent: Agent, image: GeneratedImage) -> JudgeResult:
            key = (image.id, agent.id)
            started_at[key] = time.monotonic()
            result = self.judge(agent, image, request, context, costs)
            usage[key] = result.token_usage
            return result

        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="judge")
        futures: dict[Future, tuple[GeneratedImage, Agent]] = {}
        try:
            for image in images:
                for agent in panel:
                    futures[pool.submit(run, agent, image)] = (image, agent)
            results, failures = self._collect(futures, started_at)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
            # Timed-out calls keep running and charge ``costs`` when they finish
            self._track_stragglers(futures, costs)

        evaluations = []
        for image in images:
            image_results = [r for r in results if r.image_id == image.id]
            image_failures = failures.get(image.id, {})
            if not image_results:
                details = "; ".join(f"{agent_id}: {msg}" for agent_id, msg in image_failures.items())
                raise UnrecoverableError(
                    f"All {len(panel)} judges failed for image {image.id}: {details}"
                )
            # Keep panel order so ties and logs are deterministic
            order = {agent.id: i for i, agent in enumerate(panel)}
            image_results.sort(key=lambda r: order[r.agent_id])
            evaluations.append(
                PanelEvaluation(
                    image_id=image.id,
                    aggregate_score=aggregate(image_results),
                    results=image_results,
                    failures=image_failures,
                    llm_tokens=sum(usage.get((image.id, r.agent_id), 0) for r in image_results),
                )
            )
            logger.info(
                f"[AGGREGATE_IMAGE] ImageID: {image.id} | Judges: {len(image_results)}/{len(panel)} | "
                f"AggregateScore: {evaluations[-1].aggregate_score:.2f}"
            )
        return evaluations

    def _track_stragglers(self, futures, costs: Optional[CostAccumulator]) -> None:
        running = [future for future in futures if not future.done()]
        if costs is None or not running:
            return
        with self._stragglers_lock:
            self._stragglers.extend((costs, future) for future in running)
        logger.debug(f"[EVAL_STRAGGLERS] Running: {len(running)}")

    def drain(self, costs: CostAccumulator, timeout: Optional[float] = None) -> int:
        """Wait for timed-out judge calls that still charge ``costs``.

        Args:
            costs: The accumulator of the run being finished.
            timeout: Seconds to wait; ``drain_timeout`` if None.

        Returns:
            Number of calls that were still outstanding after the wait.
        """
        with self._stragglers_lock:
            mine = [future for owner, future in self._stragglers if owner is costs]
            self._stragglers = [(owner, future) for owner, future in self._stragglers if owner is not costs]
        if not mine:
            return 0
        _, not_done = wait(mine, timeout=self.drain_timeout if timeout is None else timeout)
        if not_done:
            logger.warning(f"[EVAL_DRAIN_TIMEOUT] {len(not_done)} judge calls still running; their cost is not recorded")
        return len(not_done)

    def _collect(
        self,
        futures: dict[Future, tuple[GeneratedImage, Agent]],
        started_at: dict[tuple[str, str], float],
    ) -> tuple[list[JudgeResult], dict[str, dict[str, str]]]:
        results: list[JudgeResult] = []
        failures: dict[str, dict[str, str]] = {}
        pending = set(futures)

        def fail(future: Future, message: str) -> None:
            image, agent = futures[future]
            failures.setdefault(image.id, {})[agent.id] = message
            logger.warning(f"[EVAL_JUDGE_FAILED] Agent: {agent.name} | ImageID: {image.id} | {message}")

        while pending:
            now = time.monotonic()
            deadlines = [
                started_at[(futures[f][0].id, futures[f][1].id)] + self.timeout
                for f in pending
                if (futures[f][0].id, futures[f][1].id) in started_at
            ]
            wait_for = max(0.0, min(deadlines) - now) if deadlines else min(self.timeout, 0.05)
            done, pending = wait(pending, timeout=wait_for, return_when=FIRST_COMPLETED)

            for future in done:
                try:
                    results.append(future.result())
                except AgentInvocationError as exc:
                    fail(future, str(exc))
                except Exception as exc:
                    fail(future, f"{type(exc).__name__}: {exc}")

            now = time.monotonic()
            for future in list(pending):
                image, agent = futures[future]
                started = started_at.get((image.id, agent.id))
                if started is not None and now - started >= self.timeout:
                    pending.discard(future)
                    future.cancel()
                    fail(future, f"timed out after {self.timeout:.0f}s")
        return results, failures
