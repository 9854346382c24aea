"""Main refinement loop orchestrator."""

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

import config

from .costs import CostAccumulator, PriceTable
from .errors import (
    AgentInvocationError,
    GenerationError,
    JudgeLoopError,
    UnrecoverableError,
    ValidationError,
)
from .events import EventBus
from .generator import ImageClient
from .judge import IterationContext, JudgePanel, resolve_panel
from .schemas import (
    Agent,
    CompletionReason,
    EventType,
    GeneratedImage,
    GenerationMode,
    GenerationRequest,
    ImageParams,
    IssueSeverity,
    IterationSnapshot,
    IterationStrategy,
    JudgeResult,
    PromptOptimizerConfig,
    RequestStatus,
)
from .state import check_transition, terminal_changes, validate_request
from .store import JsonRunArchive, MemoryStore
from .synthesizer import PromptSynthesizer

logger = logging.getLogger(__name__)

_AVOID_PREFIX = "AVOID:"
# "AVOID: <problem>[ - <fix>][ (from <agent>)]"
_AVOID_LINE = re.compile(r"^AVOID:\s*(?P<problem>.*?)(?: - .*?)?(?: \(from [^()]*\))?$")

_CONTINUABLE = (RequestStatus.COMPLETED, RequestStatus.FAILED)


def is_diminishing(scores: Sequence[float], window: int, epsilon: float) -> bool:
    """True when the last ``window`` aggregate scores span less than ``epsilon`` points."""
    if epsilon <= 0 or window < 2 or len(scores) < window:
        return False
    recent = scores[-window:]
    return max(recent) - min(recent) < epsilon


def _avoid_problem(line: str) -> str:
    match = _AVOID_LINE.match(line.strip())
    problem = match.group("problem") if match else line[len(_AVOID_PREFIX):]
    return problem.strip().lower()


def accumulate_negative_prompts(
    existing: Optional[str],
    results: Sequence[JudgeResult],
    per_iteration: int = config.NEGATIVE_PROMPTS_PER_ITERATION,
    max_lines: int = config.MAX_NEGATIVE_PROMPT_LINES,
) -> Optional[str]:
    """Fold the most severe judge issues into the request's negative prompts.

    User-written lines are kept as-is. Judge-derived ``AVOID:`` lines are
    de-duplicated by their problem text and only the newest ``max_lines``
    are kept.
    """
    lines = [line for line in (existing or "").splitlines() if line.strip()]
    user_lines = [line for line in lines if not line.startswith(_AVOID_PREFIX)]
    avoid_lines = [line for line in lines if line.startswith(_AVOID_PREFIX)]
    known = {_avoid_problem(line) for line in avoid_lines}

    issues = sorted(
        (r for r in results if r.top_issue is not None),
        key=lambda r: (r.top_issue.severity.rank, -r.optimization_weight),
    )
    for r in issues[:per_iteration]:
        problem = r.top_issue.problem.strip()
        if problem.lower() in known:
            continue
        known.add(problem.lower())
        fix = f" - {r.top_issue.fix.strip()}" if r.top_issue.fix.strip() else ""
        avoid_lines.append(f"{_AVOID_PREFIX} {problem}{fix} (from {r.agent_name})")

    merged = user_lines + avoid_lines[-max_lines:]
    return "\n".join(merged) or None


def most_severe_issue(results: Sequence[JudgeResult]) -> Optional[IssueSeverity]:
    severities = [r.top_issue.severity for r in results if r.top_issue is not None]
    return min(severities, key=lambda s: s.rank) if severities else None


def select_iteration_strategy(
    mode: GenerationMode,
    iteration: int,
    best_score: float,
    previous_scores: Sequence[float],
    top_issue_severity: Optional[IssueSeverity],
    consecutive_edits: int,
) -> IterationStrategy:
    """Decide whether ``iteration`` regenerates from a prompt or edits the last image.

    Regeneration mode always regenerates and edit mode always edits after the
    first iteration. Mixed mode regenerates on weak foundations (low best
    score, a critical or major issue, too many edits in a row) and edits to
    fix moderate or minor issues or to break a high-scoring plateau.
    """
    if mode == GenerationMode.REGENERATION:
        return IterationStrategy.REGENERATE
    if mode == GenerationMode.EDIT and iteration > 1:
        if consecutive_edits >= config.EDIT_DEGRADATION_WARNING:
            logger.warning(f"[EDIT_DEGRADATION] {consecutive_edits} consecutive edits, quality may degrade")
        return IterationStrategy.EDIT

    # No image to edit yet
    if iteration <= 1:
        return IterationStrategy.REGENERATE
    if best_score < config.EDIT_MIN_SCORE:
        return IterationStrategy.REGENERATE
    if consecutive_edits >= config.MAX_CONSECUTIVE_EDITS:
        return IterationStrategy.REGENERATE
    if top_issue_severity in (IssueSeverity.CRITICAL, IssueSeverity.MAJOR):
        return IterationStrategy.REGENERATE
    if top_issue_severity in (IssueSeverity.MODERATE, IssueSeverity.MINOR):
        return IterationStrategy.EDIT

    recent = list(previous_scores[-config.EDIT_PLATEAU_WINDOW:])
    plateau = (
        len(recent) >= config.EDIT_PLATEAU_WINDOW
        and max(recent) - min(recent) < config.EDIT_PLATEAU_SPREAD
    )
    if plateau and best_score >= config.EDIT_PLATEAU_MIN_SCORE:
        return IterationStrategy.EDIT
    return IterationStrategy.REGENERATE


@dataclass
class _Run:
    """Per-run state owned by the thread driving one request."""

    request_id: str
    panel: list[Agent]
    costs: CostAccumulator
    deadline: float
    status: RequestStatus
    prompt_history: list[str] = field(default_factory=list)
    consecutive_edits: int = 0


@dataclass
class _Step:
    """How the next iteration produces its candidates.

    ``prompt`` is the text prompt carried between regenerations; an edit step
    additionally carries the instruction and the image it applies to.
    """

    prompt: str
    strategy: IterationStrategy = IterationStrategy.REGENERATE
    instruction: Optional[str] = None
    source_image: Optional[GeneratedImage] = None

    @property
    def prompt_used(self) -> str:
        return self.instruction if self.strategy == IterationStrategy.EDIT else self.prompt


def _last_text_prompt(request: GenerationRequest) -> str:
    for snapshot in reversed(request.iterations):
        if snapshot.strategy == IterationStrategy.REGENERATE:
            return snapshot.prompt_used
    return request.initial_prompt or request.brief


class GenerationOrchestrator:
    """Drives generation requests through generate, judge and optimize passes."""

    def __init__(
        self,
        store: MemoryStore,
        image_client: ImageClient,
        panel: JudgePanel,
        synthesizer: PromptSynthesizer,
        events: Optional[EventBus] = None,
        optimizer_config: Optional[PromptOptimizerConfig] = None,
        prices: Optional[PriceTable] = None,
        archive: Optional[JsonRunArchive] = None,
        generation_max_attempts: int = config.GENERATION_MAX_ATTEMPTS,
        generation_retry_delay: float = config.GENERATION_RETRY_DELAY,
        timeout: float = config.ORCHESTRATION_TIMEOUT_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the orchestrator.

        Args:
            store: Persistence for agents and requests.
            image_client: Produces candidate images for a prompt.
            panel: Judges candidates.
            synthesizer: Writes the next prompt from judge feedback.
            events: Progress event bus. A private bus is created if None.
            optimizer_config: Process-wide optimizer settings, loaded once.
            prices: Price table for cost estimates.
            archive: Writes iteration and summary JSON when given.
            generation_max_attempts: Attempts per image generation call.
            generation_retry_delay: First backoff delay in seconds (doubles).
            timeout: Wall-clock budget for one run in seconds.
            sleep: Backoff sleep, replaceable in tests.
            clock: Monotonic clock for the run deadline.
        """
        self.store = store
        self.image_client = image_client
        self.panel = panel
        self.synthesizer = synthesizer
        self.events = events or EventBus()
        self.optimizer_config = optimizer_config or PromptOptimizerConfig.from_config()
        self.prices = prices or PriceTable.from_config()
        self.archive = archive
        self.generation_max_attempts = max(1, generation_max_attempts)
        self.generation_retry_delay = generation_retry_delay
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock
        self._cancel_requested: set[str] = set()
        self._lock = threading.Lock()

    def create_request(
        self,
        brief: str,
        judge_ids: Sequence[str],
        threshold: int = config.DEFAULT_THRESHOLD,
        max_iterations: int = config.DEFAULT_MAX_ITERATIONS,
        image_params: Optional[ImageParams] = None,
        reference_image_urls: Sequence[str] = (),
        negative_prompts: Optional[str] = None,
        initial_prompt: Optional[str] = None,
        description: Optional[str] = None,
    ) -> GenerationRequest:
        """Validate and persist a new ``pending`` request.

        Raises:
            ValidationError: the request is malformed or names unknown agents.
        """
        request = GenerationRequest(
            brief=brief,
            judge_ids=list(judge_ids),
            threshold=threshold,
            max_iterations=max_iterations,
            image_params=image_params or ImageParams(),
            reference_image_urls=list(reference_image_urls),
            negative_prompts=negative_prompts,
            initial_prompt=initial_prompt,
            description=description,
        )
        validate_request(request)
        resolve_panel(request.judge_ids, self.store.get_agent)
        request = self.store.create_request(request)
        logger.info(
            f"[REQUEST_CREATED] RequestID: {request.id} | Judges: {len(request.judge_ids)} | "
            f"Threshold: {request.threshold} | MaxIterations: {request.max_iterations} | "
            f"Mode: {request.image_params.generation_mode.value}"
        )
        return request

    def request_cancel(self, request_id: str) -> bool:
        """Ask a run to stop. Observed before the next iteration starts.

        Returns:
            False when the request is already terminal and nothing was recorded.

        Raises:
            KeyError: the request does not exist.
        """
        request = self.store.get_request(request_id)
        if request.is_terminal:
            logger.info(f"[CANCEL_IGNORED] RequestID: {request_id} already {request.status.value}")
            return False
        with self._lock:
            self._cancel_requested.add(request_id)
        logger.info(f"[CANCEL_REQUESTED] RequestID: {request_id}")
        return True

    def _cancel_pending(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._cancel_requested

    def run(self, request_id: str, prompt_override: Optional[str] = None) -> GenerationRequest:
        """Drive a request until it reaches a terminal state.

        Failures never propagate: they terminate the request as ``failed``.

        Returns:
            The final request record.
        """
        request = self.store.get_request(request_id)
        if request.is_terminal:
            logger.info(f"[RUN_SKIPPED] RequestID: {request_id} already {request.status.value}")
            return request

        costs = CostAccumulator(self.prices, request.costs)
        try:
            last = request.iterations[-1] if request.iterations else None
            run = _Run(
                request_id=request_id,
                panel=resolve_panel(request.judge_ids, self.store.get_agent),
                costs=costs,
                deadline=self._clock() + self.timeout,
                status=request.status,
                prompt_history=[
                    snapshot.prompt_used
                    for snapshot in request.iterations
                    if snapshot.strategy == IterationStrategy.REGENERATE
                ],
                consecutive_edits=last.consecutive_edit_count if last else 0,
            )
            self._loop(run, prompt_override)
        except JudgeLoopError as exc:
            logger.error(f"[ORCHESTRATION_FAILED] RequestID: {request_id} | {type(exc).__name__}: {exc}")
            self.terminate(request_id, CompletionReason.ERROR, error_message=str(exc), costs=costs)
        except Exception as exc:
            logger.exception(f"[ORCHESTRATION_FAILED] RequestID: {request_id} | Unexpected error")
            self.terminate(
                request_id,
                CompletionReason.ERROR,
                error_message=f"{type(exc).__name__}: {exc}",
                costs=costs,
            )
        return self.store.get_request(request_id)

    def continue_request(
        self,
        request_id: str,
        additional_iterations: int,
        prompt_override: Optional[str] = None,
        judge_ids: Optional[Sequence[str]] = None,
        generation_mode: Optional[GenerationMode] = None,
    ) -> GenerationRequest:
        """Re-open a completed or failed request for more iterations and run it.

        Without ``prompt_override`` the run resumes from the last iteration's
        feedback, by optimizing its prompt or editing its image.

        Args:
            request_id: The request to continue.
            additional_iterations: Iterations allowed from the current one.
            prompt_override: Prompt for the first continued iteration.
            judge_ids: Replacement judge panel. Every agent must be able to judge.
            generation_mode: Replacement generation mode.

        Returns:
            The final request record of the continued run.

        Raises:
            ValidationError: the request cannot be continued or the new panel is invalid.
        """
        if additional_iterations < 1:
            raise ValidationError(f"additional_iterations must be >= 1, got {additional_iterations}")
        request = self.store.get_request(request_id)
        if request.status not in _CONTINUABLE:
            raise ValidationError(f"Cannot continue request with status: {request.status.value}")

        changes = {
            "status": RequestStatus.PENDING,
            "completion_reason": None,
            "final_image_id": None,
            "error_message": None,
            "completed_at": None,
            "max_iterations": request.current_iteration + additional_iterations,
        }
        if judge_ids:
            judge_ids = list(judge_ids)
            if len(set(judge_ids)) != len(judge_ids):
                raise ValidationError("judge_ids must not contain duplicates")
            non_judges = [agent.name for agent in self.store.get_agents(judge_ids) if not agent.can_judge]
            if non_judges:
                raise ValidationError(f"The following agents are not configured as judges: {', '.join(non_judges)}")
            resolve_panel(judge_ids, self.store.get_agent)
            changes["judge_ids"] = judge_ids
        if generation_mode is not None:
            changes["image_params"] = request.image_params.model_copy(update={"generation_mode": generation_mode})

        request = self.store.update_request(request_id, changes, allow_terminal=True)
        with self._lock:
            self._cancel_requested.discard(request_id)
        logger.info(
            f"[REQUEST_CONTINUED] RequestID: {request_id} | MaxIterations: {request.max_iterations} | "
            f"Judges: {len(request.judge_ids)} | Override: {prompt_override is not None}"
        )
        self.events.emit(
            request_id,
            EventType.STATUS_CHANGE,
            {"status": RequestStatus.PENDING.value},
            iteration_number=request.current_iteration,
        )
        return self.run(request_id, prompt_override=prompt_override)

    def _loop(self, run: _Run, prompt_override: Optional[str]) -> None:
        request = self.store.get_request(run.request_id)
        if prompt_override:
            step = _Step(prompt=prompt_override)
        elif request.iterations:
            step = self._plan(run, request, _last_text_prompt(request), list(request.iterations[-1].judge_results))
        else:
            step = _Step(prompt=request.initial_prompt or request.brief)

        while True:
            if self._cancel_pending(run.request_id):
                self.terminate(run.request_id, CompletionReason.CANCELLED, costs=run.costs)
                return
            if self._clock() > run.deadline:
                self._handle_timeout(run)
                return

            iteration = request.current_iteration + 1
            logger.info(
                f"[ITERATION_START] RequestID: {run.request_id} | Iteration: {iteration}/{request.max_iterations} | "
                f"Strategy: {step.strategy.value}"
            )

            request = self._set_status(run, RequestStatus.GENERATING, iteration)
            images, step = self._produce(run, step, request, iteration)

            request = self._set_status(run, RequestStatus.EVALUATING, iteration)
            context = IterationContext(
                current_iteration=iteration,
                max_iterations=request.max_iterations,
                previous_scores=request.scores(),
            )
            evaluations = self.panel.evaluate_candidates(images, request, run.panel, context, run.costs)
            # max() keeps the first candidate on ties
            best = max(evaluations, key=lambda e: e.aggregate_score)

            snapshot = IterationSnapshot(
                iteration_number=iteration,
                prompt_used=step.prompt_used,
                judge_results=tuple(best.results),
                aggregate_score=best.aggregate_score,
                selected_image_id=best.image_id,
                images=tuple(images),
                failed_judge_ids=tuple(best.failures),
                strategy=step.strategy,
                edit_source_image_id=step.source_image.id if step.source_image else None,
                consecutive_edit_count=run.consecutive_edits,
            )
            request = self.store.append_iteration(
                run.request_id,
                snapshot,
                extra={
                    "costs": run.costs.totals,
                    "negative_prompts": accumulate_negative_prompts(request.negative_prompts, best.results),
                },
            )
            if step.strategy == IterationStrategy.REGENERATE:
                run.prompt_history.append(step.prompt)
            if self.archive is not None:
                self.archive.save_iteration(run.request_id, snapshot)

            logger.info(
                f"[ITERATION_COMPLETE] RequestID: {run.request_id} | Iteration: {iteration} | "
                f"AggregateScore: {best.aggregate_score:.2f} | Threshold: {request.threshold} | "
                f"FailedJudges: {len(best.failures)}"
            )
            self.events.emit(
                run.request_id,
                EventType.ITERATION_COMPLETE,
                {"iteration": snapshot.model_dump(mode="json"), "iterationNumber": iteration},
                iteration_number=iteration,
            )

            reason = self._termination_reason(request, best.aggregate_score)
            if reason is not None:
                if reason == CompletionReason.SUCCESS:
                    final_image_id = best.image_id
                else:
                    final_image_id = request.best_iteration().selected_image_id
                self.terminate(run.request_id, reason, final_image_id=final_image_id, costs=run.costs)
                return

            step = self._plan(run, request, step.prompt, best.results)

    def _termination_reason(self, request: GenerationRequest, score: float) -> Optional[CompletionReason]:
        params = request.image_params
        if score >= request.threshold:
            return CompletionReason.SUCCESS
        if request.current_iteration >= request.max_iterations:
            return CompletionReason.MAX_RETRIES_REACHED
        if is_diminishing(request.scores(), params.plateau_window_size, params.plateau_epsilon):
            logger.info(
                f"[DIMINISHING_RETURNS] RequestID: {request.id} | "
                f"Recent: {request.scores()[-params.plateau_window_size:]} | Epsilon: {params.plateau_epsilon}"
            )
            return CompletionReason.DIMINISHING_RETURNS
        return None

    def _handle_timeout(self, run: _Run) -> None:
        request = self.store.get_request(run.request_id)
        logger.warning(
            f"[ORCHESTRATION_TIMEOUT] RequestID: {run.request_id} | "
            f"Iterations: {request.current_iteration} | Timeout: {self.timeout}s"
        )
        best = request.best_iteration()
        if best is None:
            self.terminate(
                run.request_id,
                CompletionReason.ERROR,
                error_message=f"Orchestration timed out after {self.timeout}s with no image",
                costs=run.costs,
            )
        else:
            self.terminate(
                run.request_id,
                CompletionReason.MAX_RETRIES_REACHED,
                final_image_id=best.selected_image_id,
                costs=run.costs,
            )

    def _set_status(self, run: _Run, status: RequestStatus, iteration: int) -> GenerationRequest:
        check_transition(run.status, status)
        request = self.store.update_request(run.request_id, {"status": status, "costs": run.costs.totals})
        run.status = status
        self.events.emit(
            run.request_id,
            EventType.STATUS_CHANGE,
            {"status": status.value},
            iteration_number=iteration,
        )
        return request

    def _produce(
        self,
        run: _Run,
        step: _Step,
        request: GenerationRequest,
        iteration: int,
    ) -> tuple[list[GeneratedImage], _Step]:
        """Render the iteration's candidates, falling back from an edit to regeneration."""
        params = request.image_params
        if step.strategy == IterationStrategy.EDIT:
            try:
                images = self._generate_with_retry(
                    run, step.instruction, params, request.negative_prompts, iteration, source_image=step.source_image
                )
            except UnrecoverableError as exc:
                logger.warning(
                    f"[EDIT_FALLBACK] RequestID: {run.request_id} | Iteration: {iteration} | "
                    f"Edit failed, falling back to regeneration: {exc}"
                )
                step = _Step(prompt=step.prompt)
            else:
                run.consecutive_edits += 1
                return images, step

        run.consecutive_edits = 0
        images = self._generate_with_retry(run, step.prompt, params, request.negative_prompts, iteration)
        return images, step

    def _generate_with_retry(
        self,
        run: _Run,
        prompt: str,
        params: ImageParams,
        negative_prompt: Optional[str],
        iteration: int,
        source_image: Optional[GeneratedImage] = None,
    ) -> list[GeneratedImage]:
        """Call the image client with exponential backoff.

        Raises:
            UnrecoverableError: every attempt failed.
        """
        delay = self.generation_retry_delay
        last_error: Optional[Exception] = None
        for attempt in range(1, self.generation_max_attempts + 1):
            try:
                images = self.image_client.generate(
                    prompt, params, negative_prompt=negative_prompt, source_image=source_image
                )
                if not images:
                    raise GenerationError("Image client returned no images")
            except Exception as exc:
                last_error = exc
                logger.warning(
                    f"[GENERATION_RETRY] RequestID: {run.request_id} | "
                    f"Attempt: {attempt}/{self.generation_max_attempts} | {exc}"
                )
                if attempt < self.generation_max_attempts:
                    self._sleep(delay)
                    delay *= 2
                continue

            run.costs.add(image_generations=len(images))
            for image in images:
                image.iteration_number = iteration
                image.prompt_used = prompt
            return images

        raise UnrecoverableError(
            f"Image generation failed after {self.generation_max_attempts} attempts: {last_error}"
        ) from last_error

    def _plan(
        self,
        run: _Run,
        request: GenerationRequest,
        prompt: str,
        results: Sequence[JudgeResult],
    ) -> _Step:
        """Choose the next iteration's strategy and write its prompt or edit instruction."""
        request = self._set_status(run, RequestStatus.OPTIMIZING, request.current_iteration)
        best = request.best_iteration()
        strategy = select_iteration_strategy(
            request.image_params.generation_mode,
            request.current_iteration + 1,
            best.aggregate_score if best else 0.0,
            request.scores(),
            most_severe_issue(results),
            run.consecutive_edits,
        )
        logger.info(
            f"[STRATEGY_SELECTED] RequestID: {run.request_id} | Iteration: {request.current_iteration + 1} | "
            f"Mode: {request.image_params.generation_mode.value} | Strategy: {strategy.value} | "
            f"ConsecutiveEdits: {run.consecutive_edits}"
        )

        if strategy == IterationStrategy.EDIT and request.iterations:
            source = request.find_image(request.iterations[-1].selected_image_id)
            instruction = self._edit_instruction(run, request, results) if source else None
            if instruction is not None:
                return _Step(prompt=prompt, strategy=strategy, instruction=instruction, source_image=source)
        return _Step(prompt=self._optimize(run, request, prompt, results))

    def _edit_instruction(
        self,
        run: _Run,
        request: GenerationRequest,
        results: Sequence[JudgeResult],
    ) -> Optional[str]:
        try:
            result = self.synthesizer.edit_instruction(request.brief, results, self.optimizer_config)
        except AgentInvocationError as exc:
            logger.warning(f"[EDIT_INSTRUCTION_FALLBACK] RequestID: {run.request_id} | Regenerating instead: {exc}")
            return None
        run.costs.add(llm_tokens=result.token_usage.total)
        return result.prompt

    def _optimize(
        self,
        run: _Run,
        request: GenerationRequest,
        prompt: str,
        results: Sequence[JudgeResult],
    ) -> str:
        try:
            reference_context = self.panel.reference_context(run.panel, request, prompt, run.costs)
            result = self.synthesizer.synthesize(
                request.brief,
                prompt,
                results,
                self.optimizer_config,
                negative_prompts=request.negative_prompts,
                previous_prompts=run.prompt_history,
                reference_context=reference_context,
                has_reference_images=bool(request.reference_image_urls),
            )
        except AgentInvocationError as exc:
            logger.warning(f"[OPTIMIZE_FALLBACK] RequestID: {run.request_id} | Reusing previous prompt: {exc}")
            return prompt
        run.costs.add(llm_tokens=result.token_usage.total)
        return result.prompt

    def terminate(
        self,
        request_id: str,
        reason: CompletionReason,
        final_image_id: Optional[str] = None,
        error_message: Optional[str] = None,
        costs: Optional[CostAccumulator] = None,
    ) -> GenerationRequest:
        """Move a request to its terminal state. A no-op if it is already terminal.

        Judge calls that timed out but are still running are waited for (up to
        the panel's drain timeout) so their cost lands in the final totals.
        """
        request = self.store.get_request(request_id)
        if request.is_terminal:
            logger.debug(f"[TERMINATE_SKIPPED] RequestID: {request_id} already {request.status.value}")
            return request

        changes = terminal_changes(reason, final_image_id, error_message)
        changes["completed_at"] = datetime.now(timezone.utc)
        if costs is not None:
            self.panel.drain(costs)
            changes["costs"] = costs.totals
        request = self.store.update_request(request_id, changes)
        with self._lock:
            self._cancel_requested.discard(request_id)

        logger.info(
            f"[REQUEST_TERMINATED] RequestID: {request_id} | Status: {request.status.value} | "
            f"Reason: {reason.value} | Iterations: {request.current_iteration} | "
            f"FinalImage: {request.final_image_id}"
        )
        if request.status == RequestStatus.FAILED:
            self.events.emit(
                request_id,
                EventType.FAILED,
                {"errorMessage": request.error_message},
                iteration_number=request.current_iteration,
            )
        else:
            self.events.emit(
                request_id,
                EventType.COMPLETED,
                {"finalImageId": request.final_image_id, "completionReason": reason.value},
                iteration_number=request.current_iteration,
            )

        if self.archive is not None:
            summary = CostAccumulator(self.prices, request.costs).summary()
            self.archive.save_summary(request, summary)
        return request
