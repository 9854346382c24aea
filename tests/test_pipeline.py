import pytest

from judgeloop.costs import CostAccumulator
from judgeloop.errors import ValidationError
from judgeloop.pipeline import accumulate_negative_prompts, is_diminishing, select_iteration_strategy
from judgeloop.schemas import (
    AgentCapabilities,
    AgentDocument,
    AgentStatus,
    CompletionReason,
    DocumentChunk,
    EventType,
    GenerationMode,
    ImageParams,
    IssueSeverity,
    IterationStrategy,
    JudgeResult,
    RequestStatus,
    TopIssue,
)
from judgeloop.store import JsonRunArchive

from fakes import TOKENS_PER_CALL, FakeClock, FakeImageClient, FakeLLM, make_agent


def _run(build_orchestrator, scores, max_iterations=5, threshold=75, agents=None, **kwargs):
    agents = agents or [make_agent(name) for name in scores]
    llm = kwargs.pop("llm", None) or FakeLLM(scores=scores)
    image_params = kwargs.pop("image_params", None)
    orchestrator, images = build_orchestrator(llm, agents, **kwargs)
    request = orchestrator.create_request(
        brief="A lighthouse at dusk, watercolor",
        judge_ids=[a.id for a in agents],
        threshold=threshold,
        max_iterations=max_iterations,
        image_params=image_params,
    )
    return orchestrator, request, llm, images


def test_reaching_threshold_completes_with_success(build_orchestrator):
    orchestrator, request, llm, _ = _run(build_orchestrator, {"Brand": [60, 74, 76]})

    result = orchestrator.run(request.id)

    assert result.status == RequestStatus.COMPLETED
    assert result.completion_reason == CompletionReason.SUCCESS
    assert result.current_iteration == 3
    assert result.scores() == [60, 74, 76]
    assert result.final_image_id == result.iterations[-1].selected_image_id
    assert result.check_invariants() == []


def test_max_iterations_wins_over_success_check_order(build_orchestrator):
    orchestrator, request, _, _ = _run(build_orchestrator, {"Brand": [50, 55]}, max_iterations=2)

    result = orchestrator.run(request.id)

    assert result.completion_reason == CompletionReason.MAX_RETRIES_REACHED
    assert result.current_iteration == 2
    # Best of all iterations
    assert result.final_image_id == result.iterations[1].selected_image_id
    assert result.check_invariants() == []


def test_success_on_last_iteration_is_success(build_orchestrator):
    orchestrator, request, _, _ = _run(build_orchestrator, {"Brand": [50, 80]}, max_iterations=2)

    assert orchestrator.run(request.id).completion_reason == CompletionReason.SUCCESS


def test_plateau_stops_with_diminishing_returns(build_orchestrator):
    orchestrator, request, _, _ = _run(build_orchestrator, {"Brand": [70, 60, 61]})

    result = orchestrator.run(request.id)

    assert result.completion_reason == CompletionReason.DIMINISHING_RETURNS
    assert result.current_iteration == 3
    assert result.final_image_id == result.iterations[0].selected_image_id


def test_weighted_aggregate_recorded_per_iteration(build_orchestrator):
    agents = [make_agent("Brand", 70), make_agent("Critic", 30)]
    orchestrator, request, _, _ = _run(
        build_orchestrator, {"Brand": [80], "Critic": [60]}, max_iterations=1, agents=agents
    )

    result = orchestrator.run(request.id)

    assert result.iterations[0].aggregate_score == pytest.approx(74.0)
    assert len(result.iterations[0].judge_results) == 2


def test_failed_judge_is_excluded_for_the_iteration(build_orchestrator):
    agents = [make_agent("Brand", 70), make_agent("Flaky", 30)]
    orchestrator, request, _, _ = _run(
        build_orchestrator, {"Brand": [80], "Flaky": [None]}, agents=agents
    )

    result = orchestrator.run(request.id)

    assert result.completion_reason == CompletionReason.SUCCESS
    assert result.iterations[0].aggregate_score == 80
    assert result.iterations[0].failed_judge_ids == ("flaky",)


def test_all_judges_failing_fails_the_request(build_orchestrator):
    agents = [make_agent("Brand"), make_agent("Critic")]
    orchestrator, request, _, _ = _run(
        build_orchestrator, {"Brand": [None], "Critic": [None]}, agents=agents
    )
    failures = []
    orchestrator.events.subscribe(request.id, lambda e: failures.append(e) if e.type == EventType.FAILED else None)

    result = orchestrator.run(request.id)

    assert result.status == RequestStatus.FAILED
    assert result.completion_reason == CompletionReason.ERROR
    assert result.error_message
    assert result.final_image_id is None
    assert result.current_iteration == 0
    assert result.costs.image_generations == 1
    assert len(failures) == 1
    assert failures[0].data["errorMessage"] == result.error_message


def test_cancellation_observed_at_next_iteration_boundary(build_orchestrator):
    orchestrator, request, _, images = _run(build_orchestrator, {"Brand": [50, 60, 70]})

    def cancel_after_first(event):
        if event.type == EventType.ITERATION_COMPLETE and event.iteration_number == 1:
            orchestrator.request_cancel(request.id)

    orchestrator.events.subscribe(request.id, cancel_after_first)
    result = orchestrator.run(request.id)

    assert result.status == RequestStatus.CANCELLED
    assert result.completion_reason == CompletionReason.CANCELLED
    assert result.current_iteration == 1
    assert result.final_image_id is None
    assert len(images.calls) == 1
    assert result.check_invariants() == []


def test_iteration_count_matches_after_every_iteration(build_orchestrator, store):
    orchestrator, request, _, _ = _run(build_orchestrator, {"Brand": [40, 50, 60, 70]})
    observed = []

    def check(event):
        if event.type == EventType.ITERATION_COMPLETE:
            record = store.get_request(request.id)
            observed.append((len(record.iterations), record.current_iteration, event.iteration_number))

    orchestrator.events.subscribe(request.id, check)
    orchestrator.run(request.id)

    assert observed == [(n, n, n) for n in range(1, 6)]


def test_concurrent_description_edit_is_preserved(build_orchestrator, store):
    orchestrator, request, _, _ = _run(build_orchestrator, {"Brand": [50, 60, 80]})

    def admin_edit(event):
        if event.type == EventType.ITERATION_COMPLETE and event.iteration_number == 1:
            store.update_request(request.id, {"description": "Spring campaign"})

    orchestrator.events.subscribe(request.id, admin_edit)
    result = orchestrator.run(request.id)

    assert result.completion_reason == CompletionReason.SUCCESS
    assert result.description == "Spring campaign"


def test_event_sequence(build_orchestrator):
    orchestrator, request, _, _ = _run(build_orchestrator, {"Brand": [50, 80]})

    orchestrator.run(request.id)

    sequence = [(e.type, e.data.get("status"), e.iteration_number) for e in orchestrator.events.history(request.id)]
    assert sequence == [
        (EventType.STATUS_CHANGE, "generating", 1),
        (EventType.STATUS_CHANGE, "evaluating", 1),
        (EventType.ITERATION_COMPLETE, None, 1),
        (EventType.STATUS_CHANGE, "optimizing", 1),
        (EventType.STATUS_CHANGE, "generating", 2),
        (EventType.STATUS_CHANGE, "evaluating", 2),
        (EventType.ITERATION_COMPLETE, None, 2),
        (EventType.COMPLETED, None, 2),
    ]
    completed = orchestrator.events.history(request.id)[-1]
    assert completed.data["completionReason"] == "SUCCESS"


def test_terminate_is_idempotent(build_orchestrator, store):
    orchestrator, request, _, _ = _run(build_orchestrator, {"Brand": [90]})
    result = orchestrator.run(request.id)

    again = orchestrator.terminate(request.id, CompletionReason.ERROR, error_message="late failure")

    assert again.status == RequestStatus.COMPLETED
    assert again.version == result.version
    assert store.get_request(request.id).error_message is None
    terminal_events = [e for e in orchestrator.events.history(request.id) if e.type in (EventType.COMPLETED, EventType.FAILED)]
    assert len(terminal_events) == 1


def test_run_on_terminal_request_is_a_no_op(build_orchestrator):
    orchestrator, request, _, images = _run(build_orchestrator, {"Brand": [90]})
    first = orchestrator.run(request.id)

    second = orchestrator.run(request.id)

    assert second.version == first.version
    assert len(images.calls) == 1


def test_costs_are_tracked_and_additive(build_orchestrator):
    orchestrator, first, _, _ = _run(build_orchestrator, {"Brand": [50, 55]}, max_iterations=2)
    once = orchestrator.run(first.id).costs

    # One judge call per iteration plus one optimizer call in between
    assert once.llm_tokens == 3 * TOKENS_PER_CALL
    assert once.image_generations == 2

    second = orchestrator.create_request(
        brief="A lighthouse at dusk, watercolor", judge_ids=["brand"], max_iterations=2
    )
    orchestrator.panel.llm.judge_calls.clear()
    orchestrator.panel.llm.optimizer_calls.clear()
    again = orchestrator.run(second.id).costs
    assert again == once

    acc = CostAccumulator()
    acc.add(**once.model_dump())
    acc.add(**again.model_dump())
    assert acc.totals.llm_tokens == 2 * once.llm_tokens
    assert acc.totals.image_generations == 2 * once.image_generations


def test_generation_retries_with_backoff(build_orchestrator):
    sleeps = []
    orchestrator, request, _, images = _run(
        build_orchestrator,
        {"Brand": [90]},
        image_client=FakeImageClient(failures=2),
        sleep=sleeps.append,
        generation_retry_delay=0.5,
    )

    result = orchestrator.run(request.id)

    assert result.completion_reason == CompletionReason.SUCCESS
    assert sleeps == [0.5, 1.0]
    assert len(images.calls) == 3
    assert result.costs.image_generations == 1


def test_generation_exhausting_retries_fails(build_orchestrator):
    orchestrator, request, _, images = _run(
        build_orchestrator,
        {"Brand": [90]},
        image_client=FakeImageClient(failures=5),
        generation_max_attempts=3,
    )

    result = orchestrator.run(request.id)

    assert result.status == RequestStatus.FAILED
    assert "Image generation failed after 3 attempts" in result.error_message
    assert len(images.calls) == 3


def test_best_candidate_represents_the_iteration(build_orchestrator):
    llm = FakeLLM(
        image_scores={
            "https://images.test/1.png": 40,
            "https://images.test/2.png": 90,
            "https://images.test/3.png": 90,
        }
    )
    orchestrator, request, _, _ = _run(
        build_orchestrator, {"Brand": []}, llm=llm, image_params=ImageParams(images_per_generation=3)
    )

    result = orchestrator.run(request.id)

    snapshot = result.iterations[0]
    assert len(snapshot.images) == 3
    assert snapshot.selected_image_id == snapshot.images[1].id
    assert result.final_image_id == snapshot.images[1].id
    assert result.costs.image_generations == 3
    assert result.find_image(result.final_image_id).url == "https://images.test/2.png"


def test_optimizer_prompt_feeds_next_iteration(build_orchestrator):
    llm = FakeLLM(scores={"Brand": [50, 60, 90]}, optimizer_replies=["prompt two", "prompt three"])
    orchestrator, request, _, images = _run(build_orchestrator, {"Brand": []}, llm=llm)

    result = orchestrator.run(request.id)

    assert [s.prompt_used for s in result.iterations] == [
        "A lighthouse at dusk, watercolor",
        "prompt two",
        "prompt three",
    ]
    assert [c["prompt"] for c in images.calls] == ["A lighthouse at dusk, watercolor", "prompt two", "prompt three"]
    assert "A lighthouse at dusk, watercolor" in llm.optimizer_calls[1]


def test_optimizer_failure_reuses_previous_prompt(build_orchestrator):
    llm = FakeLLM(scores={"Brand": [50, 60, 90]}, optimizer_replies=[""])
    orchestrator, request, _, _ = _run(build_orchestrator, {"Brand": []}, llm=llm)

    result = orchestrator.run(request.id)

    assert result.completion_reason == CompletionReason.SUCCESS
    assert {s.prompt_used for s in result.iterations} == {"A lighthouse at dusk, watercolor"}


def test_initial_prompt_overrides_brief(build_orchestrator, store):
    llm = FakeLLM(scores={"Brand": [90]})
    orchestrator, _ = build_orchestrator(llm, [make_agent("Brand")])
    request = orchestrator.create_request(
        brief="A lighthouse", judge_ids=["brand"], initial_prompt="lighthouse, dusk, watercolor wash"
    )

    result = orchestrator.run(request.id)

    assert result.iterations[0].prompt_used == "lighthouse, dusk, watercolor wash"


def test_judge_issues_accumulate_into_negative_prompts(build_orchestrator):
    llm = FakeLLM(
        scores={"Brand": [50, 60, 90]},
        issues={"Brand": {"problem": "Washed-out sky", "severity": "major", "fix": "Deepen the dusk colours"}},
    )
    orchestrator, request, _, images = _run(build_orchestrator, {"Brand": []}, llm=llm)

    result = orchestrator.run(request.id)

    assert result.negative_prompts == "AVOID: Washed-out sky - Deepen the dusk colours (from Brand)"
    assert images.calls[1]["negative_prompt"] == result.negative_prompts
    assert "AVOID: Washed-out sky" in llm.optimizer_calls[0]


def test_reference_documents_reach_the_optimizer(build_orchestrator, store):
    orchestrator, request, llm, _ = _run(build_orchestrator, {"Brand": [50, 90]})
    store.save_document(AgentDocument(agent_id="brand", filename="guide.md", chunks=[
        DocumentChunk(content="Lighthouses are painted red and white.", embedding=[1.0, 0.0], chunk_index=0),
    ]))

    orchestrator.run(request.id)

    assert "## Reference Guidelines\nLighthouses are painted red and white." in llm.optimizer_calls[0]


def test_orchestration_timeout_completes_with_best_image(build_orchestrator):
    clock = FakeClock()
    orchestrator, request, _, images = _run(build_orchestrator, {"Brand": [50, 60]}, clock=clock, timeout=100)

    def advance(event):
        if event.type == EventType.ITERATION_COMPLETE:
            clock.now += 500

    orchestrator.events.subscribe(request.id, advance)
    result = orchestrator.run(request.id)

    assert result.completion_reason == CompletionReason.MAX_RETRIES_REACHED
    assert result.current_iteration == 1
    assert result.final_image_id == result.iterations[0].selected_image_id
    assert len(images.calls) == 1


def test_orchestration_timeout_without_image_fails(build_orchestrator):
    orchestrator, request, _, _ = _run(build_orchestrator, {"Brand": [90]}, timeout=-1)

    result = orchestrator.run(request.id)

    assert result.status == RequestStatus.FAILED
    assert "timed out" in result.error_message


def test_continue_request_resumes_with_optimized_prompt(build_orchestrator):
    llm = FakeLLM(scores={"Brand": [50, 90]}, optimizer_replies=["continued prompt"])
    orchestrator, request, _, _ = _run(build_orchestrator, {"Brand": []}, llm=llm, max_iterations=1)
    assert orchestrator.run(request.id).completion_reason == CompletionReason.MAX_RETRIES_REACHED

    result = orchestrator.continue_request(request.id, additional_iterations=2)

    assert result.completion_reason == CompletionReason.SUCCESS
    assert result.max_iterations == 3
    assert result.current_iteration == 2
    assert result.iterations[1].prompt_used == "continued prompt"
    assert result.check_invariants() == []


def test_continue_request_with_prompt_override(build_orchestrator):
    orchestrator, request, llm, _ = _run(build_orchestrator, {"Brand": [50, 90]}, max_iterations=1)
    orchestrator.run(request.id)

    result = orchestrator.continue_request(request.id, 1, prompt_override="lighthouse, stormy sea")

    assert result.iterations[1].prompt_used == "lighthouse, stormy sea"
    assert llm.optimizer_calls == []


def test_continue_request_rejects_unfinished_requests(build_orchestrator):
    orchestrator, request, _, _ = _run(build_orchestrator, {"Brand": [90]})

    with pytest.raises(ValidationError, match="Cannot continue request with status: pending"):
        orchestrator.continue_request(request.id, 1)
    orchestrator.run(request.id)
    with pytest.raises(ValidationError):
        orchestrator.continue_request(request.id, 0)


def test_continue_request_retries_a_failed_request(build_orchestrator):
    orchestrator, request, _, _ = _run(build_orchestrator, {"Brand": [50, None, 90]}, max_iterations=3)
    failed = orchestrator.run(request.id)
    assert failed.status == RequestStatus.FAILED
    assert failed.current_iteration == 1

    result = orchestrator.continue_request(request.id, additional_iterations=1)

    assert result.status == RequestStatus.COMPLETED
    assert result.completion_reason == CompletionReason.SUCCESS
    assert result.error_message is None
    assert result.max_iterations == 2
    assert result.current_iteration == 2
    assert result.check_invariants() == []


def test_continue_request_swaps_judges_and_mode(build_orchestrator, store):
    agents = [
        make_agent("Brand"),
        make_agent("Style"),
        make_agent("Writer", capabilities=AgentCapabilities(can_judge=False)),
    ]
    orchestrator, _ = build_orchestrator(FakeLLM(scores={"Brand": [50], "Style": [90]}), agents)
    request = orchestrator.create_request(brief="A lighthouse at dusk, watercolor", judge_ids=["brand"], max_iterations=1)
    orchestrator.run(request.id)

    with pytest.raises(ValidationError, match="not configured as judges: Writer"):
        orchestrator.continue_request(request.id, 1, judge_ids=["style", "writer"])
    with pytest.raises(ValidationError):
        orchestrator.continue_request(request.id, 1, judge_ids=["ghost"])
    assert store.get_request(request.id).status == RequestStatus.COMPLETED

    result = orchestrator.continue_request(
        request.id, 1, judge_ids=["style"], generation_mode=GenerationMode.MIXED
    )

    assert result.judge_ids == ["style"]
    assert result.image_params.generation_mode == GenerationMode.MIXED
    assert result.completion_reason == CompletionReason.SUCCESS
    assert [r.agent_id for r in result.iterations[1].judge_results] == ["style"]


def test_continue_request_uses_a_fresh_event_key(build_orchestrator):
    orchestrator, request, _, _ = _run(build_orchestrator, {"Brand": [50, 90]}, max_iterations=1)
    orchestrator.run(request.id)

    orchestrator.continue_request(request.id, 1)

    history = orchestrator.events.history(request.id)
    keys = [e.dedupe_key for e in history]
    assert len(set(keys)) == len(keys)
    statuses = [(e.data["status"], e.iteration_number) for e in history if e.type == EventType.STATUS_CHANGE]
    assert statuses[-4:] == [("pending", 1), ("optimizing", 1), ("generating", 2), ("evaluating", 2)]


def test_timed_out_judge_cost_is_recorded(build_orchestrator):
    agents = [make_agent("Brand", 70), make_agent("Slow", 30)]
    llm = FakeLLM(scores={"Brand": [80], "Slow": [10]}, delays={"Slow": 0.5})
    orchestrator, request, _, _ = _run(
        build_orchestrator, {}, llm=llm, agents=agents, max_iterations=1, panel_timeout=0.1
    )

    result = orchestrator.run(request.id)

    assert result.completion_reason == CompletionReason.SUCCESS
    assert result.iterations[0].failed_judge_ids == ("slow",)
    assert result.costs.llm_tokens == 2 * TOKENS_PER_CALL


def test_request_cancel_ignores_finished_and_unknown_requests(build_orchestrator):
    orchestrator, request, _, _ = _run(build_orchestrator, {"Brand": [90]})
    assert orchestrator.request_cancel(request.id) is True
    orchestrator._cancel_requested.clear()
    orchestrator.run(request.id)

    assert orchestrator.request_cancel(request.id) is False
    assert orchestrator._cancel_requested == set()
    with pytest.raises(KeyError):
        orchestrator.request_cancel("no-such-request")


def test_retrieval_error_during_optimization_falls_back(build_orchestrator, store, index, monkeypatch):
    orchestrator, request, llm, _ = _run(build_orchestrator, {"Brand": [50, 90]})
    store.save_document(AgentDocument(agent_id="brand", filename="guide.md", chunks=[
        DocumentChunk(content="Lighthouses are painted red and white.", embedding=[1.0, 0.0], chunk_index=0),
    ]))
    query = index.query
    calls = []

    def flaky_query(*args, **kwargs):
        calls.append(args[0])
        # the optimizer's lookup follows the first judge call
        if len(calls) == 2:
            raise RuntimeError("index unavailable")
        return query(*args, **kwargs)

    monkeypatch.setattr(index, "query", flaky_query)

    result = orchestrator.run(request.id)

    assert result.completion_reason == CompletionReason.SUCCESS
    assert result.iterations[1].prompt_used == "A lighthouse at dusk, watercolor"
    assert llm.optimizer_calls == []


MODERATE_ISSUE = {"problem": "Washed-out sky", "severity": "moderate", "fix": "Deepen the dusk colours"}


def test_mixed_mode_edits_the_previous_best_image(build_orchestrator):
    llm = FakeLLM(
        scores={"Brand": [60, 72, 90]},
        issues={"Brand": MODERATE_ISSUE},
        optimizer_replies=["1. Deepen the sky. Keep everything else exactly the same."],
    )
    orchestrator, request, _, images = _run(
        build_orchestrator, {"Brand": []}, llm=llm, image_params=ImageParams(generation_mode=GenerationMode.MIXED)
    )

    result = orchestrator.run(request.id)

    assert result.completion_reason == CompletionReason.SUCCESS
    assert [s.strategy for s in result.iterations] == [
        IterationStrategy.REGENERATE,
        IterationStrategy.EDIT,
        IterationStrategy.EDIT,
    ]
    assert [s.consecutive_edit_count for s in result.iterations] == [0, 1, 2]
    assert images.calls[0]["source_image"] is None
    assert images.calls[1]["source_image"].id == result.iterations[0].selected_image_id
    assert images.calls[2]["source_image"].id == result.iterations[1].selected_image_id
    assert result.iterations[1].edit_source_image_id == result.iterations[0].selected_image_id
    assert result.iterations[1].prompt_used == "1. Deepen the sky. Keep everything else exactly the same."
    assert images.calls[1]["prompt"] == result.iterations[1].prompt_used


def test_regeneration_mode_never_edits(build_orchestrator):
    llm = FakeLLM(scores={"Brand": [60, 72, 90]}, issues={"Brand": MODERATE_ISSUE})
    orchestrator, request, _, images = _run(build_orchestrator, {"Brand": []}, llm=llm)

    result = orchestrator.run(request.id)

    assert {s.strategy for s in result.iterations} == {IterationStrategy.REGENERATE}
    assert all(call["source_image"] is None for call in images.calls)


def test_failed_edit_falls_back_to_regeneration(build_orchestrator):
    llm = FakeLLM(
        scores={"Brand": [70, 90]},
        issues={"Brand": MODERATE_ISSUE},
        optimizer_replies=["Deepen the sky. Keep everything else exactly the same."],
    )
    orchestrator, request, _, images = _run(
        build_orchestrator,
        {"Brand": []},
        llm=llm,
        image_client=FakeImageClient(edit_failures=2),
        generation_max_attempts=2,
        image_params=ImageParams(generation_mode=GenerationMode.EDIT),
    )

    result = orchestrator.run(request.id)

    assert result.completion_reason == CompletionReason.SUCCESS
    second = result.iterations[1]
    assert second.strategy == IterationStrategy.REGENERATE
    assert second.edit_source_image_id is None
    assert second.consecutive_edit_count == 0
    assert second.prompt_used == "A lighthouse at dusk, watercolor"
    assert [call["source_image"] is not None for call in images.calls] == [False, True, True, False]
    assert result.costs.image_generations == 2


@pytest.mark.parametrize(
    "mode, iteration, best, scores, severity, edits, expected",
    [
        (GenerationMode.REGENERATION, 3, 90, [80, 90], IssueSeverity.MINOR, 0, IterationStrategy.REGENERATE),
        (GenerationMode.EDIT, 1, 0, [], None, 0, IterationStrategy.REGENERATE),
        (GenerationMode.EDIT, 2, 20, [20], IssueSeverity.CRITICAL, 7, IterationStrategy.EDIT),
        (GenerationMode.MIXED, 1, 0, [], None, 0, IterationStrategy.REGENERATE),
        (GenerationMode.MIXED, 2, 45, [45], IssueSeverity.MINOR, 0, IterationStrategy.REGENERATE),
        (GenerationMode.MIXED, 4, 80, [70, 75, 80], IssueSeverity.MINOR, 3, IterationStrategy.REGENERATE),
        (GenerationMode.MIXED, 2, 70, [70], IssueSeverity.MAJOR, 0, IterationStrategy.REGENERATE),
        (GenerationMode.MIXED, 2, 70, [70], IssueSeverity.MODERATE, 0, IterationStrategy.EDIT),
        (GenerationMode.MIXED, 4, 70, [69, 70, 71], None, 0, IterationStrategy.EDIT),
        (GenerationMode.MIXED, 4, 60, [59, 60, 61], None, 0, IterationStrategy.REGENERATE),
        (GenerationMode.MIXED, 3, 70, [60, 70], None, 0, IterationStrategy.REGENERATE),
    ],
)
def test_select_iteration_strategy(mode, iteration, best, scores, severity, edits, expected):
    assert select_iteration_strategy(mode, iteration, best, scores, severity, edits) == expected


def test_negative_prompt_dedupe_compares_whole_problems():
    existing = "AVOID: text overlay - remove the caption (from Brand)\nAVOID: Blur (from Style)"
    results = [
        _issue_result("A", "text", IssueSeverity.MAJOR),
        _issue_result("B", "blur", IssueSeverity.MINOR),
    ]

    merged = accumulate_negative_prompts(existing, results)

    assert merged.splitlines() == [
        "AVOID: text overlay - remove the caption (from Brand)",
        "AVOID: Blur (from Style)",
        "AVOID: text - fix text (from A)",
    ]


def test_create_request_validation(build_orchestrator):
    agents = [make_agent("Brand"), make_agent("Sleeping", status=AgentStatus.INACTIVE)]
    orchestrator, _ = build_orchestrator(FakeLLM(), agents)

    with pytest.raises(ValidationError):
        orchestrator.create_request(brief="x", judge_ids=[])
    with pytest.raises(ValidationError):
        orchestrator.create_request(brief="x", judge_ids=["brand"], threshold=101)
    with pytest.raises(ValidationError):
        orchestrator.create_request(brief="x", judge_ids=["ghost"])
    with pytest.raises(ValidationError):
        orchestrator.create_request(brief="x", judge_ids=["sleeping"])
    assert orchestrator.store.list_requests() == []


def test_archive_receives_iterations_and_summary(build_orchestrator, tmp_path):
    archive = JsonRunArchive(tmp_path / "runs")
    orchestrator, request, _, _ = _run(build_orchestrator, {"Brand": [50, 90]}, archive=archive)

    orchestrator.run(request.id)

    run_dir = tmp_path / "runs" / f"run_{request.id}"
    assert sorted(p.name for p in run_dir.iterdir()) == ["iteration_01.json", "iteration_02.json", "summary.json"]


def test_is_diminishing():
    assert is_diminishing([60, 61], window=2, epsilon=2.0)
    assert not is_diminishing([60, 63], window=2, epsilon=2.0)
    assert not is_diminishing([60], window=2, epsilon=2.0)
    assert not is_diminishing([60, 60], window=2, epsilon=0)
    assert is_diminishing([40, 70, 71, 70.5], window=3, epsilon=2.0)
    assert not is_diminishing([70, 20], window=2, epsilon=2.0)


def _issue_result(name, problem, severity, weight=50):
    return JudgeResult(
        agent_id=name.lower(),
        agent_name=name,
        image_id="img",
        score=50,
        optimization_weight=weight,
        top_issue=TopIssue(problem=problem, severity=severity, fix=f"fix {problem}"),
    )


def test_accumulate_negative_prompts_orders_dedupes_and_caps():
    results = [
        _issue_result("A", "minor thing", IssueSeverity.MINOR),
        _issue_result("B", "broken hands", IssueSeverity.CRITICAL),
        _issue_result("C", "flat light", IssueSeverity.MAJOR),
        _issue_result("D", "odd crop", IssueSeverity.MODERATE),
    ]

    merged = accumulate_negative_prompts("no text", results, per_iteration=3)

    assert merged.splitlines() == [
        "no text",
        "AVOID: broken hands - fix broken hands (from B)",
        "AVOID: flat light - fix flat light (from C)",
        "AVOID: odd crop - fix odd crop (from D)",
    ]
    assert accumulate_negative_prompts(merged, results[1:2]) == merged

    capped = accumulate_negative_prompts(merged, [_issue_result("E", "new issue", IssueSeverity.MAJOR)], max_lines=2)
    assert capped.splitlines() == [
        "no text",
        "AVOID: odd crop - fix odd crop (from D)",
        "AVOID: new issue - fix new issue (from E)",
    ]
    assert accumulate_negative_prompts(None, []) is None
