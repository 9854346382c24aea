"""Prompt synthesis from weighted judge feedback using LangChain."""

import logging
import re
from typing import Optional, Sequence

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, Field

import config

from .errors import AgentInvocationError
from .llm import LanguageModelClient, ModelSettings
from .schemas import JudgeResult, PromptOptimizerConfig, TokenUsage

logger = logging.getLogger(__name__)


DEFAULT_OPTIMIZER_PROMPT = """You are an expert prompt engineer for AI image generation. You rewrite image prompts using feedback from a panel of expert judges.

Guidelines:
1. **Preserve Intent**: Keep the subject, style and purpose of the original brief intact
2. **Prioritize by Weight**: Feedback from higher-weighted judges matters more
3. **Fix Critical Issues First**: Address every listed issue, most severe first
4. **Keep What Worked**: Elements the judges praised must survive the rewrite
5. **Follow Instructions Exactly**: Text the judges ask to include goes in verbatim
6. **Don't Repeat Failures**: Do not return a prompt you have already tried

Effective prompt patterns:
- Subject description → Setting/Environment → Style → Technical quality terms
- Use concrete, visual language instead of abstract adjectives
- Specify lighting, camera angle and composition when they matter

Output ONLY the optimized prompt. No explanations, headings or quotes."""


class SynthesisResult(BaseModel):
    """The next prompt produced by the optimizer."""

    prompt: str
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


_FENCE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_LABEL = re.compile(r"^(optimized prompt|new prompt|prompt)\s*:\s*", re.IGNORECASE)


def sanitize_prompt(text: str) -> str:
    """Strip code fences, a leading "Prompt:" label and wrapping quotes."""
    cleaned = _FENCE.sub("", text.strip()).strip()
    cleaned = _LABEL.sub("", cleaned).strip()
    if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] and cleaned[0] in "\"'":
        cleaned = cleaned[1:-1].strip()
    return cleaned


def build_optimizer_message(
    brief: str,
    previous_prompt: str,
    judge_results: Sequence[JudgeResult],
    negative_prompts: Optional[str] = None,
    previous_prompts: Sequence[str] = (),
    reference_context: str = "",
    has_reference_images: bool = False,
) -> str:
    """Assemble the optimizer's user message from the best candidate's verdicts."""
    by_weight = sorted(judge_results, key=lambda r: r.optimization_weight, reverse=True)
    parts = ["## Original Brief", brief, ""]

    if has_reference_images:
        parts += [
            "## Reference Images",
            "The user supplied reference images. Keep the prompt consistent with their style and subject.",
            "",
        ]

    parts += ["## Current Prompt", previous_prompt, ""]

    issues = [r for r in by_weight if r.top_issue is not None]
    if issues:
        issues.sort(key=lambda r: (r.top_issue.severity.rank, -r.optimization_weight))
        parts += ["## CRITICAL ISSUES TO FIX (ordered by severity)"]
        for r in issues:
            issue = r.top_issue
            parts.append(
                f"- [{issue.severity.value.upper()}] {issue.problem} -> FIX: {issue.fix or 'not specified'} "
                f"({r.agent_name}, weight {r.optimization_weight})"
            )
        parts += [""]

    worked = []
    for r in by_weight:
        for item in r.what_worked:
            if item not in worked:
                worked.append(item)
    if worked:
        parts += ["## WHAT WORKED (preserve these)"]
        parts += [f"- {item}" for item in worked]
        parts += [""]

    if negative_prompts:
        parts += ["## Things to Avoid", negative_prompts, ""]

    if reference_context:
        parts += [reference_context, ""]

    parts += ["## Detailed Judge Feedback (highest weight first)"]
    for r in by_weight:
        parts.append(f"### {r.agent_name} (weight {r.optimization_weight}, score {r.score:.0f}/100)")
        if r.category_scores:
            parts.append(", ".join(f"{name}: {value:.0f}" for name, value in r.category_scores.items()))
        parts += [r.feedback, ""]

    if previous_prompts:
        parts += ["## Previous Attempts (do not repeat)"]
        parts += [f"{i}. {p}" for i, p in enumerate(previous_prompts, 1)]
        parts += [""]

    instructions = [text for r in by_weight for text in r.prompt_instructions]
    if instructions:
        parts += ["## JUDGE PROMPT INSTRUCTIONS (include verbatim)"]
        parts += [f"- {text}" for text in instructions]
        parts += [""]

    parts += [
        "## Task",
        "Write an improved image generation prompt that fixes the issues above, "
        "keeps what worked and stays true to the original brief.",
        "",
        "Output ONLY the optimized prompt.",
    ]
    return "\n".join(parts)


DEFAULT_EDIT_PROMPT = """You write edit instructions for an AI image editor from a panel of judges' feedback.

Rules:
- Output ONLY the edit instructions
- Address every listed issue in one numbered list, one or two sentences per issue, most impactful first
- Name the exact element to change and describe the change in visual terms (lighting, composition, depth of field)
- Finish with the sentence: Keep everything else exactly the same."""


def build_edit_message(
    brief: str,
    judge_results: Sequence[JudgeResult],
    max_issues: int = config.MAX_EDIT_ISSUES,
) -> Optional[str]:
    """User message for the edit-instruction writer; None when no judge raised an issue."""
    ranked = sorted(
        (r for r in judge_results if r.top_issue is not None),
        key=lambda r: (r.top_issue.severity.rank, -r.optimization_weight),
    )
    issues = []
    seen = set()
    for r in ranked:
        key = r.top_issue.problem.lower()[:50]
        if key not in seen:
            seen.add(key)
            issues.append(r.top_issue)
    issues = issues[:max_issues]
    if not issues:
        return None

    parts = [f"## Issues to Fix ({len(issues)} issues, priority order)"]
    for i, issue in enumerate(issues, 1):
        parts.append(f"{i}. [{issue.severity.value.upper()}] Problem: {issue.problem}")
        parts.append(f"   Suggested Fix: {issue.fix or 'not specified'}")
    parts += ["", "## Elements That Work Well (PRESERVE THESE)"]
    worked = []
    for r in judge_results:
        for item in r.what_worked:
            if item not in worked:
                worked.append(item)
    parts += [f"- {item}" for item in worked] or ["- No specific elements flagged as working well"]
    parts += ["", "## Original Brief (for context)", brief[:300], "", "Write the multi-fix edit instruction now."]
    return "\n".join(parts)


class PromptSynthesizer:
    """Produces the next prompt from the previous one and the judges' feedback."""

    def __init__(self, llm: LanguageModelClient):
        self.llm = llm

    def synthesize(
        self,
        brief: str,
        previous_prompt: str,
        judge_results: Sequence[JudgeResult],
        optimizer_config: PromptOptimizerConfig,
        negative_prompts: Optional[str] = None,
        previous_prompts: Sequence[str] = (),
        reference_context: str = "",
        has_reference_images: bool = False,
    ) -> SynthesisResult:
        """Synthesize a new prompt.

        Args:
            brief: The user's original brief.
            previous_prompt: The prompt that produced the judged image.
            judge_results: Verdicts on the iteration's representative image.
            optimizer_config: Process-wide optimizer settings.
            negative_prompts: Accumulated things to avoid.
            previous_prompts: Prompts already tried in this request.
            reference_context: Retrieved reference guidelines, if any.
            has_reference_images: Whether the request carries reference images.

        Returns:
            The sanitized prompt and the call's token usage.

        Raises:
            AgentInvocationError: the model call failed or returned no prompt.
        """
        user_message = build_optimizer_message(
            brief,
            previous_prompt,
            judge_results,
            negative_prompts=negative_prompts,
            previous_prompts=previous_prompts,
            reference_context=reference_context,
            has_reference_images=has_reference_images,
        )
        messages = [
            SystemMessage(content=optimizer_config.system_prompt or DEFAULT_OPTIMIZER_PROMPT),
            HumanMessage(content=user_message),
        ]

        response = self.llm.invoke(ModelSettings.for_optimizer(optimizer_config), messages)
        prompt = sanitize_prompt(response.text)
        if not prompt:
            raise AgentInvocationError("Optimizer returned an empty prompt")

        logger.info(
            f"[OPTIMIZE_COMPLETE] Judges: {len(judge_results)} | "
            f"Tokens: {response.token_usage.total} | PromptLength: {len(prompt)}"
        )
        return SynthesisResult(prompt=prompt, token_usage=response.token_usage)

    def edit_instruction(
        self,
        brief: str,
        judge_results: Sequence[JudgeResult],
        optimizer_config: PromptOptimizerConfig,
    ) -> SynthesisResult:
        """Turn the judges' top issues into an instruction for editing the previous image.

        Without any top issue a generic refinement instruction is returned and
        no model call is made.

        Raises:
            AgentInvocationError: the model call failed or returned nothing.
        """
        user_message = build_edit_message(brief, judge_results)
        if user_message is None:
            return SynthesisResult(
                prompt=(
                    "Refine the image quality. Ensure all elements match this description: "
                    f"{brief[:200]}. Keep everything else exactly the same."
                )
            )

        messages = [SystemMessage(content=DEFAULT_EDIT_PROMPT), HumanMessage(content=user_message)]
        response = self.llm.invoke(ModelSettings.for_optimizer(optimizer_config), messages)
        instruction = sanitize_prompt(response.text)
        if not instruction:
            raise AgentInvocationError("Edit instruction writer returned nothing")

        logger.info(f"[EDIT_INSTRUCTION] Tokens: {response.token_usage.total} | Instruction: {instruction[:100]!r}")
        return SynthesisResult(prompt=instruction, token_usage=response.token_usage)
