import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from . import agents
from .config import AppSettings
from .errors import ReasonerError
from .ids import RequestContext
from .llm import ReasonerClient, extract_json_object
from .schemas import (
    Critique,
    MetaAssessment,
    PatternAnalysis,
    Plan,
    QualityBreakdown,
    ToolValidation,
    clamp_score,
)
from .validator import PlanValidator


logger = logging.getLogger(__name__)

META_TEMPERATURE = 0.4
META_MAX_TOKENS = 4000


def _str_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [str(v) if not isinstance(v, (dict, list)) else json.dumps(v) for v in value if v not in (None, "")]
    return []


def _bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def summarize_validations(plan: Plan, validations: Dict[str, ToolValidation]) -> str:
    lines: List[str] = []
    for step_id, result in validations.items():
        step = plan.step(step_id)
        title = f"{step_id} (step {step.order}, {step.action})" if step else step_id
        cat = result.categorization
        lines.append(
            "\n".join(
                [
                    f"- {title}",
                    f"  Required: {', '.join(result.required_params) or 'none'}",
                    f"  Provided: {', '.join(result.provided_params) or 'none'}",
                    f"  Missing: {', '.join(result.missing_params) or 'none'}",
                    f"  Valid: {result.is_valid}",
                    f"  Categorization: resolvable={cat.resolvable}, canInfer={cat.can_infer}, "
                    f"mustAskUser={cat.must_ask_user}",
                ]
            )
        )
    return "\n".join(lines) or "- no steps could be validated"


class QualityAssessor:
    """Scores the reasoning, plan and critique chain and decides whether to replan."""

    def __init__(self, settings: AppSettings, reasoner: ReasonerClient, validator: Optional[PlanValidator] = None) -> None:
        settings.require_model()
        self.config = settings.meta
        self.reasoner = reasoner
        self.validator = validator

    def parse(self, raw: str) -> MetaAssessment:
        data = extract_json_object(raw)
        if not data:
            logger.warning("Meta assessment was not valid JSON; using neutral assessment")
            return self._decide(MetaAssessment(reasoning_quality=0.5, assessment=(raw or "")[:500]), False, False)
        breakdown_raw = data.get("breakdown") if isinstance(data.get("breakdown"), dict) else {}
        patterns_raw = data.get("patternAnalysis") if isinstance(data.get("patternAnalysis"), dict) else {}
        try:
            depth = int(data.get("reasoningDepthRecommendation") or 1)
        except (TypeError, ValueError):
            depth = 1
        assessment = MetaAssessment(
            reasoning_quality=clamp_score(data.get("reasoningQuality")),
            breakdown=QualityBreakdown(
                logic=clamp_score(breakdown_raw.get("logic")),
                completeness=clamp_score(breakdown_raw.get("completeness")),
                alignment=clamp_score(breakdown_raw.get("alignment")),
            ),
            replan_strategy=str(data.get("replanStrategy") or ""),
            orchestrator_directives=_str_list(data.get("orchestratorDirectives")),
            focus_areas=_str_list(data.get("focusAreas")),
            pattern_analysis=PatternAnalysis(
                detected_patterns=_str_list(patterns_raw.get("detectedPatterns")),
                inconsistencies=_str_list(patterns_raw.get("inconsistencies")),
                strengths=_str_list(patterns_raw.get("strengths")),
                weaknesses=_str_list(patterns_raw.get("weaknesses")),
            ),
            reasoning_depth_recommendation=max(1, min(3, depth)),
            steps_needing_validation=_str_list(data.get("stepsNeedingValidation")),
            recommended_actions=_str_list(data.get("recommendedActions")),
            assessment=str(data.get("assessment") or ""),
        )
        return self._decide(assessment, _bool(data.get("shouldReplan")), _bool(data.get("shouldDeepenReasoning")))

    def _decide(self, assessment: MetaAssessment, model_replan: bool, model_deepen: bool) -> MetaAssessment:
        """Thresholds back up the model's own judgment; they never override a model 'yes'."""
        quality = assessment.reasoning_quality
        subs = (assessment.breakdown.logic, assessment.breakdown.completeness, assessment.breakdown.alignment)
        should_replan = (
            model_replan
            or quality < self.config.replan_threshold
            or any(s < self.config.subscore_replan_threshold for s in subs)
        )
        should_deepen = model_deepen or quality < self.config.deepen_threshold
        return assessment.model_copy(update={"should_replan": should_replan, "should_deepen_reasoning": should_deepen})

    def _prompt(
        self,
        reasoning: str,
        plan: Plan,
        critique: Optional[Critique],
        confidence_history: List[float],
        execution_summary: Optional[str],
    ) -> str:
        parts = [
            "Originating reasoning:",
            reasoning or "(none provided)",
            "",
            f"Plan (version {plan.version}):",
            json.dumps(plan.dump(), indent=2, default=str),
            "",
            "Critique:",
            json.dumps(critique.dump(), indent=2, default=str) if critique else "(none)",
            "",
            f"Confidence history: {', '.join(f'{c:.2f}' for c in confidence_history) or 'n/a'}",
        ]
        if execution_summary:
            parts.extend(["", "Execution so far:", execution_summary])
        return "\n".join(parts)

    async def _chat(self, messages: List[Dict[str, str]]) -> str:
        try:
            raw = await self.reasoner.chat(messages, temperature=META_TEMPERATURE, max_tokens=META_MAX_TOKENS)
        except ReasonerError as exc:
            logger.warning("Meta assessment call failed: %s", exc)
            return ""
        return raw if isinstance(raw, str) else json.dumps(raw)

    async def assess(
        self,
        reasoning: str,
        plan: Plan,
        critique: Optional[Critique],
        ctx: RequestContext,
        *,
        confidence_history: Optional[List[float]] = None,
        execution_summary: Optional[str] = None,
    ) -> MetaAssessment:
        ctx.enter("meta")
        history = list(confidence_history or [])
        if not history:
            history = [plan.confidence] + ([critique.overall_score] if critique else [])
        messages = [
            {"role": "system", "content": agents.META_SYSTEM},
            {"role": "user", "content": self._prompt(reasoning, plan, critique, history, execution_summary)},
        ]
        first_raw = await self._chat(messages)
        first = self.parse(first_raw)
        if not first.steps_needing_validation or self.validator is None:
            return first

        known = [sid for sid in first.steps_needing_validation if plan.step(sid) is not None]
        if not known:
            return first
        validations = await self.validator.validate_steps(plan, known, ctx)
        second_raw, second = await self._second_pass(messages, first_raw, plan, validations)
        if not second_raw:
            return first
        logger.info("Meta pass 2 for plan %s: quality %.2f -> %.2f", plan.id, first.reasoning_quality, second.reasoning_quality)
        return second

    async def _second_pass(
        self,
        messages: List[Dict[str, str]],
        first_raw: str,
        plan: Plan,
        validations: Dict[str, ToolValidation],
    ) -> Tuple[str, MetaAssessment]:
        followup = agents.META_VALIDATION_FOLLOWUP.format(results=summarize_validations(plan, validations))
        second_messages = messages + [
            {"role": "assistant", "content": first_raw},
            {"role": "user", "content": followup},
        ]
        raw = await self._chat(second_messages)
        assessment = self.parse(raw)
        return raw, assessment.model_copy(update={"passes": 2, "steps_needing_validation": list(validations.keys())})
