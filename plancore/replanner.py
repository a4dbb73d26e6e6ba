import json
import logging
from typing import Any, Dict, List, Optional

from . import agents
from .config import AppSettings
from .errors import PlanStructureError, ReasonerError
from .ids import RequestContext, new_id, utc_iso
from .llm import ReasonerClient
from .schemas import (
    ChangesExplanation,
    Critique,
    FollowUpQuestion,
    MetaAssessment,
    Plan,
    ReplanDiff,
    ReplanResult,
    Step,
    ToolCatalog,
    clamp_score,
    estimate_complexity,
)


logger = logging.getLogger(__name__)

REPLAN_TEMPERATURE = 0.5
REPLAN_MAX_TOKENS = 3000
DIFF_FIELDS = ("description", "action", "parameters", "expected_outcome", "dependencies")


def compute_diff(old: Plan, new: Plan) -> ReplanDiff:
    old_steps = {s.id: s for s in old.steps}
    new_steps = {s.id: s for s in new.steps}
    modified = []
    for step_id, step in new_steps.items():
        prior = old_steps.get(step_id)
        if prior is None:
            continue
        if any(getattr(prior, f) != getattr(step, f) for f in DIFF_FIELDS):
            modified.append(step_id)
    return ReplanDiff(
        steps_added=[sid for sid in new_steps if sid not in old_steps],
        steps_removed=[sid for sid in old_steps if sid not in new_steps],
        steps_modified=modified,
    )


def _str_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(v) for v in value if v not in (None, "")]
    if isinstance(value, str) and value.strip():
        return [value]
    return []


def _successor_fields(old: Plan) -> Dict[str, Any]:
    return {
        "id": new_id("plan"),
        "version": old.version + 1,
        "original_plan_id": old.original_plan_id or old.id,
        "created_at": utc_iso(),
    }


class Replanner:
    """Builds the next plan version from assessor, critic and user feedback."""

    def __init__(self, settings: AppSettings, reasoner: ReasonerClient) -> None:
        settings.require_model()
        self.reasoner = reasoner

    def build_steps(self, raw_steps: List[Any], catalog: ToolCatalog) -> List[Step]:
        steps: List[Step] = []
        seen_orders = set()
        seen_ids = set()
        for idx, raw in enumerate(raw_steps):
            if not isinstance(raw, dict):
                continue
            step = Step.from_raw(raw, idx)
            if step.order in seen_orders:
                step = step.model_copy(update={"order": max(seen_orders) + 1})
            seen_orders.add(step.order)
            if step.id in seen_ids:
                fresh = f"step-{step.order}"
                step = step.model_copy(update={"id": fresh if fresh not in seen_ids else f"{step.id}-{idx}"})
            seen_ids.add(step.id)
            steps.append(step.model_copy(update={"action": catalog.normalize_name(step.action), "status": "pending"}))
        steps.sort(key=lambda s: s.order)
        known = {s.id for s in steps}
        cleaned = []
        for step in steps:
            deps = [d for d in step.dependencies if d in known and d != step.id]
            if len(deps) != len(step.dependencies):
                logger.warning("Dropped unknown dependencies from %s: %s", step.id, sorted(set(step.dependencies) - set(deps)))
            cleaned.append(step.model_copy(update={"dependencies": deps}))
        return cleaned

    def fallback(self, old: Plan, critique: Optional[Critique], answered: List[FollowUpQuestion]) -> ReplanResult:
        """Keep the prior plan minus steps named by critical issues; fill in answered parameters."""
        critical_orders = set()
        if critique is not None:
            for issue in critique.issues:
                if issue.severity == "critical":
                    critical_orders.update(issue.affected_steps)
        kept: List[Step] = []
        for step in old.steps:
            if step.order in critical_orders:
                continue
            params = dict(step.parameters)
            for q in answered:
                if q.step_id == step.id and q.parameter_name and q.user_answer:
                    params[q.parameter_name] = q.user_answer
            kept.append(step.model_copy(update={"parameters": params, "status": "pending"}, deep=True))
        kept_ids = {s.id for s in kept}
        kept = [s.model_copy(update={"dependencies": [d for d in s.dependencies if d in kept_ids]}) for s in kept]
        plan = Plan(
            goal=old.goal,
            steps=kept,
            confidence=old.confidence,
            estimated_complexity=estimate_complexity(kept),
            rationale="Replanning response could not be parsed; kept the prior plan without critically flagged steps.",
            **_successor_fields(old),
        )
        return ReplanResult(
            plan=plan,
            diff=compute_diff(old, plan),
            rationale=plan.rationale,
            answered_questions=answered,
            fallback=True,
        )

    def _prompt(
        self,
        old: Plan,
        assessment: Optional[MetaAssessment],
        critique: Optional[Critique],
        catalog: ToolCatalog,
        thought_recommendations: List[str],
        answered: List[FollowUpQuestion],
    ) -> str:
        sections = [f"Goal: {old.goal}", f"Current plan (version {old.version}):", json.dumps(old.dump(), indent=2, default=str)]
        if assessment is not None:
            sections += [
                "",
                f"Assessor quality: {assessment.reasoning_quality:.2f}",
                f"Replan strategy: {assessment.replan_strategy or 'n/a'}",
                "Directives:",
                "\n".join(f"- {d}" for d in assessment.orchestrator_directives) or "- none",
                "Focus areas: " + (", ".join(assessment.focus_areas) or "none"),
            ]
        if critique is not None:
            sections += [
                "",
                f"Critic recommendation: {critique.recommendation} ({critique.overall_score:.2f})",
                "Unresolved issues:",
                "\n".join(
                    f"- [{i.severity}] steps {i.affected_steps}: {i.description} (fix: {i.suggestion})" for i in critique.issues
                )
                or "- none",
                "Validation warnings:",
                "\n".join(f"- {w}" for w in critique.validation_warnings) or "- none",
            ]
        if answered:
            sections += ["", "User answers:"] + [
                f"- {q.question} -> {q.user_answer}"
                + (f" (step {q.step_id}, parameter {q.parameter_name})" if q.parameter_name else "")
                for q in answered
            ]
        if thought_recommendations:
            sections += ["", "Upstream recommendations:"] + [f"- {t}" for t in thought_recommendations]
        sections += ["", "Tool catalog:", catalog.describe() or "- (empty)"]
        return "\n".join(sections)

    async def replan(
        self,
        old: Plan,
        ctx: RequestContext,
        *,
        assessment: Optional[MetaAssessment] = None,
        critique: Optional[Critique] = None,
        catalog: Optional[ToolCatalog] = None,
        thought_recommendations: Optional[List[str]] = None,
        answered_questions: Optional[List[FollowUpQuestion]] = None,
    ) -> ReplanResult:
        ctx.enter("replanner")
        catalog = catalog or ToolCatalog()
        answered = list(answered_questions or [])
        if critique is not None:
            seen = {q.id for q in answered}
            answered += [q for q in critique.follow_up_questions if q.user_answer and q.id not in seen]
        prompt = self._prompt(old, assessment, critique, catalog, list(thought_recommendations or []), answered)
        try:
            data = await self.reasoner.chat(
                [{"role": "system", "content": agents.REPLANNER_SYSTEM}, {"role": "user", "content": prompt}],
                temperature=REPLAN_TEMPERATURE,
                max_tokens=REPLAN_MAX_TOKENS,
                structured=True,
            )
        except ReasonerError as exc:
            logger.warning("Replanning call failed for plan %s: %s", old.id, exc)
            data = {}
        raw_steps = data.get("steps") if isinstance(data, dict) else None
        if not isinstance(raw_steps, list) or not raw_steps:
            logger.warning("Replanner returned no usable steps for plan %s; using fallback", old.id)
            return self.fallback(old, critique, answered)

        steps = self.build_steps(raw_steps, catalog)
        if not steps:
            return self.fallback(old, critique, answered)
        confidence = clamp_score(data.get("confidence")) if data.get("confidence") is not None else old.confidence
        complexity = data.get("estimatedComplexity")
        try:
            plan = Plan(
                goal=str(data.get("goal") or old.goal),
                steps=steps,
                confidence=confidence,
                estimated_complexity=clamp_score(complexity) if complexity is not None else estimate_complexity(steps),
                rationale=str(data.get("rationale") or ""),
                **_successor_fields(old),
            )
        except PlanStructureError as exc:
            logger.warning("Replanned steps for %s are inconsistent (%s); using fallback", old.id, exc)
            return self.fallback(old, critique, answered)
        explanation = data.get("changesExplanation") if isinstance(data.get("changesExplanation"), dict) else {}
        diff = compute_diff(old, plan)
        logger.info(
            "Replanned %s v%d -> v%d: +%d -%d ~%d",
            old.id,
            old.version,
            plan.version,
            len(diff.steps_added),
            len(diff.steps_removed),
            len(diff.steps_modified),
        )
        return ReplanResult(
            plan=plan,
            diff=diff,
            rationale=plan.rationale,
            changes_explanation=ChangesExplanation(
                steps_added=_str_list(explanation.get("stepsAdded")),
                steps_removed=_str_list(explanation.get("stepsRemoved")),
                steps_modified=_str_list(explanation.get("stepsModified")),
                improvements=_str_list(explanation.get("improvements")),
            ),
            addressed_meta_guidance=_str_list(data.get("addressedMetaGuidance")),
            addressed_critic_issues=_str_list(data.get("addressedCriticIssues")),
            addressed_thought_recommendations=_str_list(data.get("addressedThoughtRecommendations")),
            answered_questions=answered,
        )
