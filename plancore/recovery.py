import json
import logging
from typing import Any, Dict, List, Optional

from . import agents
from .errors import ReasonerError
from .ids import RequestContext
from .llm import ReasonerClient
from .schemas import (
    Adaptation,
    ErrorDecision,
    ErrorKind,
    ExecutionQuestion,
    Plan,
    QuestionContext,
    Step,
    ToolCatalog,
)


logger = logging.getLogger(__name__)

QUESTION_CATEGORIES = {"missing-data", "error-recovery", "coordination", "ambiguity", "user-choice"}
_KIND_TO_CATEGORY = {
    "missing-data": "missing-data",
    "validation-error": "ambiguity",
    "coordination-error": "coordination",
    "tool-error": "error-recovery",
}


def classify_error(message: str) -> ErrorKind:
    text = (message or "").lower()
    if "not found" in text or "does not exist" in text:
        return "missing-data"
    if "invalid" in text or "validation" in text:
        return "validation-error"
    if "dependency" in text or "coordinat" in text:
        return "coordination-error"
    return "tool-error"


class ErrorRecovery:
    """Asks the reasoner what to do with a step that kept failing, and phrases questions for the user."""

    def __init__(self, reasoner: ReasonerClient) -> None:
        self.reasoner = reasoner

    async def _ask(self, system: str, prompt: str, temperature: float) -> Dict[str, Any]:
        try:
            data = await self.reasoner.chat(
                [{"role": "system", "content": system}, {"role": "user", "content": prompt}],
                temperature=temperature,
                max_tokens=1000,
                structured=True,
            )
        except ReasonerError as exc:
            logger.warning("Recovery call failed: %s", exc)
            return {}
        return data if isinstance(data, dict) else {}

    async def decide(
        self,
        plan: Plan,
        step: Step,
        error: str,
        kind: ErrorKind,
        attempts: int,
        catalog: ToolCatalog,
        partial_results: Dict[str, Any],
        ctx: RequestContext,
    ) -> ErrorDecision:
        ctx.enter("error-handler")
        prompt = (
            f"Goal: {plan.goal}\n"
            f"Failed step {step.order} ({step.action}): {step.description}\n"
            f"Parameters: {json.dumps(step.parameters, default=str)}\n"
            f"Error ({kind}) after {attempts} attempt(s): {error}\n"
            f"Completed steps: {', '.join(partial_results.keys()) or 'none'}\n\n"
            f"Tool catalog:\n{catalog.describe()}"
        )
        data = await self._ask(agents.ERROR_RECOVERY_SYSTEM, prompt, temperature=0.2)
        decision = str(data.get("decision") or "").lower()
        if decision not in ("retry", "ask-user", "adapt", "skip"):
            return ErrorDecision(decision="ask-user", reason="Failed to analyze error automatically")
        adaptation: Optional[Adaptation] = None
        if decision == "adapt":
            raw = data.get("adaptation") if isinstance(data.get("adaptation"), dict) else {}
            adapted = catalog.normalize_name(str(raw.get("adaptedAction") or ""))
            if not adapted or not catalog.has(adapted) or adapted == step.action:
                # An adaptation without a usable replacement tool is a question for the user.
                return ErrorDecision(
                    decision="ask-user",
                    reason=f"No usable alternative tool for {step.action}: {data.get('reason') or error}",
                )
            adaptation = Adaptation(
                step_id=step.id,
                original_action=step.action,
                adapted_action=adapted,
                reason=str(raw.get("reason") or data.get("reason") or ""),
            )
        max_retries = data.get("maxRetries")
        return ErrorDecision(
            decision=decision,
            reason=str(data.get("reason") or ""),
            adaptation=adaptation,
            max_retries=max(1, int(max_retries)) if isinstance(max_retries, (int, float)) else None,
        )

    async def question_for_failure(
        self,
        step: Step,
        error: str,
        kind: ErrorKind,
        what_was_tried: List[str],
        completed: List[str],
        ctx: RequestContext,
        *,
        parameter_name: Optional[str] = None,
    ) -> ExecutionQuestion:
        prompt = (
            f"Step {step.order} ({step.action}): {step.description}\n"
            f"What failed: {error}\n"
            f"What was tried: {'; '.join(what_was_tried) or 'nothing'}\n"
            f"Completed steps: {', '.join(completed) or 'none'}"
        )
        data = await self._ask(agents.QUESTION_SYSTEM, prompt, temperature=0.3)
        default_question = (
            f"Step {step.order} ({step.action}) could not complete: {error}. "
            "How should I proceed, or what value should I use?"
        )
        category = str(data.get("category") or _KIND_TO_CATEGORY.get(kind, "error-recovery"))
        priority = str(data.get("priority") or "high")
        return ExecutionQuestion(
            id=ctx.new_id("question"),
            question=str(data.get("question") or default_question),
            category=category if category in QUESTION_CATEGORIES else "error-recovery",
            priority=priority if priority in ("low", "medium", "high") else "high",
            context=QuestionContext(
                step_id=step.id,
                step_order=step.order,
                parameter_name=parameter_name,
                what_failed=error,
                what_was_tried="; ".join(what_was_tried),
                current_state=f"{len(completed)} step(s) completed: {', '.join(completed) or 'none'}",
                suggestion=str(data.get("suggestion") or ""),
            ),
        )
