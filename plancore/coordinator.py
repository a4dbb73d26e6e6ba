import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from . import agents
from .errors import ReasonerError
from .ids import RequestContext
from .llm import ReasonerClient
from .placeholders import BACK_REFERENCE_RE, PlaceholderPolicy, is_empty
from .results import extract_identifier, extract_path, is_unusable_result
from .schemas import CoordinationResult, Plan, Step, ToolCatalog


logger = logging.getLogger(__name__)


def _looks_like_id(name: str) -> bool:
    lowered = name.lower()
    return lowered.endswith("id") or "identifier" in lowered or "key" in lowered


def _is_null_value(value: Any) -> bool:
    return is_empty(value) or (isinstance(value, str) and value.strip().lower() in ("null", "none", "undefined"))


class StepCoordinator:
    """Fills step parameters from earlier step outputs right before the step runs."""

    def __init__(self, reasoner: ReasonerClient, policy: PlaceholderPolicy) -> None:
        self.reasoner = reasoner
        self.policy = policy

    def pending_params(self, step: Step, required: List[str]) -> List[str]:
        names = [n for n in required if is_empty(step.parameters.get(n))]
        for name, value in step.parameters.items():
            if name in names:
                continue
            if self._back_reference(value) or self.policy.is_placeholder(name, value):
                names.append(name)
        return names

    @staticmethod
    def _back_reference(value: Any) -> Optional[Tuple[str, Optional[str]]]:
        if not isinstance(value, str):
            return None
        match = BACK_REFERENCE_RE.match(value.strip())
        if not match:
            return None
        return match.group(1), match.group(2)

    def _source_results(self, plan: Plan, step: Step, name: str, partial_results: Dict[str, Any]) -> Dict[str, Any]:
        """Results a parameter may draw from: the referenced step, else the step's dependencies, else all earlier ones."""
        order = self.policy.referenced_step(step.parameters.get(name))
        if order is not None:
            source = plan.step_by_order(order)
            if source is not None and source.id in partial_results:
                return {source.id: partial_results[source.id]}
            return {}
        dep_ids = [d for d in step.dependencies if d in partial_results]
        if dep_ids:
            return {d: partial_results[d] for d in dep_ids}
        return {
            s.id: partial_results[s.id] for s in plan.steps if s.order < step.order and s.id in partial_results
        }

    async def coordinate(
        self,
        plan: Plan,
        step: Step,
        partial_results: Dict[str, Any],
        catalog: ToolCatalog,
        ctx: RequestContext,
    ) -> CoordinationResult:
        """Return the parameters the step should run with; never mutates the step."""
        params = dict(step.parameters)
        pending = self.pending_params(step, catalog.required_params(step.action))
        if not pending:
            return CoordinationResult(needs_coordination=False, parameters=params)
        ctx.enter("coordinator")
        extracted: Dict[str, Any] = {}

        # Explicit `$step-N.path` references resolve without the model.
        for name in list(pending):
            ref = self._back_reference(params.get(name))
            if ref is None:
                continue
            step_id, path = ref
            if step_id not in partial_results:
                continue
            value = extract_path(partial_results[step_id], path) if path else extract_identifier(partial_results[step_id])
            if not _is_null_value(value):
                extracted[name] = value
                pending.remove(name)

        unusable = []
        for name in pending:
            sources = self._source_results(plan, step, name, partial_results)
            if sources and all(is_unusable_result(v) for v in sources.values()):
                unusable.append(name)
        if unusable:
            return CoordinationResult(
                needs_coordination=True,
                reasoning="Earlier steps returned no usable data for: " + ", ".join(unusable),
                parameters={**params, **extracted},
                extracted_values=extracted,
                missing_params=unusable,
                recommendation="ask-user",
                extraction_impossible=True,
            )

        reasoning = ""
        alternatives: List[str] = []
        recommendation = "proceed"
        if pending:
            data = await self._ask(plan, step, pending, partial_results, catalog)
            reasoning = str(data.get("reasoning") or "")
            alternatives = [str(a) for a in data.get("alternatives") or [] if a]
            if data.get("recommendation") in ("proceed", "adapt", "ask-user"):
                recommendation = data["recommendation"]
            allowed = set(catalog.param_names(step.action)) | set(params.keys())
            for name, value in (data.get("extractedValues") or {}).items():
                if name not in pending or _is_null_value(value):
                    continue
                if allowed and name not in allowed:
                    continue
                if self.policy.is_placeholder(name, value):
                    continue
                extracted[name] = value
                pending.remove(name)

        # Programmatic fallback for identifiers when the model could not find them.
        for name in list(pending):
            if not _looks_like_id(name):
                continue
            for value in self._source_results(plan, step, name, partial_results).values():
                candidate = extract_identifier(value)
                if not _is_null_value(candidate) and not isinstance(candidate, (dict, list)):
                    extracted[name] = candidate
                    pending.remove(name)
                    reasoning = (reasoning + " " if reasoning else "") + f"Took '{name}' from the first earlier result."
                    break

        if pending:
            recommendation = "ask-user" if recommendation == "proceed" else recommendation
        return CoordinationResult(
            needs_coordination=True,
            reasoning=reasoning,
            parameters={**params, **extracted},
            extracted_values=extracted,
            missing_params=pending,
            alternatives=alternatives,
            recommendation=recommendation,
        )

    async def _ask(
        self,
        plan: Plan,
        step: Step,
        pending: List[str],
        partial_results: Dict[str, Any],
        catalog: ToolCatalog,
    ) -> Dict[str, Any]:
        previous = {
            s.id: {"order": s.order, "action": s.action, "result": partial_results[s.id]}
            for s in plan.steps
            if s.order < step.order and s.id in partial_results
        }
        tool = catalog.find(step.action)
        schema = tool.input_schema.dump() if tool else {}
        prompt = (
            f"Step {step.order} ({step.action}): {step.description}\n"
            f"Parameters: {json.dumps(step.parameters, default=str)}\n"
            f"Parameters needing values: {', '.join(pending)}\n"
            f"Tool schema: {json.dumps(schema, default=str)}\n\n"
            f"Previous results:\n{json.dumps(previous, indent=2, default=str)[:12000]}"
        )
        try:
            data = await self.reasoner.chat(
                [{"role": "system", "content": agents.COORDINATOR_SYSTEM}, {"role": "user", "content": prompt}],
                temperature=0.1,
                max_tokens=1500,
                structured=True,
            )
        except ReasonerError as exc:
            logger.warning("Coordination call for step %s failed: %s", step.id, exc)
            return {}
        return data if isinstance(data, dict) else {}
