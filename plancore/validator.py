import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import Field

from . import agents
from .config import AppSettings
from .errors import ReasonerError, ToolExecutionError
from .ids import RequestContext
from .llm import ReasonerClient
from .placeholders import BACK_REFERENCE_RE, DefaultPlaceholderPolicy, PlaceholderPolicy, is_empty
from .results import extract_identifier, extract_path
from .schemas import (
    Categorization,
    Critique,
    CritiqueIssue,
    FollowUpQuestion,
    Plan,
    Record,
    Recommendation,
    Step,
    ToolCatalog,
    ToolValidation,
    ValidationFinding,
    clamp_score,
)
from .tool_runner import ToolRunnerClient


logger = logging.getLogger(__name__)

LOOKUP_VERBS = ("list", "search", "get", "find")
IDENTIFIER_HINTS = ("id", "identifier", "key")
SEVERITIES = {"low", "medium", "high", "critical"}
PRIORITIES = {"low", "medium", "high"}
DYNAMIC_FIX_PREFIX = "Dynamic fix: missing identifiers will be taken from earlier step results during execution. "


class ResolvedParam(Record):
    step_id: str
    parameter_name: str
    value: Any = None
    source: str = ""


class ResolutionReport(Record):
    iterations: int = 0
    missing_counts: List[int] = Field(default_factory=list)
    findings: List[ValidationFinding] = Field(default_factory=list)
    resolved: List[ResolvedParam] = Field(default_factory=list)
    inferred: List[ResolvedParam] = Field(default_factory=list)
    validations: Dict[str, ToolValidation] = Field(default_factory=dict)


class ValidationOutcome(Record):
    critique: Critique
    report: ResolutionReport


def _coerce_str_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [str(v) for v in value if v not in (None, "")]
    return []


def _coerce_int_list(value: Any) -> List[int]:
    items = value if isinstance(value, list) else [value]
    out: List[int] = []
    for item in items:
        try:
            out.append(int(str(item).replace("step-", "").strip()))
        except (TypeError, ValueError):
            continue
    return out


def recommendation_for(score: float, approval: float, revision: float) -> Recommendation:
    if score >= approval:
        return "approve"
    if score >= revision:
        return "revise"
    return "reject"


def fallback_critique(plan: Plan) -> Critique:
    return Critique(
        plan_id=plan.id,
        plan_version=plan.version,
        issues=[
            CritiqueIssue(
                severity="high",
                category="logic",
                description="Failed to parse critique response",
                suggestion="Review the plan manually",
            )
        ],
        recommendation="revise",
        rationale="Critique could not be parsed; using neutral scores.",
    )


class PlanValidator:
    """Checks step parameters against tool schemas, resolves what it can, and critiques the plan."""

    def __init__(
        self,
        settings: AppSettings,
        reasoner: ReasonerClient,
        tool_runner: ToolRunnerClient,
        *,
        policy: Optional[PlaceholderPolicy] = None,
        catalog: Optional[ToolCatalog] = None,
    ) -> None:
        settings.require_model()
        self.config = settings.validation
        self.reasoner = reasoner
        self.tool_runner = tool_runner
        self.policy = policy or DefaultPlaceholderPolicy(stale_date_days=self.config.stale_date_days)
        self.max_iterations = max(1, self.config.max_iterations)
        self._catalog = catalog

    async def catalog(self, ctx: RequestContext) -> ToolCatalog:
        if self._catalog is None:
            try:
                self._catalog = await self.tool_runner.load_catalog(ctx)
            except ToolExecutionError as exc:
                logger.warning("Tool catalog unavailable, validating without schemas: %s", exc)
                return ToolCatalog()
        return self._catalog

    # -- finding missing parameters -------------------------------------------------

    def _is_live_reference(self, plan: Plan, step: Step, value: Any) -> bool:
        """`$step-N.path` pointing at an earlier step is filled in by coordination, not missing."""
        if not isinstance(value, str):
            return False
        match = BACK_REFERENCE_RE.match(value.strip())
        if not match:
            return False
        source = plan.step(match.group(1))
        return source is not None and source.order < step.order

    def _dangling_reference(self, plan: Plan, step: Step, value: Any) -> bool:
        order = self.policy.referenced_step(value)
        if order is None:
            return False
        source = plan.step_by_order(order)
        return source is None or source.order >= step.order

    def _placeholder_params(self, plan: Plan, step: Step, required: List[str]) -> List[str]:
        names: List[str] = []
        for name in required:
            if is_empty(step.parameters.get(name)) and name not in names:
                names.append(name)
        for name, value in step.parameters.items():
            if name in names or self._is_live_reference(plan, step, value):
                continue
            if self.policy.is_placeholder(name, value):
                names.append(name)
        return names

    async def _validate_step(
        self,
        plan: Plan,
        step: Step,
        catalog: ToolCatalog,
        ctx: RequestContext,
    ) -> ToolValidation:
        required = catalog.required_params(step.action)
        flagged = self._placeholder_params(plan, step, required)
        arguments = {k: v for k, v in step.parameters.items() if k not in flagged}
        context = {
            "goal": plan.goal,
            "stepId": step.id,
            "stepOrder": step.order,
            "previousSteps": [
                {"id": s.id, "order": s.order, "action": s.action} for s in plan.steps if s.order < step.order
            ],
        }
        try:
            validation = await self.tool_runner.validate(step.action, arguments, ctx, context=context)
        except ToolExecutionError as exc:
            logger.warning("Schema validation for %s failed, using local checks: %s", step.action, exc)
            validation = ToolValidation(
                tool_name=step.action,
                required_params=required,
                provided_params=[k for k in arguments if not is_empty(arguments[k])],
                missing_params=[],
                categorization=Categorization(),
            )
        missing = list(validation.missing_params)
        for name in flagged:
            if name not in missing:
                missing.append(name)
        validation = validation.model_copy(update={"missing_params": missing, "is_valid": validation.is_valid and not missing})
        return validation

    def _categorize(self, plan: Plan, step: Step, name: str, validation: ToolValidation) -> ValidationFinding:
        cat = validation.categorization
        if self._dangling_reference(plan, step, step.parameters.get(name)):
            category = "mustAskUser"
        elif name in cat.resolvable:
            category = "resolvable"
        elif name in cat.can_infer:
            category = "canInfer"
        else:
            category = "mustAskUser"
        return ValidationFinding(step_id=step.id, parameter_name=name, category=category)

    async def find_missing(
        self, plan: Plan, ctx: RequestContext
    ) -> Tuple[List[ValidationFinding], Dict[str, ToolValidation]]:
        catalog = await self.catalog(ctx)
        findings: List[ValidationFinding] = []
        validations: Dict[str, ToolValidation] = {}
        for step in plan.steps:
            if not catalog.has(step.action):
                continue
            validation = await self._validate_step(plan, step, catalog, ctx)
            validations[step.id] = validation
            for name in validation.missing_params:
                findings.append(self._categorize(plan, step, name, validation))
        return findings, validations

    async def validate_steps(self, plan: Plan, step_ids: List[str], ctx: RequestContext) -> Dict[str, ToolValidation]:
        """Targeted validation of specific steps, without resolution."""
        catalog = await self.catalog(ctx)
        results: Dict[str, ToolValidation] = {}
        for step_id in step_ids:
            step = plan.step(step_id)
            if step is None:
                continue
            if not catalog.has(step.action):
                results[step_id] = ToolValidation(tool_name=step.action, is_valid=False, invalid_params=["<unknown tool>"])
                continue
            results[step_id] = await self._validate_step(plan, step, catalog, ctx)
        return results

    # -- resolution loop ------------------------------------------------------------

    async def resolve(self, plan: Plan, ctx: RequestContext) -> ResolutionReport:
        """Validate, then resolve/infer and re-validate until nothing is missing or nothing new is found."""
        report = ResolutionReport()
        for iteration in range(1, self.max_iterations + 1):
            findings, validations = await self.find_missing(plan, ctx)
            report.iterations = iteration
            report.missing_counts.append(len(findings))
            report.findings = findings
            report.validations = validations
            if not findings:
                break
            produced = await self._resolve_params(plan, findings, ctx, report)
            produced += await self._infer_params(plan, findings, ctx, report)
            if produced == 0:
                break
            logger.info("Validation iteration %d filled %d parameter(s)", iteration, produced)
        return report

    @staticmethod
    def _group(findings: List[ValidationFinding], category: str) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = {}
        for finding in findings:
            if finding.category == category:
                grouped.setdefault(finding.step_id, []).append(finding.parameter_name)
        return grouped

    async def _ask_json(self, system: str, user: str, temperature: float = 0.2) -> Dict[str, Any]:
        try:
            data = await self.reasoner.chat(
                [{"role": "system", "content": system}, {"role": "user", "content": user}],
                temperature=temperature,
                max_tokens=2000,
                structured=True,
            )
        except ReasonerError as exc:
            logger.warning("Reasoner call failed: %s", exc)
            return {}
        return data if isinstance(data, dict) else {}

    async def _resolve_params(
        self,
        plan: Plan,
        findings: List[ValidationFinding],
        ctx: RequestContext,
        report: ResolutionReport,
    ) -> int:
        catalog = await self.catalog(ctx)
        produced = 0
        for step_id, names in self._group(findings, "resolvable").items():
            step = plan.step(step_id)
            if step is None:
                continue
            prompt = (
                f"Goal: {plan.goal}\n"
                f"Step {step.order} ({step.action}): {step.description}\n"
                f"Current parameters: {json.dumps(step.parameters, default=str)}\n"
                f"Missing parameters: {', '.join(names)}\n\n"
                f"Tool catalog:\n{catalog.describe()}"
            )
            data = await self._ask_json(agents.RESOLVER_SYSTEM, prompt)
            for item in data.get("resolutions") or []:
                if not isinstance(item, dict) or item.get("paramName") not in names:
                    continue
                strategy = item.get("resolutionStrategy") or {}
                tool = catalog.normalize_name(str(strategy.get("tool") or ""))
                if not tool or not catalog.has(tool):
                    continue
                arguments = strategy.get("arguments") if isinstance(strategy.get("arguments"), dict) else {}
                try:
                    result = await self.tool_runner.call_tool(tool, arguments, ctx)
                except ToolExecutionError as exc:
                    logger.warning("Resolution via %s for %s failed: %s", tool, item["paramName"], exc)
                    continue
                value = extract_path(result, strategy.get("extractionPath"))
                if is_empty(value) or isinstance(value, (dict, list)):
                    value = extract_identifier(result)
                if is_empty(value) or self.policy.is_placeholder(item["paramName"], value):
                    continue
                step.parameters[item["paramName"]] = value
                report.resolved.append(
                    ResolvedParam(step_id=step.id, parameter_name=item["paramName"], value=value, source=tool)
                )
                produced += 1
        return produced

    async def _infer_params(
        self,
        plan: Plan,
        findings: List[ValidationFinding],
        ctx: RequestContext,
        report: ResolutionReport,
    ) -> int:
        produced = 0
        for step_id, names in self._group(findings, "canInfer").items():
            step = plan.step(step_id)
            if step is None:
                continue
            prompt = (
                f"Goal: {plan.goal}\n"
                f"Step {step.order} ({step.action}): {step.description}\n"
                f"Current parameters: {json.dumps(step.parameters, default=str)}\n"
                f"Parameters to infer: {', '.join(names)}"
            )
            data = await self._ask_json(agents.INFERENCE_SYSTEM, prompt)
            for item in data.get("inferences") or []:
                if not isinstance(item, dict) or item.get("paramName") not in names:
                    continue
                value = item.get("inferredValue")
                if self.policy.is_placeholder(item["paramName"], value):
                    continue
                step.parameters[item["paramName"]] = value
                report.inferred.append(
                    ResolvedParam(step_id=step.id, parameter_name=item["paramName"], value=value, source="inference")
                )
                produced += 1
        return produced

    # -- feasibility ----------------------------------------------------------------

    def check_tool_availability(self, plan: Plan, catalog: ToolCatalog) -> List[CritiqueIssue]:
        issues: List[CritiqueIssue] = []
        for step in plan.steps:
            action = step.action.lower()
            if action == "unknown" or "manual" in action or "review" in action:
                continue
            if catalog.has(step.action):
                continue
            hint = catalog.normalize_name(step.action)
            suggestion = f"Use '{hint}'" if hint != step.action else "Replace with a tool from the catalog"
            issues.append(
                CritiqueIssue(
                    severity="high",
                    category="tool",
                    description=f"Step {step.order} uses unavailable tool '{step.action}'",
                    suggestion=suggestion,
                    affected_steps=[step.order],
                )
            )
        return issues

    def can_be_fixed_dynamically(self, plan: Plan, findings: List[ValidationFinding]) -> bool:
        if not findings:
            return False
        by_step: Dict[str, List[str]] = {}
        for finding in findings:
            by_step.setdefault(finding.step_id, []).append(finding.parameter_name)
        for step_id, names in by_step.items():
            step = plan.step(step_id)
            if step is None:
                return False
            producers = [
                s for s in plan.steps if s.order < step.order and any(v in s.action.lower() for v in LOOKUP_VERBS)
            ]
            if not producers:
                return False
            for name in names:
                if not any(hint in name.lower() for hint in IDENTIFIER_HINTS):
                    return False
        return True

    # -- critique -------------------------------------------------------------------

    def _parse_critique(self, plan: Plan, data: Dict[str, Any]) -> Critique:
        score_keys = ("overallScore", "feasibilityScore", "correctnessScore", "efficiencyScore", "safetyScore")
        if not data or not any(k in data for k in score_keys):
            return fallback_critique(plan)
        subs = {k: clamp_score(data.get(k)) for k in score_keys[1:]}
        overall = clamp_score(data.get("overallScore")) if data.get("overallScore") is not None else 0.0
        if overall == 0:
            overall = max(max(subs.values()), 0.3)
        issues: List[CritiqueIssue] = []
        for raw in data.get("issues") or []:
            if not isinstance(raw, dict) or not raw.get("description"):
                continue
            severity = str(raw.get("severity") or "medium").lower()
            issues.append(
                CritiqueIssue(
                    severity=severity if severity in SEVERITIES else "medium",
                    category=str(raw.get("category") or "logic"),
                    description=str(raw["description"]),
                    suggestion=str(raw.get("suggestion") or "Review and fix"),
                    affected_steps=_coerce_int_list(raw.get("affectedSteps") or []),
                )
            )
        questions: List[FollowUpQuestion] = []
        for idx, raw in enumerate(data.get("followUpQuestions") or []):
            if isinstance(raw, str):
                raw = {"question": raw}
            if not isinstance(raw, dict) or not raw.get("question"):
                continue
            priority = str(raw.get("priority") or "medium").lower()
            questions.append(
                FollowUpQuestion(
                    id=str(raw.get("id") or f"question-{idx + 1}"),
                    question=str(raw["question"]),
                    category=str(raw.get("category") or "missing-info"),
                    priority=priority if priority in PRIORITIES else "medium",
                )
            )
        return Critique(
            plan_id=plan.id,
            plan_version=plan.version,
            overall_score=overall,
            feasibility_score=subs["feasibilityScore"],
            correctness_score=subs["correctnessScore"],
            efficiency_score=subs["efficiencyScore"],
            safety_score=subs["safetyScore"],
            issues=issues,
            follow_up_questions=questions,
            recommendation=recommendation_for(overall, self.config.approval_threshold, self.config.revision_threshold),
            rationale=str(data.get("rationale") or ""),
        )

    @staticmethod
    def _question_matches(question: FollowUpQuestion, finding: ValidationFinding, step: Optional[Step]) -> bool:
        if question.parameter_name is not None:
            # A bound question covers exactly one parameter.
            return question.parameter_name == finding.parameter_name and question.step_id == finding.step_id
        text = question.question.lower()
        if finding.parameter_name.lower() in text:
            return True
        if step is not None and (f"step {step.order}" in text or step.action.lower() in text):
            return True
        return False

    def _sync_questions(
        self,
        plan: Plan,
        findings: List[ValidationFinding],
        questions: List[FollowUpQuestion],
        *,
        synthesize: bool,
    ) -> Tuple[List[FollowUpQuestion], List[str]]:
        warnings: List[str] = []
        synced = list(questions)
        for finding in findings:
            if finding.category != "mustAskUser":
                step = plan.step(finding.step_id)
                order = step.order if step else "?"
                warnings.append(f"Step {order}: '{finding.parameter_name}' is still unresolved ({finding.category})")
                continue
            step = plan.step(finding.step_id)
            matched = [q for q in synced if self._question_matches(q, finding, step)]
            if matched:
                # Bind the first matching question so an answer can be written back to the parameter.
                first = matched[0]
                if first.parameter_name is None:
                    idx = synced.index(first)
                    synced[idx] = first.model_copy(
                        update={"step_id": finding.step_id, "parameter_name": finding.parameter_name, "priority": "high"}
                    )
                continue
            order = step.order if step else "?"
            action = step.action if step else "unknown"
            warning = f"Step {order} ({action}): '{finding.parameter_name}' needs user input but no question was asked"
            warnings.append(warning)
            if not synthesize:
                continue
            logger.warning("%s; adding follow-up question", warning)
            synced.append(
                FollowUpQuestion(
                    id=f"question-{len(synced) + 1}",
                    question=f"Step {order} ({action}) needs a value for '{finding.parameter_name}'. What should it be?",
                    category="missing-info",
                    priority="high",
                    step_id=finding.step_id,
                    parameter_name=finding.parameter_name,
                )
            )
        return synced, warnings

    @staticmethod
    def _apply_answers(questions: List[FollowUpQuestion], answers: Dict[str, str]) -> List[FollowUpQuestion]:
        if not answers:
            return questions
        return [q.model_copy(update={"user_answer": answers[q.id]}) if q.id in answers else q for q in questions]

    def _plan_prompt(
        self,
        plan: Plan,
        report: ResolutionReport,
        tool_issues: List[CritiqueIssue],
        user_query: str,
        answers: Dict[str, str],
        examples: List[str],
    ) -> str:
        findings = [f"- step {f.step_id}: {f.parameter_name} -> {f.category}" for f in report.findings]
        tool_lines = [f"- {i.description}" for i in tool_issues]
        answer_lines = [f"- {qid}: {text}" for qid, text in answers.items()]
        sections = []
        if examples:
            # Advisory only: similar past requests from example memory.
            sections = ["Similar past requests:"] + [f"- {e}" for e in examples] + [""]
        return "\n".join(
            sections
            + [
                f"User request: {user_query or plan.goal}",
                f"Plan (version {plan.version}):",
                json.dumps(plan.dump(), indent=2, default=str),
                "",
                "Parameter findings after automatic resolution:",
                "\n".join(findings) or "- none",
                "",
                "Tool availability problems:",
                "\n".join(tool_lines) or "- none",
                "",
                "User answers to earlier questions:",
                "\n".join(answer_lines) or "- none",
            ]
        )

    async def critique(
        self,
        plan: Plan,
        ctx: RequestContext,
        *,
        user_query: str = "",
        answers: Optional[Dict[str, str]] = None,
        examples: Optional[List[str]] = None,
    ) -> ValidationOutcome:
        ctx.enter("validator")
        answers = answers or {}
        report = await self.resolve(plan, ctx)
        catalog = await self.catalog(ctx)
        tool_issues = self.check_tool_availability(plan, catalog)
        prompt = self._plan_prompt(plan, report, tool_issues, user_query, answers, list(examples or []))
        data = await self._ask_json(agents.CRITIC_SYSTEM, prompt, temperature=0.3)
        critique = self._parse_critique(plan, data)

        remaining = report.findings
        must_ask = [f for f in remaining if f.category == "mustAskUser"]
        dynamic_fix = self.can_be_fixed_dynamically(plan, remaining)
        issues = list(critique.issues) + tool_issues
        overall = critique.overall_score
        recommendation = critique.recommendation
        rationale = critique.rationale
        blocked = False
        if tool_issues and recommendation == "approve":
            recommendation = "revise"
        if any(i.severity == "critical" for i in issues) and recommendation == "approve":
            recommendation = "revise"
        if dynamic_fix and recommendation in ("reject", "revise"):
            recommendation = "approve-with-dynamic-fix"
            rationale = DYNAMIC_FIX_PREFIX + rationale
        elif must_ask and not dynamic_fix:
            for step_id in sorted({f.step_id for f in must_ask}):
                step = plan.step(step_id)
                names = [f.parameter_name for f in must_ask if f.step_id == step_id]
                issues.append(
                    CritiqueIssue(
                        severity="high",
                        category="missing-parameters",
                        description=f"Step {step.order if step else '?'} is missing user-provided values: {', '.join(names)}",
                        suggestion="Ask the user for these values before execution",
                        affected_steps=[step.order] if step else [],
                    )
                )
            before = recommendation
            overall = overall * self.config.must_ask_penalty
            recommendation = recommendation_for(overall, self.config.approval_threshold, self.config.revision_threshold)
            blocked = recommendation == "reject" and before != "reject"

        questions, warnings = self._sync_questions(
            plan, remaining, critique.follow_up_questions, synthesize=not dynamic_fix
        )
        questions = self._apply_answers(questions, answers)
        critique = critique.model_copy(
            update={
                "overall_score": overall,
                "issues": issues,
                "recommendation": recommendation,
                "rationale": rationale,
                "follow_up_questions": questions,
                "validation_warnings": warnings,
                "blocked_on_user_input": blocked,
            }
        )
        logger.info(
            "Critique for plan %s v%d: %s (score %.2f, %d finding(s))",
            plan.id,
            plan.version,
            critique.recommendation,
            critique.overall_score,
            len(remaining),
        )
        return ValidationOutcome(critique=critique, report=report)
