from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic.alias_generators import to_camel

from .errors import PlanStructureError
from .ids import new_id, utc_iso


StepStatus = Literal["pending", "running", "succeeded", "failed", "skipped"]
FindingCategory = Literal["resolvable", "canInfer", "mustAskUser"]
ErrorKind = Literal["missing-data", "validation-error", "coordination-error", "tool-error"]
Recommendation = Literal["approve", "revise", "reject", "approve-with-dynamic-fix"]
Severity = Literal["low", "medium", "high", "critical"]
Priority = Literal["low", "medium", "high"]
QuestionCategory = Literal["missing-data", "error-recovery", "coordination", "ambiguity", "user-choice"]
ExecutionStatus = Literal["completed", "paused", "deadlocked", "rejected"]

DEFAULT_PLAN_CONFIDENCE = 0.7


class Record(BaseModel):
    """Base for every artifact: snake_case in Python, camelCase on the wire."""

    model_config = {"alias_generator": to_camel, "populate_by_name": True, "protected_namespaces": ()}

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


def estimate_complexity(steps: List[Any]) -> float:
    return min(1.0, len(steps) / 10)


def _clamp01(value: Any, default: float) -> float:
    try:
        num = float(value)
    except (TypeError, ValueError):
        return default
    return max(0.0, min(1.0, num))


class Step(Record):
    id: str
    order: int
    description: str = ""
    action: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    expected_outcome: str = ""
    dependencies: List[str] = Field(default_factory=list)
    status: StepStatus = "pending"

    @classmethod
    def from_raw(cls, raw: Dict[str, Any], index: int) -> "Step":
        """Build a step from loosely shaped reasoner output."""
        try:
            order = int(raw.get("order") or index + 1)
        except (TypeError, ValueError):
            order = index + 1
        params = raw.get("parameters")
        deps = raw.get("dependencies") or []
        if isinstance(deps, str):
            deps = [deps]
        return cls(
            id=str(raw.get("id") or f"step-{order}"),
            order=order,
            description=str(raw.get("description") or ""),
            action=str(raw.get("action") or "unknown"),
            parameters=dict(params) if isinstance(params, dict) else {},
            expected_outcome=str(raw.get("expectedOutcome") or raw.get("expected_outcome") or ""),
            dependencies=[str(d) for d in deps if d],
        )


class Plan(Record):
    id: str = Field(default_factory=lambda: new_id("plan"))
    goal: str
    steps: List[Step] = Field(default_factory=list)
    confidence: float = DEFAULT_PLAN_CONFIDENCE
    estimated_complexity: float = 0.0
    version: int = 1
    created_at: str = Field(default_factory=utc_iso)
    original_plan_id: Optional[str] = None
    rationale: str = ""

    @model_validator(mode="after")
    def _check_structure(self) -> "Plan":
        orders = [s.order for s in self.steps]
        if any(b <= a for a, b in zip(orders, orders[1:])):
            raise PlanStructureError(f"Step orders must be unique and increasing: {orders}")
        ids = [s.id for s in self.steps]
        if len(set(ids)) != len(ids):
            raise PlanStructureError("Step ids must be unique")
        known = set(ids)
        for step in self.steps:
            unknown = [d for d in step.dependencies if d not in known]
            if unknown:
                raise PlanStructureError(f"Step {step.id} depends on unknown steps: {unknown}")
            if step.id in step.dependencies:
                raise PlanStructureError(f"Step {step.id} depends on itself")
        return self

    @classmethod
    def new(cls, goal: str, raw_steps: List[Dict[str, Any]], **kwargs: Any) -> "Plan":
        steps = [Step.from_raw(raw, idx) for idx, raw in enumerate(raw_steps)]
        steps.sort(key=lambda s: s.order)
        kwargs.setdefault("estimated_complexity", estimate_complexity(steps))
        return cls(goal=goal, steps=steps, **kwargs)

    def step(self, step_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def step_by_order(self, order: int) -> Optional[Step]:
        for step in self.steps:
            if step.order == order:
                return step
        return None


class ValidationFinding(Record):
    step_id: str
    parameter_name: str
    category: FindingCategory


class Categorization(Record):
    resolvable: List[str] = Field(default_factory=list)
    can_infer: List[str] = Field(default_factory=list)
    must_ask_user: List[str] = Field(default_factory=list)


class ToolValidation(Record):
    tool_name: str = ""
    required_params: List[str] = Field(default_factory=list)
    provided_params: List[str] = Field(default_factory=list)
    missing_params: List[str] = Field(default_factory=list)
    invalid_params: List[str] = Field(default_factory=list)
    is_valid: bool = True
    categorization: Categorization = Field(default_factory=Categorization)
    confidence: float = 1.0

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ToolValidation":
        validation = payload.get("validation") or {}
        data = dict(payload)
        if "isValid" not in data and isinstance(validation, dict):
            data["isValid"] = validation.get("isValid", not payload.get("missingParams"))
            data["invalidParams"] = validation.get("invalidParams") or []
        data.pop("validation", None)
        return cls.model_validate(data)


class ExecutionResult(Record):
    step_id: str
    step_order: int
    success: bool
    result: Any = None
    error: Optional[str] = None
    error_type: Optional[ErrorKind] = None
    duration: float = 0.0
    retries: int = 0
    timestamp: str = Field(default_factory=utc_iso)
    tool_called: str = ""
    parameters_used: Dict[str, Any] = Field(default_factory=dict)

    model_config = {**Record.model_config, "frozen": True}


class PlanUpdate(Record):
    step_id: str
    step_order: int
    timestamp: str = Field(default_factory=utc_iso)
    original_parameters: Dict[str, Any] = Field(default_factory=dict)
    updated_parameters: Dict[str, Any] = Field(default_factory=dict)
    reason: str = ""


class Adaptation(Record):
    step_id: str = ""
    original_action: str = ""
    adapted_action: str = ""
    reason: str = ""


class QuestionContext(Record):
    step_id: str = ""
    step_order: int = 0
    parameter_name: Optional[str] = None
    what_failed: str = ""
    what_was_tried: str = ""
    current_state: str = ""
    suggestion: str = ""


class ExecutionQuestion(Record):
    id: str
    question: str
    category: QuestionCategory = "missing-data"
    priority: Priority = "high"
    context: QuestionContext = Field(default_factory=QuestionContext)


class PlanExecutionResult(Record):
    plan_id: str
    overall_success: bool = False
    status: ExecutionStatus = "completed"
    steps: List[ExecutionResult] = Field(default_factory=list)
    partial_results: Dict[str, Any] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)
    total_duration: float = 0.0
    questions_asked: List[ExecutionQuestion] = Field(default_factory=list)
    adaptations: List[Adaptation] = Field(default_factory=list)
    plan_updates: List[PlanUpdate] = Field(default_factory=list)
    requires_user_feedback: bool = False
    critique_recommendation: Optional[Recommendation] = None

    def result_for(self, step_id: str) -> Optional[ExecutionResult]:
        for result in reversed(self.steps):
            if result.step_id == step_id:
                return result
        return None


class CritiqueIssue(Record):
    severity: Severity = "medium"
    category: str = "logic"
    description: str = ""
    suggestion: str = "Review and fix"
    affected_steps: List[int] = Field(default_factory=list)


class FollowUpQuestion(Record):
    id: str
    question: str
    category: str = "missing-info"
    priority: Priority = "medium"
    user_answer: Optional[str] = None
    step_id: Optional[str] = None
    parameter_name: Optional[str] = None


class Critique(Record):
    id: str = Field(default_factory=lambda: new_id("critique"))
    plan_id: str = ""
    plan_version: int = 1
    overall_score: float = 0.5
    feasibility_score: float = 0.5
    correctness_score: float = 0.5
    efficiency_score: float = 0.5
    safety_score: float = 0.5
    issues: List[CritiqueIssue] = Field(default_factory=list)
    follow_up_questions: List[FollowUpQuestion] = Field(default_factory=list)
    recommendation: Recommendation = "revise"
    rationale: str = ""
    validation_warnings: List[str] = Field(default_factory=list)
    # True when only unanswered user-input questions pushed the score below the reject line.
    blocked_on_user_input: bool = False
    created_at: str = Field(default_factory=utc_iso)

    def unanswered_high_priority(self) -> List[FollowUpQuestion]:
        return [q for q in self.follow_up_questions if q.priority == "high" and not q.user_answer]


class CritiqueHistory:
    """Ordered critique versions for one plan lineage; entries are never mutated."""

    def __init__(self) -> None:
        self._items: List[Critique] = []

    def add(self, critique: Critique) -> None:
        self._items.append(critique)

    def latest(self) -> Optional[Critique]:
        return self._items[-1] if self._items else None

    def for_version(self, version: int) -> List[Critique]:
        return [c for c in self._items if c.plan_version == version]

    def all(self) -> List[Critique]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)


class QualityBreakdown(Record):
    logic: float = 0.5
    completeness: float = 0.5
    alignment: float = 0.5


class PatternAnalysis(Record):
    detected_patterns: List[str] = Field(default_factory=list)
    inconsistencies: List[str] = Field(default_factory=list)
    strengths: List[str] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)


class MetaAssessment(Record):
    reasoning_quality: float = 0.5
    breakdown: QualityBreakdown = Field(default_factory=QualityBreakdown)
    should_replan: bool = False
    should_deepen_reasoning: bool = False
    replan_strategy: str = ""
    orchestrator_directives: List[str] = Field(default_factory=list)
    focus_areas: List[str] = Field(default_factory=list)
    pattern_analysis: PatternAnalysis = Field(default_factory=PatternAnalysis)
    reasoning_depth_recommendation: int = 1
    steps_needing_validation: List[str] = Field(default_factory=list)
    recommended_actions: List[str] = Field(default_factory=list)
    assessment: str = ""
    passes: int = 1


class ReplanDiff(Record):
    steps_added: List[str] = Field(default_factory=list)
    steps_removed: List[str] = Field(default_factory=list)
    steps_modified: List[str] = Field(default_factory=list)


class ChangesExplanation(Record):
    steps_added: List[str] = Field(default_factory=list)
    steps_removed: List[str] = Field(default_factory=list)
    steps_modified: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)


class ReplanResult(Record):
    plan: Plan
    diff: ReplanDiff
    rationale: str = ""
    changes_explanation: ChangesExplanation = Field(default_factory=ChangesExplanation)
    addressed_meta_guidance: List[str] = Field(default_factory=list)
    addressed_critic_issues: List[str] = Field(default_factory=list)
    addressed_thought_recommendations: List[str] = Field(default_factory=list)
    answered_questions: List[FollowUpQuestion] = Field(default_factory=list)
    fallback: bool = False


class InputSchema(Record):
    type: str = "object"
    properties: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    required: List[str] = Field(default_factory=list)


class ToolSpec(Record):
    name: str
    description: str = ""
    input_schema: InputSchema = Field(default_factory=InputSchema)


class WorkflowTemplate(Record):
    name: str
    description: str = ""
    arguments: List[Dict[str, Any]] = Field(default_factory=list)


class ToolCatalog(Record):
    tools: List[ToolSpec] = Field(default_factory=list)
    prompts: List[WorkflowTemplate] = Field(default_factory=list)

    def find(self, name: str) -> Optional[ToolSpec]:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None

    def find_template(self, name: str) -> Optional[WorkflowTemplate]:
        for prompt in self.prompts:
            if prompt.name == name:
                return prompt
        return None

    def has(self, name: str) -> bool:
        return self.find(name) is not None or self.find_template(name) is not None

    def required_params(self, name: str) -> List[str]:
        tool = self.find(name)
        if tool is not None:
            return list(tool.input_schema.required)
        template = self.find_template(name)
        if template is not None:
            return [str(a.get("name")) for a in template.arguments if a.get("required") and a.get("name")]
        return []

    def param_names(self, name: str) -> List[str]:
        tool = self.find(name)
        if tool is not None:
            return list(tool.input_schema.properties.keys())
        template = self.find_template(name)
        if template is not None:
            return [str(a.get("name")) for a in template.arguments if a.get("name")]
        return []

    def normalize_name(self, name: str) -> str:
        """Strip dotted namespacing when the bare name exists in the catalog."""
        if not name or self.has(name):
            return name
        if "." in name:
            bare = name.rsplit(".", 1)[-1]
            if self.has(bare):
                return bare
        return name

    def describe(self) -> str:
        lines: List[str] = []
        for tool in self.tools:
            required = ", ".join(tool.input_schema.required) or "none"
            params = ", ".join(tool.input_schema.properties.keys()) or "none"
            lines.append(f"- {tool.name}: {tool.description} (params: {params}; required: {required})")
        for prompt in self.prompts:
            lines.append(f"- {prompt.name} [workflow]: {prompt.description}")
        return "\n".join(lines)


class ErrorDecision(Record):
    decision: Literal["retry", "ask-user", "adapt", "skip"] = "ask-user"
    reason: str = ""
    adaptation: Optional[Adaptation] = None
    max_retries: Optional[int] = None


class CoordinationResult(Record):
    needs_coordination: bool = False
    reasoning: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)
    extracted_values: Dict[str, Any] = Field(default_factory=dict)
    missing_params: List[str] = Field(default_factory=list)
    alternatives: List[str] = Field(default_factory=list)
    recommendation: Literal["proceed", "adapt", "ask-user"] = "proceed"
    extraction_impossible: bool = False


def clamp_score(value: Any) -> float:
    return _clamp01(value, 0.5)
