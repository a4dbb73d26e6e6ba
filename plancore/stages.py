import logging
from typing import Any, Dict, List, Optional, Protocol

from .config import AppSettings
from .errors import ConfigurationError, PlanRejectedError, ReasonerError, ToolExecutionError
from .ids import RequestContext
from .llm import ReasonerClient
from .meta import QualityAssessor
from .placeholders import DefaultPlaceholderPolicy, PlaceholderPolicy
from .plan_executor import PlanExecutor
from .replanner import Replanner
from .schemas import (
    Critique,
    CritiqueHistory,
    MetaAssessment,
    Plan,
    PlanExecutionResult,
    ReplanResult,
)
from .tool_runner import ToolRunnerClient
from .validator import PlanValidator, ResolutionReport, fallback_critique


logger = logging.getLogger(__name__)


class PipelineState:
    """Everything one plan lineage produced: versions, critiques, executions, assessments, replans."""

    def __init__(
        self,
        plan: Plan,
        ctx: RequestContext,
        *,
        user_query: str = "",
        reasoning: str = "",
        answers: Optional[Dict[str, str]] = None,
        thought_recommendations: Optional[List[str]] = None,
        examples: Optional[List[str]] = None,
    ) -> None:
        self.plan = plan
        self.ctx = ctx
        self.user_query = user_query
        self.reasoning = reasoning
        self.answers: Dict[str, str] = dict(answers or {})
        self.thought_recommendations = list(thought_recommendations or [])
        self.examples = list(examples or [])
        self.plans: List[Plan] = [plan]
        self.critiques = CritiqueHistory()
        self.report: Optional[ResolutionReport] = None
        self.execution: Optional[PlanExecutionResult] = None
        self.executions: List[PlanExecutionResult] = []
        self.assessments: List[MetaAssessment] = []
        self.replans: List[ReplanResult] = []
        self.errors: List[str] = []
        self.status = "pending"
        self.stop = False

    @property
    def critique(self) -> Optional[Critique]:
        """Latest critique of the current plan version; None until that version is validated."""
        current = self.critiques.for_version(self.plan.version)
        return current[-1] if current else None

    def confidence_history(self) -> List[float]:
        return [p.confidence for p in self.plans] + [c.overall_score for c in self.critiques.all()]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.ctx.request_id,
            "status": self.status,
            "plan": self.plan.dump(),
            "planVersions": [p.version for p in self.plans],
            "critiques": [c.dump() for c in self.critiques.all()],
            "execution": self.execution.dump() if self.execution else None,
            "assessments": [a.dump() for a in self.assessments],
            "replans": [r.dump() for r in self.replans],
            "errors": list(self.errors),
            "agentChain": list(self.ctx.agent_chain),
        }


class Stage(Protocol):
    name: str

    async def prepare(self, state: PipelineState) -> None:
        ...

    async def run(self, state: PipelineState) -> None:
        ...

    async def handle_error(self, state: PipelineState, exc: Exception) -> None:
        ...


class ValidateStage:
    name = "validate"

    def __init__(self, validator: PlanValidator) -> None:
        self.validator = validator

    async def prepare(self, state: PipelineState) -> None:
        state.ctx.enter(self.name)

    async def run(self, state: PipelineState) -> None:
        outcome = await self.validator.critique(
            state.plan,
            state.ctx,
            user_query=state.user_query,
            answers=state.answers,
            examples=state.examples,
        )
        state.critiques.add(outcome.critique)
        state.report = outcome.report

    async def handle_error(self, state: PipelineState, exc: Exception) -> None:
        if not isinstance(exc, (ReasonerError, ToolExecutionError)):
            raise exc
        logger.warning("Validation of plan %s failed, using neutral critique: %s", state.plan.id, exc)
        state.critiques.add(fallback_critique(state.plan))
        state.errors.append(f"validate: {exc}")


class ExecuteStage:
    name = "execute"

    def __init__(self, executor: PlanExecutor) -> None:
        self.executor = executor

    async def prepare(self, state: PipelineState) -> None:
        state.ctx.enter(self.name)
        state.status = "running"

    async def run(self, state: PipelineState) -> None:
        resume_from = None
        if state.execution is not None and state.execution.status == "paused" and state.execution.plan_id == state.plan.id:
            resume_from = state.execution
        result = await self.executor.execute(
            state.plan, state.critique, state.ctx, answers=state.answers, resume_from=resume_from
        )
        state.execution = result
        state.executions.append(result)
        state.status = result.status
        if result.status == "paused":
            state.stop = True

    async def handle_error(self, state: PipelineState, exc: Exception) -> None:
        if not isinstance(exc, PlanRejectedError):
            raise exc
        critique = state.critique
        result = PlanExecutionResult(
            plan_id=state.plan.id,
            status="rejected",
            errors=[str(exc)],
            critique_recommendation=critique.recommendation if critique else None,
        )
        state.execution = result
        state.executions.append(result)
        state.status = "rejected"


class AssessStage:
    name = "assess"

    def __init__(self, assessor: QualityAssessor) -> None:
        self.assessor = assessor

    async def prepare(self, state: PipelineState) -> None:
        state.ctx.enter(self.name)

    async def run(self, state: PipelineState) -> None:
        summary = None
        if state.execution is not None:
            ex = state.execution
            done = sum(1 for s in state.plan.steps if s.status == "succeeded")
            summary = f"status={ex.status} succeeded={done}/{len(state.plan.steps)} errors={'; '.join(ex.errors) or 'none'}"
        assessment = await self.assessor.assess(
            state.reasoning,
            state.plan,
            state.critique,
            state.ctx,
            confidence_history=state.confidence_history(),
            execution_summary=summary,
        )
        state.assessments.append(assessment)

    async def handle_error(self, state: PipelineState, exc: Exception) -> None:
        if not isinstance(exc, (ReasonerError, ToolExecutionError)):
            raise exc
        state.errors.append(f"assess: {exc}")
        state.assessments.append(MetaAssessment(assessment=str(exc)))


class ReplanStage:
    name = "replan"

    def __init__(self, replanner: Replanner, validator: PlanValidator) -> None:
        self.replanner = replanner
        self.validator = validator
        self._catalog = None

    async def prepare(self, state: PipelineState) -> None:
        state.ctx.enter(self.name)
        self._catalog = await self.validator.catalog(state.ctx)

    async def run(self, state: PipelineState) -> None:
        critique = state.critique
        answered = [q for q in critique.follow_up_questions if q.user_answer] if critique else []
        result = await self.replanner.replan(
            state.plan,
            state.ctx,
            assessment=state.assessments[-1] if state.assessments else None,
            critique=critique,
            catalog=self._catalog,
            thought_recommendations=state.thought_recommendations,
            answered_questions=answered,
        )
        state.replans.append(result)
        state.plan = result.plan
        state.plans.append(result.plan)
        state.execution = None

    async def handle_error(self, state: PipelineState, exc: Exception) -> None:
        raise exc


class PlanPipeline:
    """validate -> execute -> assess -> (replan, repeat) with an incremented plan version each cycle."""

    def __init__(
        self,
        settings: AppSettings,
        reasoner: ReasonerClient,
        tool_runner: ToolRunnerClient,
        *,
        policy: Optional[PlaceholderPolicy] = None,
        bus: Optional[Any] = None,
    ) -> None:
        settings.require_model()
        policy = policy or DefaultPlaceholderPolicy(stale_date_days=settings.validation.stale_date_days)
        validator = PlanValidator(settings, reasoner, tool_runner, policy=policy)
        self.validate = ValidateStage(validator)
        self.execute = ExecuteStage(PlanExecutor(settings, reasoner, tool_runner, policy=policy, bus=bus))
        self.assess = AssessStage(QualityAssessor(settings, reasoner, validator))
        self.replan = ReplanStage(Replanner(settings, reasoner), validator)
        self.max_cycles = max(0, settings.max_replan_cycles)

    async def _run_stage(self, stage: Stage, state: PipelineState) -> None:
        try:
            await stage.prepare(state)
            await stage.run(state)
        except ConfigurationError:
            raise
        except Exception as exc:
            await stage.handle_error(state, exc)

    async def _cycle(self, state: PipelineState, stages: List[Stage]) -> PipelineState:
        for cycle in range(self.max_cycles + 1):
            for stage in stages:
                await self._run_stage(stage, state)
                if state.stop:
                    return state
            stages = [self.validate, self.execute, self.assess]
            assessment = state.assessments[-1] if state.assessments else None
            succeeded = state.execution is not None and state.execution.overall_success
            if assessment is None or not assessment.should_replan or succeeded:
                break
            if cycle == self.max_cycles:
                logger.info("Replan budget exhausted for plan %s", state.plan.id)
                break
            await self._run_stage(self.replan, state)
        return state

    async def run(
        self,
        plan: Plan,
        *,
        user_query: str = "",
        reasoning: str = "",
        answers: Optional[Dict[str, str]] = None,
        thought_recommendations: Optional[List[str]] = None,
        examples: Optional[List[str]] = None,
        ctx: Optional[RequestContext] = None,
    ) -> PipelineState:
        state = PipelineState(
            plan,
            ctx or RequestContext(),
            user_query=user_query,
            reasoning=reasoning,
            answers=answers,
            thought_recommendations=thought_recommendations,
            examples=examples,
        )
        return await self._cycle(state, [self.validate, self.execute, self.assess])

    async def resume(self, state: PipelineState, answers: Dict[str, str]) -> PipelineState:
        """Continue a paused lineage with the user's answers; completed steps are not re-run."""
        state.answers.update(answers)
        state.stop = False
        return await self._cycle(state, [self.execute, self.assess])
