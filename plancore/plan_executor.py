import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Set, Tuple

from .config import AppSettings
from .coordinator import StepCoordinator
from .errors import PlanRejectedError, ToolExecutionError
from .ids import RequestContext
from .llm import ReasonerClient
from .placeholders import DefaultPlaceholderPolicy, PlaceholderPolicy
from .recovery import ErrorRecovery, classify_error
from .schemas import (
    Adaptation,
    Critique,
    ErrorKind,
    ExecutionQuestion,
    ExecutionResult,
    FollowUpQuestion,
    Plan,
    PlanExecutionResult,
    PlanUpdate,
    QuestionContext,
    Step,
    ToolCatalog,
)
from .tool_runner import ToolRunnerClient


logger = logging.getLogger(__name__)


class _RunState:
    def __init__(self, plan: Plan, critique: Optional[Critique]) -> None:
        self.plan = plan
        self.critique = critique
        self.partial_results: Dict[str, Any] = {}
        self.results: List[ExecutionResult] = []
        self.step_errors: Dict[str, str] = {}
        self.fatal_errors: List[str] = []
        self.questions: List[ExecutionQuestion] = []
        self.adaptations: List[Adaptation] = []
        self.plan_updates: List[PlanUpdate] = []
        self.answered: Set[str] = set()
        self.cleared_steps: Set[str] = set()

    def ask(self, question: ExecutionQuestion) -> None:
        if all(q.id != question.id for q in self.questions):
            self.questions.append(question)


class PlanExecutor:
    """Runs a plan wave by wave: coordinates data between steps, retries, recovers, and pauses for input."""

    def __init__(
        self,
        settings: AppSettings,
        reasoner: ReasonerClient,
        tool_runner: ToolRunnerClient,
        *,
        policy: Optional[PlaceholderPolicy] = None,
        catalog: Optional[ToolCatalog] = None,
        bus: Optional[Any] = None,
        skipped_satisfies_dependencies: bool = True,
    ) -> None:
        settings.require_model()
        config = settings.execution
        self.tool_runner = tool_runner
        self.max_parallel = max(1, config.max_parallel)
        self.max_retries = max(1, config.max_retries)
        self.retry_delay_s = max(0.0, config.retry_delay_s)
        policy = policy or DefaultPlaceholderPolicy(stale_date_days=settings.validation.stale_date_days)
        self.coordinator = StepCoordinator(reasoner, policy)
        self.recovery = ErrorRecovery(reasoner)
        self.skipped_satisfies_dependencies = skipped_satisfies_dependencies
        self._catalog = catalog
        self._bus = bus

    async def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if not self._bus:
            return
        try:
            await self._bus.emit(event_type, payload)
        except Exception:
            return

    async def _load_catalog(self, ctx: RequestContext) -> ToolCatalog:
        if self._catalog is None:
            try:
                self._catalog = await self.tool_runner.load_catalog(ctx)
            except ToolExecutionError as exc:
                logger.warning("Tool catalog unavailable during execution: %s", exc)
                return ToolCatalog()
        return self._catalog

    # -- entry point ----------------------------------------------------------------

    async def execute(
        self,
        plan: Plan,
        critique: Optional[Critique] = None,
        ctx: Optional[RequestContext] = None,
        *,
        answers: Optional[Dict[str, str]] = None,
        resume_from: Optional[PlanExecutionResult] = None,
    ) -> PlanExecutionResult:
        ctx = ctx or RequestContext()
        ctx.enter("executor")
        if critique is not None and critique.recommendation == "reject" and not critique.blocked_on_user_input:
            raise PlanRejectedError(f"Plan {plan.id} was rejected by validation: {critique.rationale}", plan_id=plan.id)
        started = time.monotonic()
        state = _RunState(plan, critique)
        self._restore(state, resume_from)
        self._apply_answers(state, answers or {}, resume_from)
        catalog = await self._load_catalog(ctx)

        while True:
            wave = self._ready_steps(plan)
            if not wave:
                break
            for step in wave:
                question = self._upfront_question(state, step, ctx)
                if question is not None:
                    state.ask(question)
            if state.questions:
                break
            snapshot = dict(state.partial_results)
            await self._run_wave(state, wave, snapshot, catalog, ctx)
            if state.questions:
                break

        return await self._finish(state, started)

    # -- scheduling -----------------------------------------------------------------

    def _satisfied(self, plan: Plan) -> Set[str]:
        done = {"succeeded", "skipped"} if self.skipped_satisfies_dependencies else {"succeeded"}
        return {s.id for s in plan.steps if s.status in done}

    def _ready_steps(self, plan: Plan) -> List[Step]:
        satisfied = self._satisfied(plan)
        return [s for s in plan.steps if s.status == "pending" and all(d in satisfied for d in s.dependencies)]

    async def _run_wave(
        self,
        state: _RunState,
        wave: List[Step],
        snapshot: Dict[str, Any],
        catalog: ToolCatalog,
        ctx: RequestContext,
    ) -> None:
        queue = list(wave)
        running: Dict[str, asyncio.Task] = {}
        try:
            while queue or running:
                while queue and len(running) < self.max_parallel:
                    step = queue.pop(0)
                    running[step.id] = asyncio.create_task(self._run_step(state, step, snapshot, catalog, ctx))
                done, _ = await asyncio.wait(list(running.values()), return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    step_id = task.result()
                    running.pop(step_id, None)
        finally:
            for task in running.values():
                task.cancel()
            if running:
                await asyncio.gather(*running.values(), return_exceptions=True)

    # -- per step -------------------------------------------------------------------

    async def _run_step(
        self,
        state: _RunState,
        step: Step,
        snapshot: Dict[str, Any],
        catalog: ToolCatalog,
        ctx: RequestContext,
    ) -> str:
        started = time.monotonic()
        try:
            return await self._step_body(state, step, snapshot, catalog, ctx, started)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.exception("Step %s aborted: %s", step.id, error)
            self._record(state, step, started, success=False, error=error, kind=classify_error(error), retries=0)
            step.status = "failed"
            await self._emit("step_error", {"step_id": step.id, "order": step.order, "message": error})
            return step.id

    async def _step_body(
        self,
        state: _RunState,
        step: Step,
        snapshot: Dict[str, Any],
        catalog: ToolCatalog,
        ctx: RequestContext,
        started: float,
    ) -> str:
        step.status = "running"
        payload = {"step_id": step.id, "order": step.order, "action": step.action}
        await self._emit("step_started", payload)

        coordination = await self.coordinator.coordinate(state.plan, step, snapshot, catalog, ctx)
        if coordination.needs_coordination and coordination.parameters != step.parameters:
            # Only this step's own coordination phase rewrites its parameters.
            state.plan_updates.append(
                PlanUpdate(
                    step_id=step.id,
                    step_order=step.order,
                    original_parameters=dict(step.parameters),
                    updated_parameters=dict(coordination.parameters),
                    reason=coordination.reasoning or "Filled parameters from earlier step results",
                )
            )
            step.parameters = dict(coordination.parameters)
        if coordination.missing_params:
            error = (
                "Earlier steps returned no usable data for: "
                if coordination.extraction_impossible
                else "Could not determine parameters from earlier results: "
            ) + ", ".join(coordination.missing_params)
            self._record(state, step, started, success=False, error=error, kind="coordination-error", retries=0)
            step.status = "failed"
            question = await self.recovery.question_for_failure(
                step,
                error,
                "coordination-error",
                ["Extracted values from earlier step results"],
                list(state.partial_results.keys()),
                ctx,
                parameter_name=coordination.missing_params[0],
            )
            state.ask(question)
            await self._emit("step_error", {**payload, "message": error})
            return step.id

        ok, result, attempts, error = await self._invoke(step.action, step.parameters, ctx, self.max_retries, step)
        if ok:
            self._succeed(state, step, started, result, attempts)
            await self._emit("step_completed", payload)
            return step.id

        kind = classify_error(error)
        self._record(state, step, started, success=False, error=error, kind=kind, retries=attempts)
        step.status = "failed"
        await self._emit("step_error", {**payload, "message": error})
        tried = [f"Called {step.action} {attempts} time(s)"]
        decision = await self.recovery.decide(
            state.plan, step, error, kind, attempts, catalog, state.partial_results, ctx
        )
        logger.info("Step %s failed (%s); recovery decision: %s", step.id, kind, decision.decision)

        if decision.decision == "skip":
            step.status = "skipped"
            return step.id

        if decision.decision in ("retry", "adapt"):
            action = step.action
            budget = self.max_retries
            if decision.decision == "adapt" and decision.adaptation is not None:
                state.adaptations.append(decision.adaptation)
                action = decision.adaptation.adapted_action
                step.action = action
                tried.append(f"Adapted to {action}")
            else:
                budget = max(1, min(decision.max_retries or self.max_retries, self.max_retries))
                tried.append("Retried after recovery analysis")
            retry_started = time.monotonic()
            ok, result, more, error = await self._invoke(action, step.parameters, ctx, budget, step)
            if ok:
                self._succeed(state, step, retry_started, result, more)
                await self._emit("step_completed", payload)
                return step.id
            kind = classify_error(error)
            self._record(state, step, retry_started, success=False, error=error, kind=kind, retries=more)

        question = await self.recovery.question_for_failure(
            step, error, kind, tried, list(state.partial_results.keys()), ctx
        )
        state.ask(question)
        return step.id

    async def _invoke(
        self,
        action: str,
        params: Dict[str, Any],
        ctx: RequestContext,
        attempts: int,
        step: Step,
    ) -> Tuple[bool, Any, int, str]:
        last_error = ""
        for attempt in range(1, attempts + 1):
            try:
                result = await self.tool_runner.call_tool(action, params, ctx)
                return True, result, attempt, ""
            except Exception as exc:
                last_error = str(exc) or exc.__class__.__name__
                logger.warning("Step %s attempt %d/%d failed: %s", step.id, attempt, attempts, last_error)
                if attempt < attempts:
                    await asyncio.sleep(self.retry_delay_s)
        return False, None, attempts, last_error

    def _record(
        self,
        state: _RunState,
        step: Step,
        started: float,
        *,
        success: bool,
        result: Any = None,
        error: Optional[str] = None,
        kind: Optional[ErrorKind] = None,
        retries: int = 0,
    ) -> None:
        state.results.append(
            ExecutionResult(
                step_id=step.id,
                step_order=step.order,
                success=success,
                result=result,
                error=error,
                error_type=kind,
                duration=round(time.monotonic() - started, 4),
                retries=retries,
                tool_called=step.action,
                parameters_used=dict(step.parameters),
            )
        )
        if success:
            state.step_errors.pop(step.id, None)
        elif error:
            state.step_errors[step.id] = error

    def _succeed(self, state: _RunState, step: Step, started: float, result: Any, attempts: int) -> None:
        self._record(state, step, started, success=True, result=result, retries=attempts)
        state.partial_results[step.id] = result
        step.status = "succeeded"

    # -- questions and answers ------------------------------------------------------

    def _from_follow_up(
        self, state: _RunState, step: Step, question: FollowUpQuestion, suggestion: str = ""
    ) -> ExecutionQuestion:
        return ExecutionQuestion(
            id=question.id,
            question=question.question,
            category="missing-data",
            priority="high",
            context=QuestionContext(
                step_id=step.id,
                step_order=step.order,
                parameter_name=question.parameter_name,
                what_failed="Missing required information before execution",
                what_was_tried="Pre-execution validation",
                current_state=(
                    "Plan execution not started"
                    if not state.partial_results
                    else f"{len(state.partial_results)} step(s) completed"
                ),
                suggestion=suggestion,
            ),
        )

    def _upfront_question(self, state: _RunState, step: Step, ctx: RequestContext) -> Optional[ExecutionQuestion]:
        critique = state.critique
        if critique is None or critique.recommendation == "approve-with-dynamic-fix":
            return None
        unanswered = [
            q for q in critique.follow_up_questions if not q.user_answer and q.id not in state.answered
        ]
        bound = [q for q in unanswered if q.step_id == step.id]
        if bound:
            return self._from_follow_up(state, step, bound[0])
        flagged = []
        if step.id not in state.cleared_steps:
            flagged = [
                i for i in critique.issues if i.severity in ("critical", "high") and step.order in i.affected_steps
            ]
        if flagged:
            candidates = [
                q
                for q in unanswered
                if q.step_id in (None, step.id) and (q.category == "missing-info" or q.priority == "high")
            ]
            if candidates:
                return self._from_follow_up(state, step, candidates[0], flagged[0].suggestion)
            issue = flagged[0]
            return ExecutionQuestion(
                id=ctx.new_id("question"),
                question=f"Step {step.order} ({step.action}) was flagged before execution: {issue.description}. "
                "How should I proceed?",
                category="ambiguity",
                priority="high",
                context=QuestionContext(
                    step_id=step.id,
                    step_order=step.order,
                    what_failed="Missing required information before execution",
                    what_was_tried="Pre-execution validation",
                    current_state="Plan execution not started" if not state.partial_results else "Partially executed",
                    suggestion=issue.suggestion,
                ),
            )
        urgent = [q for q in unanswered if q.priority == "high" and q.step_id is None]
        if urgent:
            return self._from_follow_up(state, step, urgent[0])
        return None

    def _write_answer(self, state: _RunState, step_id: Optional[str], name: Optional[str], answer: str, qid: str) -> None:
        if step_id:
            state.cleared_steps.add(step_id)
        step = state.plan.step(step_id) if step_id else None
        if step is None or not name:
            return
        if step.parameters.get(name) == answer:
            return
        original = dict(step.parameters)
        step.parameters[name] = answer
        state.plan_updates.append(
            PlanUpdate(
                step_id=step.id,
                step_order=step.order,
                original_parameters=original,
                updated_parameters=dict(step.parameters),
                reason=f"User answer to {qid}",
            )
        )

    def _apply_answers(
        self, state: _RunState, answers: Dict[str, str], resume_from: Optional[PlanExecutionResult]
    ) -> None:
        if not answers:
            return
        state.answered.update(answers.keys())
        handled: Set[str] = set()
        if state.critique is not None:
            updated = []
            for q in state.critique.follow_up_questions:
                if q.id in answers:
                    self._write_answer(state, q.step_id, q.parameter_name, answers[q.id], q.id)
                    handled.add(q.id)
                    q = q.model_copy(update={"user_answer": answers[q.id]})
                updated.append(q)
            state.critique = state.critique.model_copy(update={"follow_up_questions": updated})
        if resume_from is not None:
            for q in resume_from.questions_asked:
                if q.id in answers and q.id not in handled:
                    self._write_answer(state, q.context.step_id, q.context.parameter_name, answers[q.id], q.id)

    def _restore(self, state: _RunState, resume_from: Optional[PlanExecutionResult]) -> None:
        """Seed state from a paused run; anything not finished runs again."""
        if resume_from is not None:
            state.partial_results = dict(resume_from.partial_results)
            state.results = list(resume_from.steps)
            state.adaptations = list(resume_from.adaptations)
            state.plan_updates = list(resume_from.plan_updates)
        for step in state.plan.steps:
            if step.id in state.partial_results:
                step.status = "succeeded"
            elif resume_from is not None and step.status == "skipped":
                latest = resume_from.result_for(step.id)
                if latest is not None and latest.error:
                    state.step_errors[step.id] = latest.error
            else:
                step.status = "pending"

    # -- result ---------------------------------------------------------------------

    async def _finish(self, state: _RunState, started: float) -> PlanExecutionResult:
        plan = state.plan
        pending = [s for s in plan.steps if s.status == "pending"]
        if state.questions:
            status = "paused"
            await self._emit("execution_paused", {"questions": [q.id for q in state.questions]})
        elif pending:
            status = "deadlocked"
            orders = ", ".join(str(s.order) for s in pending)
            state.fatal_errors.append(f"Execution deadlock: Steps {orders} cannot execute")
            logger.error("Plan %s deadlocked; steps %s cannot execute", plan.id, orders)
        else:
            status = "completed"
        errors = [f"Step {s.order}: {state.step_errors[s.id]}" for s in plan.steps if s.id in state.step_errors]
        errors.extend(state.fatal_errors)
        overall = status == "completed" and not errors and all(s.status == "succeeded" for s in plan.steps)
        return PlanExecutionResult(
            plan_id=plan.id,
            overall_success=overall,
            status=status,
            steps=state.results,
            partial_results=state.partial_results,
            errors=errors,
            total_duration=round(time.monotonic() - started, 4),
            questions_asked=state.questions,
            adaptations=state.adaptations,
            plan_updates=state.plan_updates,
            requires_user_feedback=status == "paused",
            critique_recommendation=state.critique.recommendation if state.critique else None,
        )
