import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from plancore.config import AppSettings, load_settings
from plancore.errors import ConfigurationError, PlanRejectedError, PlanStructureError
from plancore.ids import RequestContext
from plancore.llm import ReasonerClient
from plancore.meta import QualityAssessor
from plancore.plan_executor import PlanExecutor
from plancore.replanner import Replanner
from plancore.schemas import Critique, MetaAssessment, Plan, PlanExecutionResult
from plancore.stages import PlanPipeline
from plancore.tool_runner import ToolRunnerClient
from plancore.validator import PlanValidator


def _read_json(path: Optional[str]) -> Any:
    if not path:
        return None
    return json.loads(Path(path).read_text())


def load_plan(path: str) -> Plan:
    data = _read_json(path) or {}
    steps = data.get("steps") or []
    if steps and all(isinstance(s, dict) and "id" in s and "order" in s for s in steps):
        return Plan.model_validate(data)
    return Plan.new(str(data.get("goal") or ""), steps)


def _print(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _clients(settings: AppSettings):
    endpoint = settings.require_model()
    reasoner = ReasonerClient(endpoint, max_output_tokens=settings.reasoner_max_tokens)
    tool_runner = ToolRunnerClient(settings.tool_runner)
    return reasoner, tool_runner


async def run_validate(args: argparse.Namespace, settings: AppSettings) -> int:
    reasoner, tool_runner = _clients(settings)
    try:
        validator = PlanValidator(settings, reasoner, tool_runner)
        outcome = await validator.critique(
            load_plan(args.plan), RequestContext(), user_query=args.query or "", answers=_read_json(args.answers)
        )
        _print(outcome.dump())
        return 0 if outcome.critique.recommendation != "reject" else 2
    finally:
        await reasoner.close()
        await tool_runner.close()


async def run_execute(args: argparse.Namespace, settings: AppSettings) -> int:
    reasoner, tool_runner = _clients(settings)
    try:
        executor = PlanExecutor(settings, reasoner, tool_runner)
        critique_data = _read_json(args.critique)
        resume_data = _read_json(args.resume)
        try:
            result = await executor.execute(
                load_plan(args.plan),
                Critique.model_validate(critique_data) if critique_data else None,
                RequestContext(),
                answers=_read_json(args.answers),
                resume_from=PlanExecutionResult.model_validate(resume_data) if resume_data else None,
            )
        except PlanRejectedError as exc:
            print(f"Plan rejected: {exc}")
            return 2
        _print(result.dump())
        return 0 if result.overall_success else 1
    finally:
        await reasoner.close()
        await tool_runner.close()


async def run_assess(args: argparse.Namespace, settings: AppSettings) -> int:
    reasoner, tool_runner = _clients(settings)
    try:
        validator = PlanValidator(settings, reasoner, tool_runner)
        assessor = QualityAssessor(settings, reasoner, validator)
        critique_data = _read_json(args.critique)
        assessment = await assessor.assess(
            args.reasoning or "",
            load_plan(args.plan),
            Critique.model_validate(critique_data) if critique_data else None,
            RequestContext(),
        )
        _print(assessment.dump())
        return 0
    finally:
        await reasoner.close()
        await tool_runner.close()


async def run_replan(args: argparse.Namespace, settings: AppSettings) -> int:
    reasoner, tool_runner = _clients(settings)
    try:
        ctx = RequestContext()
        catalog = await PlanValidator(settings, reasoner, tool_runner).catalog(ctx)
        critique_data = _read_json(args.critique)
        assessment_data = _read_json(args.assessment)
        result = await Replanner(settings, reasoner).replan(
            load_plan(args.plan),
            ctx,
            assessment=MetaAssessment.model_validate(assessment_data) if assessment_data else None,
            critique=Critique.model_validate(critique_data) if critique_data else None,
            catalog=catalog,
        )
        _print(result.dump())
        return 0
    finally:
        await reasoner.close()
        await tool_runner.close()


async def run_pipeline(args: argparse.Namespace, settings: AppSettings) -> int:
    reasoner, tool_runner = _clients(settings)
    try:
        pipeline = PlanPipeline(settings, reasoner, tool_runner)
        state = await pipeline.run(
            load_plan(args.plan),
            user_query=args.query or "",
            reasoning=args.reasoning or "",
            answers=_read_json(args.answers),
            examples=_read_json(args.examples),
        )
        _print(state.to_dict())
        return 0 if state.execution is not None and state.execution.overall_success else 1
    finally:
        await reasoner.close()
        await tool_runner.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="plancore CLI")
    parser.add_argument("--config", default=None, help="Path to config.json")
    parser.add_argument("--log-level", default=None, help="Override log level")
    subparsers = parser.add_subparsers(dest="command")

    validate = subparsers.add_parser("validate", help="Validate and critique a plan")
    validate.add_argument("plan", help="Plan JSON file")
    validate.add_argument("--query", help="Original user request")
    validate.add_argument("--answers", help="JSON file mapping question id to answer")

    execute = subparsers.add_parser("execute", help="Execute a plan")
    execute.add_argument("plan", help="Plan JSON file")
    execute.add_argument("--critique", help="Critique JSON file")
    execute.add_argument("--answers", help="JSON file mapping question id to answer")
    execute.add_argument("--resume", help="Paused execution result JSON to resume from")

    assess = subparsers.add_parser("assess", help="Assess plan quality")
    assess.add_argument("plan", help="Plan JSON file")
    assess.add_argument("--critique", help="Critique JSON file")
    assess.add_argument("--reasoning", help="Originating reasoning text")

    replan = subparsers.add_parser("replan", help="Produce the next plan version")
    replan.add_argument("plan", help="Plan JSON file")
    replan.add_argument("--critique", help="Critique JSON file")
    replan.add_argument("--assessment", help="Meta assessment JSON file")

    run = subparsers.add_parser("run", help="Validate, execute, assess and replan")
    run.add_argument("plan", help="Plan JSON file")
    run.add_argument("--query", help="Original user request")
    run.add_argument("--reasoning", help="Originating reasoning text")
    run.add_argument("--answers", help="JSON file mapping question id to answer")
    run.add_argument("--examples", help="JSON list of similar past requests")

    subparsers.add_parser("config", help="Show effective settings")
    return parser


COMMANDS = {
    "validate": run_validate,
    "execute": run_execute,
    "assess": run_assess,
    "replan": run_replan,
    "run": run_pipeline,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = load_settings(Path(args.config) if args.config else None)
    logging.basicConfig(
        level=(args.log_level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.command == "config":
        _print(settings.to_safe_dict())
        return 0
    handler = COMMANDS.get(args.command or "")
    if handler is None:
        parser.print_help()
        return 1
    try:
        return asyncio.run(handler(args, settings))
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}")
        return 3
    except PlanStructureError as exc:
        print(f"Invalid plan: {exc}")
        return 4


if __name__ == "__main__":
    sys.exit(main())
