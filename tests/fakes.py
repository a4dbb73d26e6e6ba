import asyncio
import json
from typing import Any, Dict, Iterable, List, Optional, Union

from plancore.errors import ToolExecutionError
from plancore.ids import RequestContext
from plancore.llm import extract_json_object
from plancore.schemas import Categorization, InputSchema, ToolCatalog, ToolSpec, ToolValidation, WorkflowTemplate


CRITIC = "You are the Plan Critic"
RESOLVER = "You are the Parameter Resolver"
INFERRER = "You are the Parameter Inferrer"
COORDINATOR = "You are the Step Coordinator"
RECOVERY = "You are the Error Recovery advisor"
QUESTION = "You write one clear question"
META = "You are the Meta Assessor"
REPLANNER = "You are the Replanner"

APPROVING_CRITIQUE = {
    "overallScore": 0.9,
    "feasibilityScore": 0.9,
    "correctnessScore": 0.9,
    "efficiencyScore": 0.85,
    "safetyScore": 0.95,
    "recommendation": "approve",
    "rationale": "Looks executable.",
    "issues": [],
    "followUpQuestions": [],
}

GOOD_ASSESSMENT = {
    "reasoningQuality": 0.85,
    "breakdown": {"logic": 0.9, "completeness": 0.8, "alignment": 0.85},
    "shouldReplan": False,
    "shouldDeepenReasoning": False,
    "assessment": "Solid plan.",
}


def _message_text(message: Dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=True)


def tool(name: str, required: Iterable[str] = (), optional: Iterable[str] = (), description: str = "") -> ToolSpec:
    required = list(required)
    props = {n: {"type": "string"} for n in required + list(optional)}
    return ToolSpec(name=name, description=description, input_schema=InputSchema(properties=props, required=required))


class FakeReasoner:
    """Answers by system-prompt marker. A response may be a dict, a str, an exception,
    a callable taking the messages, or a list consumed one item per call (the last repeats)."""

    def __init__(self, responses: Optional[Dict[str, Any]] = None, delay_seconds: float = 0.0) -> None:
        self.responses: Dict[str, Any] = {
            CRITIC: APPROVING_CRITIQUE,
            META: GOOD_ASSESSMENT,
        }
        self.responses.update(responses or {})
        self.delay_seconds = delay_seconds
        self.calls: List[Dict[str, Any]] = []

    def calls_for(self, marker: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if marker in c["system"]]

    def _pick(self, system_text: str, messages: List[Dict[str, Any]]) -> Any:
        for marker, response in self.responses.items():
            if marker not in system_text:
                continue
            if isinstance(response, list):
                response = response.pop(0) if len(response) > 1 else (response[0] if response else {})
            if callable(response) and not isinstance(response, type):
                response = response(messages)
            return response
        return {}

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        *,
        temperature: float = 0.2,
        max_tokens: int = 1024,
        structured: bool = False,
    ) -> Union[str, Dict[str, Any]]:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        system_text = _message_text(messages[0]) if messages else ""
        user_text = _message_text(messages[-1]) if messages else ""
        self.calls.append(
            {
                "system": system_text,
                "user": user_text,
                "messages": list(messages),
                "temperature": temperature,
                "max_tokens": max_tokens,
                "structured": structured,
            }
        )
        response = self._pick(system_text, messages)
        if isinstance(response, Exception):
            raise response
        if structured:
            if isinstance(response, dict):
                return response
            return extract_json_object(response) or {}
        return response if isinstance(response, str) else json.dumps(response)

    async def close(self) -> None:
        return None


class FakeToolRunner:
    def __init__(
        self,
        tools: Optional[List[ToolSpec]] = None,
        prompts: Optional[List[WorkflowTemplate]] = None,
        results: Optional[Dict[str, Any]] = None,
        failures: Optional[Dict[str, Any]] = None,
        categories: Optional[Dict[str, str]] = None,
        delay_seconds: float = 0.0,
        catalog_error: bool = False,
    ) -> None:
        self.catalog = ToolCatalog(tools=tools or [], prompts=prompts or [])
        self.results: Dict[str, Any] = dict(results or {})
        # name -> number of failing calls before success (None fails forever), or (count, message)
        self.failures: Dict[str, Any] = dict(failures or {})
        self.categories: Dict[str, str] = dict(categories or {})
        self.delay_seconds = delay_seconds
        self.catalog_error = catalog_error
        self.calls: List[Dict[str, Any]] = []
        self.validate_calls: List[Dict[str, Any]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.rpc_ids: List[int] = []

    def calls_to(self, name: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["name"] == name]

    async def load_catalog(self, ctx: RequestContext) -> ToolCatalog:
        if self.catalog_error:
            raise ToolExecutionError("Tool runner unreachable")
        return self.catalog

    async def call_tool(self, name: str, arguments: Dict[str, Any], ctx: RequestContext) -> Any:
        self.rpc_ids.append(ctx.next_rpc_id())
        self.calls.append({"name": name, "arguments": dict(arguments)})
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
            if name in self.failures:
                spec = self.failures[name]
                count, message = spec if isinstance(spec, tuple) else (spec, f"{name} failed: upstream timeout")
                if count is None or count > 0:
                    if count is not None:
                        self.failures[name] = (count - 1, message)
                    raise ToolExecutionError(message, tool_name=name)
            result = self.results.get(name, {"ok": True})
            if callable(result):
                result = result(arguments)
            return result
        finally:
            self.in_flight -= 1

    async def validate(
        self,
        name: str,
        arguments: Dict[str, Any],
        ctx: RequestContext,
        context: Optional[Dict[str, Any]] = None,
    ) -> ToolValidation:
        self.validate_calls.append({"name": name, "arguments": dict(arguments), "context": context or {}})
        required = self.catalog.required_params(name)
        missing = [p for p in required if arguments.get(p) in (None, "")]
        cat = Categorization()
        for param in missing:
            category = self.categories.get(param, "mustAskUser")
            if category == "resolvable":
                cat.resolvable.append(param)
            elif category == "canInfer":
                cat.can_infer.append(param)
            else:
                cat.must_ask_user.append(param)
        return ToolValidation(
            tool_name=name,
            required_params=required,
            provided_params=[k for k, v in arguments.items() if v not in (None, "")],
            missing_params=missing,
            is_valid=not missing,
            categorization=cat,
        )

    async def close(self) -> None:
        return None
