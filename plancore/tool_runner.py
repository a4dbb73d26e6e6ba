import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from .config import ToolRunnerConfig
from .errors import ToolExecutionError
from .ids import RequestContext
from .schemas import ToolCatalog, ToolSpec, ToolValidation, WorkflowTemplate


logger = logging.getLogger(__name__)


def _decode_content(result: Any) -> Any:
    """Unwrap `{content: [{type: "text", text: ...}]}` results into plain JSON values."""
    if not isinstance(result, dict) or not isinstance(result.get("content"), list):
        return result
    if result.get("isError"):
        texts = [str(item.get("text") or "") for item in result["content"] if isinstance(item, dict)]
        raise ToolExecutionError("; ".join(t for t in texts if t) or "Tool reported an error")
    decoded: List[Any] = []
    for item in result["content"]:
        if not isinstance(item, dict) or item.get("type") != "text":
            decoded.append(item)
            continue
        text = item.get("text")
        try:
            decoded.append(json.loads(text))
        except (TypeError, ValueError):
            decoded.append(text)
    if len(decoded) == 1:
        # A single text block carrying an array is the common shape for listing tools.
        return decoded[0]
    return decoded


class ToolRunnerClient:
    def __init__(self, config: ToolRunnerConfig) -> None:
        self.url = config.base_url
        self.client = httpx.AsyncClient(
            timeout=config.timeout_s,
            limits=httpx.Limits(max_connections=config.max_connections, max_keepalive_connections=16),
        )

    async def call_tool(self, name: str, arguments: Dict[str, Any], ctx: RequestContext) -> Any:
        result = await self._rpc("tools/call", {"name": name, "arguments": arguments}, ctx, tool_name=name)
        return _decode_content(result)

    async def list_tools(self, ctx: RequestContext) -> List[ToolSpec]:
        result = await self._rpc("tools/list", {}, ctx)
        return [ToolSpec.model_validate(t) for t in (result or {}).get("tools") or []]

    async def list_prompts(self, ctx: RequestContext) -> List[WorkflowTemplate]:
        result = await self._rpc("prompts/list", {}, ctx)
        return [WorkflowTemplate.model_validate(p) for p in (result or {}).get("prompts") or []]

    async def get_prompt(self, name: str, arguments: Dict[str, Any], ctx: RequestContext) -> Dict[str, Any]:
        return await self._rpc("prompts/get", {"name": name, "arguments": arguments}, ctx, tool_name=name)

    async def validate(
        self,
        name: str,
        arguments: Dict[str, Any],
        ctx: RequestContext,
        context: Optional[Dict[str, Any]] = None,
    ) -> ToolValidation:
        params = {"name": name, "arguments": arguments, "context": context or {}}
        result = _decode_content(await self._rpc("tools/validate", params, ctx, tool_name=name))
        if not isinstance(result, dict):
            raise ToolExecutionError(f"Unexpected validation payload for {name}", tool_name=name)
        return ToolValidation.from_payload({"toolName": name, **result})

    async def load_catalog(self, ctx: RequestContext) -> ToolCatalog:
        tools = await self.list_tools(ctx)
        try:
            prompts = await self.list_prompts(ctx)
        except ToolExecutionError as exc:
            logger.warning("Workflow template listing failed: %s", exc)
            prompts = []
        return ToolCatalog(tools=tools, prompts=prompts)

    async def _rpc(
        self,
        method: str,
        params: Dict[str, Any],
        ctx: RequestContext,
        tool_name: str = "",
    ) -> Any:
        payload = {"jsonrpc": "2.0", "id": ctx.next_rpc_id(), "method": method, "params": params}
        headers = {"Content-Type": "application/json", "X-Request-Id": ctx.request_id}
        try:
            resp = await self.client.post(self.url, json=payload, headers=headers)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise ToolExecutionError(
                f"Tool runner HTTP {exc.response.status_code}: {exc.response.text[:300]}",
                tool_name=tool_name,
                code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise ToolExecutionError(f"Tool runner unreachable: {exc}", tool_name=tool_name) from exc
        except ValueError as exc:
            raise ToolExecutionError(f"Tool runner returned invalid JSON: {exc}", tool_name=tool_name) from exc
        error = data.get("error") if isinstance(data, dict) else None
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            raise ToolExecutionError(str(message or "Unknown tool error"), tool_name=tool_name, code=code)
        return data.get("result") if isinstance(data, dict) else None

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()
