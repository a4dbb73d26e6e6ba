import json
import logging
import re
from typing import Any, Dict, List, Optional, Union

import httpx

from .config import EndpointConfig
from .errors import ReasonerError


logger = logging.getLogger(__name__)

ALLOWED_ROLES = {"system", "user", "assistant"}
_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


def _balanced_spans(text: str):
    """Yield (start, end) spans of balanced top-level {...} blocks, ignoring braces inside strings."""
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for idx, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            if depth > 0:
                in_string = True
        elif ch == "{":
            if depth == 0:
                start = idx
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                yield start, idx + 1


def extract_json_object(text: Any) -> Optional[Dict[str, Any]]:
    """Return the first JSON object found in noisy model output, or None."""
    if isinstance(text, dict):
        return text
    if not isinstance(text, str) or not text.strip():
        return None
    candidates = [m.group(1) for m in _FENCE_RE.finditer(text)] + [text]
    for candidate in candidates:
        raw = candidate.strip()
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict):
                return parsed
        except ValueError:
            pass
        for start, end in _balanced_spans(raw):
            try:
                parsed = json.loads(raw[start:end])
            except ValueError:
                continue
            if isinstance(parsed, dict):
                return parsed
    return None


def _sanitize_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    cleaned: List[Dict[str, str]] = []
    for msg in messages or []:
        role = msg.get("role")
        content = msg.get("content")
        if role not in ALLOWED_ROLES or content in (None, ""):
            continue
        if not isinstance(content, str):
            content = json.dumps(content, ensure_ascii=True)
        cleaned.append({"role": role, "content": content})
    return cleaned


class ReasonerClient:
    """OpenAI-compatible chat client used by every stage that needs a model."""

    def __init__(
        self,
        endpoint: EndpointConfig,
        max_output_tokens: Optional[int] = None,
        timeout: float = 120.0,
    ) -> None:
        self.base_url = endpoint.base_url.rstrip("/")
        self.model = endpoint.model_id
        self.api_key = endpoint.api_key
        self.max_output_tokens = max_output_tokens
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        *,
        temperature: float = 0.2,
        max_tokens: int = 1024,
        structured: bool = False,
    ) -> Union[str, Dict[str, Any]]:
        cleaned = _sanitize_messages(messages)
        if not cleaned:
            raise ValueError("messages must include at least one non-empty entry")
        final_max_tokens = max_tokens
        if self.max_output_tokens:
            final_max_tokens = min(max_tokens, self.max_output_tokens)
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": cleaned,
            "temperature": temperature,
            "max_tokens": final_max_tokens,
            "stream": False,
        }
        if structured:
            payload["response_format"] = {"type": "json_object"}
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            resp = await self.client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ReasonerError(f"Reasoner returned HTTP {exc.response.status_code}: {exc.response.text[:300]}") from exc
        except httpx.RequestError as exc:
            raise ReasonerError(f"Reasoner unreachable: {exc}") from exc
        try:
            data = resp.json()
        except ValueError as exc:
            raise ReasonerError(f"Reasoner returned a non-JSON body: {resp.text[:300]}") from exc
        content = self._content(data)
        if not structured:
            return content
        parsed = extract_json_object(content)
        if parsed is None:
            logger.warning("Reasoner returned non-JSON content for a structured request (%d chars)", len(content))
            return {}
        return parsed

    @staticmethod
    def _content(data: Any) -> str:
        if not isinstance(data, dict):
            raise ReasonerError(f"Reasoner returned an unexpected body of type {type(data).__name__}")
        choices = data.get("choices") or []
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return ""
        message = choices[0].get("message")
        if not isinstance(message, dict):
            return ""
        content = message.get("content")
        if content is None or content == "":
            # Reasoning models sometimes leave content empty and put the answer here.
            content = message.get("reasoning") or message.get("reasoning_content") or ""
        return str(content)

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
