import itertools
import uuid
from datetime import datetime, timezone
from typing import List, Optional


def utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def new_id(prefix: str = "") -> str:
    token = uuid.uuid4().hex[:12]
    return f"{prefix}-{token}" if prefix else token


class RequestContext:
    """Per-run identity: a request id, the chain of stages it passed through, and a
    monotonically increasing counter for JSON-RPC ids. Passed explicitly to every call."""

    def __init__(self, request_id: Optional[str] = None) -> None:
        self.request_id = request_id or str(uuid.uuid4())
        self.agent_chain: List[str] = []
        self._counter = itertools.count(1)

    def next_rpc_id(self) -> int:
        return next(self._counter)

    def new_id(self, prefix: str) -> str:
        return new_id(prefix)

    def enter(self, stage: str) -> None:
        if not self.agent_chain or self.agent_chain[-1] != stage:
            self.agent_chain.append(stage)
