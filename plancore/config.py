import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

from .errors import ConfigurationError

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "PLANCORE_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class EndpointConfig(BaseModel):
    base_url: str
    model_id: str
    api_key: Optional[str] = None

    model_config = {"protected_namespaces": ()}


class ToolRunnerConfig(BaseModel):
    base_url: str = "http://127.0.0.1:3001/rpc"
    timeout_s: float = 60.0
    max_connections: int = 32


class ExecutionConfig(BaseModel):
    max_parallel: int = 4
    max_retries: int = 3
    retry_delay_s: float = 1.0


class ValidationConfig(BaseModel):
    max_iterations: int = 5
    approval_threshold: float = 0.8
    revision_threshold: float = 0.6
    # Multiplier applied to the overall score while mustAskUser findings remain.
    must_ask_penalty: float = 0.2
    stale_date_days: int = 365


class MetaConfig(BaseModel):
    replan_threshold: float = 0.4
    deepen_threshold: float = 0.6
    subscore_replan_threshold: float = 0.4


class AppSettings(BaseModel):
    reasoner_endpoint: EndpointConfig = Field(
        default_factory=lambda: EndpointConfig(base_url="http://127.0.0.1:1234/v1", model_id="")
    )
    reasoner_max_tokens: int = 4000
    tool_runner: ToolRunnerConfig = Field(default_factory=ToolRunnerConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    meta: MetaConfig = Field(default_factory=MetaConfig)
    max_replan_cycles: int = 2
    log_level: str = "INFO"

    def require_model(self) -> EndpointConfig:
        endpoint = self.reasoner_endpoint
        if not endpoint.model_id or not endpoint.base_url:
            raise ConfigurationError("Reasoner is not configured: set REASONER_MODEL and REASONER_BASE_URL")
        return endpoint

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        endpoint = data.get("reasoner_endpoint") or {}
        if endpoint.get("api_key"):
            endpoint["api_key"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "reasoner_base_url": os.getenv("REASONER_BASE_URL"),
        "reasoner_model": os.getenv("REASONER_MODEL"),
        "reasoner_api_key": os.getenv("REASONER_API_KEY"),
        "reasoner_max_tokens": os.getenv("REASONER_MAX_TOKENS"),
        "tool_runner_url": os.getenv("TOOL_RUNNER_URL"),
        "max_parallel": os.getenv("MAX_PARALLEL"),
        "max_retries": os.getenv("MAX_RETRIES"),
        "retry_delay_s": os.getenv("RETRY_DELAY_S"),
        "max_replan_cycles": os.getenv("MAX_REPLAN_CYCLES"),
        "log_level": os.getenv("LOG_LEVEL"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "reasoner_max_tokens" in cleaned:
        cleaned["reasoner_max_tokens"] = int(cleaned["reasoner_max_tokens"])
    if "max_parallel" in cleaned:
        cleaned["max_parallel"] = int(cleaned["max_parallel"])
    if "max_retries" in cleaned:
        cleaned["max_retries"] = int(cleaned["max_retries"])
    if "retry_delay_s" in cleaned:
        cleaned["retry_delay_s"] = float(cleaned["retry_delay_s"])
    if "max_replan_cycles" in cleaned:
        cleaned["max_replan_cycles"] = int(cleaned["max_replan_cycles"])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _nest_env(env_data: Dict[str, Any]) -> Dict[str, Any]:
    """Map flat env keys onto the nested settings shape."""
    nested: Dict[str, Any] = {}
    endpoint = {}
    for src, dst in (("reasoner_base_url", "base_url"), ("reasoner_model", "model_id"), ("reasoner_api_key", "api_key")):
        if src in env_data:
            endpoint[dst] = env_data[src]
    if endpoint:
        nested["reasoner_endpoint"] = endpoint
    if "tool_runner_url" in env_data:
        nested["tool_runner"] = {"base_url": env_data["tool_runner_url"]}
    execution = {k: env_data[k] for k in ("max_parallel", "max_retries", "retry_delay_s") if k in env_data}
    if execution:
        nested["execution"] = execution
    for key in ("reasoner_max_tokens", "max_replan_cycles", "log_level"):
        if key in env_data:
            nested[key] = env_data[key]
    return nested


def _merge(low: Dict[str, Any], high: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(low)
    for key, value in high.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _nest_env(_load_from_env())
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = _merge(file_data, env_data)
    else:
        merged = _merge(env_data, file_data)
    endpoint = merged.get("reasoner_endpoint")
    if isinstance(endpoint, dict):
        defaults = AppSettings().reasoner_endpoint
        endpoint.setdefault("base_url", defaults.base_url)
        endpoint.setdefault("model_id", defaults.model_id)
        if not endpoint.get("api_key") and env_data.get("reasoner_endpoint", {}).get("api_key"):
            endpoint["api_key"] = env_data["reasoner_endpoint"]["api_key"]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
