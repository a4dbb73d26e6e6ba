from pathlib import Path

import pytest

from plancore.config import AppSettings, EndpointConfig, ExecutionConfig


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    base_url = overrides.pop("base_url", "http://reasoner.test/v1")
    settings = AppSettings(
        reasoner_endpoint=EndpointConfig(base_url=base_url, model_id="test-model"),
        reasoner_max_tokens=4096,
        execution=ExecutionConfig(max_parallel=4, max_retries=3, retry_delay_s=0.0),
        max_replan_cycles=2,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def settings(tmp_path: Path) -> AppSettings:
    return make_settings(tmp_path)
