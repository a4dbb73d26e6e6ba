import json

import pytest

from plancore.ids import RequestContext
from plancore.meta import QualityAssessor, summarize_validations
from plancore.schemas import Critique, Plan, ToolValidation
from plancore.validator import PlanValidator
from tests.conftest import make_settings
from tests.fakes import GOOD_ASSESSMENT, META, FakeReasoner, FakeToolRunner, tool


def sample_plan() -> Plan:
    return Plan.new(
        "Ship sand",
        [
            {"id": "step-1", "order": 1, "action": "list_facilities"},
            {"id": "step-2", "order": 2, "action": "create_shipment", "parameters": {"material": "sand"}},
        ],
    )


def assessor(tmp_path, reasoner, runner=None) -> QualityAssessor:
    settings = make_settings(tmp_path)
    runner = runner or FakeToolRunner(tools=[tool("list_facilities"), tool("create_shipment", required=["facility_id", "material"])])
    return QualityAssessor(settings, reasoner, PlanValidator(settings, reasoner, runner))


def test_unparseable_assessment_is_neutral(tmp_path):
    result = assessor(tmp_path, FakeReasoner()).parse("The plan seems mostly fine.")
    assert result.reasoning_quality == 0.5
    assert result.assessment == "The plan seems mostly fine."
    assert result.should_replan is False
    assert result.should_deepen_reasoning is True


def test_low_subscore_forces_replan(tmp_path):
    raw = json.dumps({"reasoningQuality": 0.8, "breakdown": {"logic": 0.3, "completeness": 0.9, "alignment": 0.9}})
    result = assessor(tmp_path, FakeReasoner()).parse(raw)
    assert result.should_replan is True
    assert result.should_deepen_reasoning is False


def test_model_replan_vote_is_kept_and_depth_is_clamped(tmp_path):
    raw = json.dumps({**GOOD_ASSESSMENT, "shouldReplan": "true", "reasoningDepthRecommendation": 7})
    result = assessor(tmp_path, FakeReasoner()).parse(raw)
    assert result.should_replan is True
    assert result.reasoning_depth_recommendation == 3


def test_summarize_validations_lists_parameters():
    plan = sample_plan()
    text = summarize_validations(
        plan,
        {"step-2": ToolValidation(tool_name="create_shipment", required_params=["facility_id"], missing_params=["facility_id"], is_valid=False)},
    )
    assert "step-2 (step 2, create_shipment)" in text
    assert "Missing: facility_id" in text
    assert "Valid: False" in text


@pytest.mark.asyncio
async def test_single_pass_when_nothing_flagged(tmp_path):
    reasoner = FakeReasoner()
    plan = sample_plan()
    result = await assessor(tmp_path, reasoner).assess("reasoning", plan, None, RequestContext())
    assert result.passes == 1
    assert result.reasoning_quality == pytest.approx(0.85)
    call = reasoner.calls_for(META)[0]
    assert call["temperature"] == 0.4
    assert call["structured"] is False
    assert "Confidence history: 0.70" in call["user"]


@pytest.mark.asyncio
async def test_flagged_steps_trigger_validated_second_pass(tmp_path):
    first = {**GOOD_ASSESSMENT, "reasoningQuality": 0.7, "stepsNeedingValidation": ["step-2", "step-99"]}
    second = {**GOOD_ASSESSMENT, "reasoningQuality": 0.45, "breakdown": {"logic": 0.6, "completeness": 0.35, "alignment": 0.7}}
    reasoner = FakeReasoner({META: [first, second]})
    runner = FakeToolRunner(tools=[tool("list_facilities"), tool("create_shipment", required=["facility_id", "material"])])
    plan = sample_plan()
    critique = Critique(plan_id=plan.id, overall_score=0.75)
    result = await assessor(tmp_path, reasoner, runner).assess(
        "reasoning", plan, critique, RequestContext(), confidence_history=[0.7, 0.75]
    )
    assert result.passes == 2
    assert result.steps_needing_validation == ["step-2"]
    assert result.reasoning_quality == pytest.approx(0.45)
    assert result.should_replan is True
    assert [c["name"] for c in runner.validate_calls] == ["create_shipment"]

    meta_calls = reasoner.calls_for(META)
    assert len(meta_calls) == 2
    followup = meta_calls[1]["messages"]
    assert [m["role"] for m in followup] == ["system", "user", "assistant", "user"]
    assert "Targeted validation results" in followup[-1]["content"]
    assert "Missing: facility_id" in followup[-1]["content"]
