import pytest

from plancore.ids import RequestContext
from plancore.replanner import Replanner, compute_diff
from plancore.schemas import Critique, CritiqueIssue, FollowUpQuestion, MetaAssessment, Plan, ToolCatalog
from tests.conftest import make_settings
from tests.fakes import REPLANNER, FakeReasoner, tool


CATALOG = ToolCatalog(tools=[tool("list_facilities"), tool("get_facility", required=["facility_id"]), tool("create_shipment")])


def old_plan() -> Plan:
    return Plan.new(
        "Ship sand",
        [
            {"id": "step-1", "order": 1, "action": "list_facilities"},
            {"id": "step-2", "order": 2, "action": "get_facility", "parameters": {"facility_id": "example"}},
            {"id": "step-3", "order": 3, "action": "create_shipment", "dependencies": ["step-2"]},
        ],
    )


def test_diff_reports_added_removed_and_modified():
    old = old_plan()
    new = Plan.new(
        "Ship sand",
        [
            {"id": "step-1", "order": 1, "action": "list_facilities"},
            {"id": "step-2", "order": 2, "action": "get_facility", "parameters": {"facility_id": "fac-1"}},
            {"id": "step-4", "order": 3, "action": "create_shipment", "dependencies": ["step-2"]},
        ],
    )
    diff = compute_diff(old, new)
    assert diff.steps_added == ["step-4"]
    assert diff.steps_removed == ["step-3"]
    assert diff.steps_modified == ["step-2"]


def test_diff_ignores_status_changes():
    old = old_plan()
    new = old.model_copy(deep=True)
    new.steps[0].status = "succeeded"
    assert compute_diff(old, new).steps_modified == []


@pytest.mark.asyncio
async def test_replan_builds_next_version(tmp_path):
    reasoner = FakeReasoner(
        {
            REPLANNER: {
                "goal": "Ship sand",
                "rationale": "Use the real facility id",
                "confidence": 0.82,
                "steps": [
                    {"id": "step-1", "order": 1, "action": "warehouse.list_facilities"},
                    {
                        "id": "step-2",
                        "order": 2,
                        "action": "get_facility",
                        "parameters": {"facility_id": "fac-1"},
                        "dependencies": ["step-1", "step-9"],
                    },
                ],
                "changesExplanation": {"stepsRemoved": ["step-3 was redundant"], "improvements": "real ids"},
                "addressedCriticIssues": ["placeholder id"],
            }
        }
    )
    old = old_plan()
    question = FollowUpQuestion(id="q-1", question="Which facility?", user_answer="fac-1", step_id="step-2", parameter_name="facility_id")
    result = await Replanner(make_settings(tmp_path), reasoner).replan(
        old,
        RequestContext(),
        assessment=MetaAssessment(reasoning_quality=0.3, should_replan=True, orchestrator_directives=["Use real ids"]),
        critique=Critique(plan_id=old.id, follow_up_questions=[question]),
        catalog=CATALOG,
        thought_recommendations=["prefer listing first"],
    )
    plan = result.plan
    assert result.fallback is False
    assert plan.version == 2
    assert plan.original_plan_id == old.id
    assert plan.id != old.id
    assert plan.confidence == pytest.approx(0.82)
    assert plan.steps[0].action == "list_facilities"
    assert plan.steps[1].dependencies == ["step-1"]
    assert result.diff.steps_removed == ["step-3"]
    assert result.diff.steps_modified == ["step-2"]
    assert result.changes_explanation.improvements == ["real ids"]
    assert result.addressed_critic_issues == ["placeholder id"]
    assert [q.id for q in result.answered_questions] == ["q-1"]

    call = reasoner.calls_for(REPLANNER)[0]
    assert call["temperature"] == 0.5
    assert call["max_tokens"] == 3000
    assert "Use real ids" in call["user"]
    assert "Which facility? -> fac-1" in call["user"]
    assert "prefer listing first" in call["user"]


@pytest.mark.asyncio
async def test_original_plan_id_tracks_the_first_version(tmp_path):
    reasoner = FakeReasoner({REPLANNER: {"steps": [{"id": "step-1", "order": 1, "action": "list_facilities"}]}})
    replanner = Replanner(make_settings(tmp_path), reasoner)
    first = old_plan()
    second = (await replanner.replan(first, RequestContext(), catalog=CATALOG)).plan
    third = (await replanner.replan(second, RequestContext(), catalog=CATALOG)).plan
    assert third.version == 3
    assert third.original_plan_id == first.id


@pytest.mark.asyncio
async def test_duplicate_orders_and_ids_are_repaired(tmp_path):
    reasoner = FakeReasoner(
        {
            REPLANNER: {
                "steps": [
                    {"id": "step-1", "order": 1, "action": "list_facilities"},
                    {"id": "step-1", "order": 1, "action": "get_facility", "parameters": {"facility_id": "fac-1"}},
                ]
            }
        }
    )
    result = await Replanner(make_settings(tmp_path), reasoner).replan(old_plan(), RequestContext(), catalog=CATALOG)
    assert result.fallback is False
    assert [s.order for s in result.plan.steps] == [1, 2]
    assert len({s.id for s in result.plan.steps}) == 2


@pytest.mark.asyncio
async def test_unparseable_response_keeps_plan_without_critical_steps(tmp_path):
    reasoner = FakeReasoner({REPLANNER: "Sorry, I could not produce a plan."})
    old = old_plan()
    critique = Critique(
        plan_id=old.id,
        issues=[CritiqueIssue(severity="critical", description="Step 3 ships to nowhere", affected_steps=[3])],
        follow_up_questions=[
            FollowUpQuestion(id="q-1", question="Which facility?", user_answer="fac-5", step_id="step-2", parameter_name="facility_id")
        ],
    )
    result = await Replanner(make_settings(tmp_path), reasoner).replan(old, RequestContext(), critique=critique, catalog=CATALOG)
    assert result.fallback is True
    assert [s.id for s in result.plan.steps] == ["step-1", "step-2"]
    assert result.plan.steps[1].parameters == {"facility_id": "fac-5"}
    assert result.plan.version == 2
    assert result.diff.steps_removed == ["step-3"]
    assert old.steps[1].parameters == {"facility_id": "example"}
