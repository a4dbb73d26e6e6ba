from datetime import datetime, timezone

import pytest

from plancore.placeholders import DefaultPlaceholderPolicy, is_empty
from plancore.results import extract_identifier, extract_path, is_unusable_result


NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


@pytest.fixture
def policy() -> DefaultPlaceholderPolicy:
    return DefaultPlaceholderPolicy(now=NOW)


@pytest.mark.parametrize(
    "name,value",
    [
        ("facility_id", "example-facility"),
        ("facility_id", "extracted_from_step_1"),
        ("facility_id", "<facility id>"),
        ("facility_id", "{{facility}}"),
        ("facility_id", "facility1"),
        ("material", "Material Type"),
        ("material", "test material"),
        ("estimated_size", 100),
        ("quantity", "50"),
        ("delivery_date", "2023-01-15"),
        ("facility_id", ""),
        ("facility_id", None),
    ],
)
def test_placeholders_are_detected(policy, name, value):
    assert policy.is_placeholder(name, value) is True


@pytest.mark.parametrize(
    "name,value",
    [
        ("facility_id", "665f1c2a9b"),
        ("material", "sand"),
        ("estimated_size", 137),
        ("priority", 1),
        ("delivery_date", "2026-05-20"),
        ("urgent", False),
    ],
)
def test_real_values_are_kept(policy, name, value):
    assert policy.is_placeholder(name, value) is False


def test_custom_patterns_replace_defaults():
    policy = DefaultPlaceholderPolicy(markers=["tbd"], patterns=[r"^xxx$"], now=NOW)
    assert policy.is_placeholder("facility_id", "TBD later") is True
    assert policy.is_placeholder("facility_id", "xxx") is True
    assert policy.is_placeholder("facility_id", "example") is False


def test_referenced_step(policy):
    assert policy.referenced_step("$step-3.items.0.id") == 3
    assert policy.referenced_step("extracted_from_step_2") == 2
    assert policy.referenced_step("from step 4") == 4
    assert policy.referenced_step("fac-1") is None
    assert policy.referenced_step(12) is None


def test_is_empty():
    assert is_empty(None) and is_empty("  ") and is_empty([]) and is_empty({})
    assert not is_empty(0)
    assert not is_empty(False)


def test_extract_path():
    data = {"items": [{"_id": "a1"}, {"_id": "b2"}]}
    assert extract_path(data, "items.1._id") == "b2"
    assert extract_path(data, "items.5._id") is None
    assert extract_path(data, "missing") is None
    assert extract_path(data, None) is data


def test_extract_identifier_prefers_underscore_id():
    assert extract_identifier([{"_id": "x", "id": "y"}]) == "x"
    assert extract_identifier([{"id": "y"}]) == "y"
    assert extract_identifier(["plain"]) == "plain"
    assert extract_identifier({"id": 7}) == 7
    assert extract_identifier([]) is None


def test_unusable_results():
    assert is_unusable_result([])
    assert is_unusable_result(["Error executing tool list_facilities: timeout"])
    assert not is_unusable_result([{"id": "a"}])
    assert not is_unusable_result({"count": 0})
