from plancore.llm import _sanitize_messages, extract_json_object


def test_plain_json_object():
    assert extract_json_object('{"a": 1}') == {"a": 1}


def test_fenced_json_block():
    text = 'Here is the critique:\n```json\n{"overallScore": 0.7, "issues": []}\n```\nThanks.'
    assert extract_json_object(text) == {"overallScore": 0.7, "issues": []}


def test_object_embedded_in_prose_with_braces_in_strings():
    text = 'Sure! {"rationale": "use {placeholders} carefully", "ok": true} -- done'
    assert extract_json_object(text) == {"rationale": "use {placeholders} carefully", "ok": True}


def test_skips_invalid_span_and_takes_next_object():
    text = '{not json} then {"decision": "retry"}'
    assert extract_json_object(text) == {"decision": "retry"}


def test_non_object_results_are_rejected():
    assert extract_json_object("[1, 2, 3]") is None
    assert extract_json_object("") is None
    assert extract_json_object(None) is None
    assert extract_json_object("no json here") is None


def test_dict_passes_through():
    data = {"steps": []}
    assert extract_json_object(data) is data


def test_sanitize_drops_unknown_roles_and_empty_content():
    cleaned = _sanitize_messages(
        [
            {"role": "system", "content": "sys"},
            {"role": "tool", "content": "x"},
            {"role": "user", "content": ""},
            {"role": "user", "content": {"a": 1}},
        ]
    )
    assert cleaned == [{"role": "system", "content": "sys"}, {"role": "user", "content": '{"a": 1}'}]
