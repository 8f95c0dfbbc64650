from discovery.llm_utils import build_messages, build_payload, parse_retry_after, safe_json_loads


def test_build_messages_from_string():
    messages = build_messages("Hello")
    assert messages == [{"role": "user", "content": "Hello"}]


def test_build_messages_with_system():
    messages = build_messages("First", system="Be brief.")
    assert messages == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "First"},
    ]


def test_build_messages_skips_empty_prompt():
    assert build_messages("", system="Be brief.") == [{"role": "system", "content": "Be brief."}]


def test_build_payload_json_response_format():
    payload = build_payload(
        model="test-model",
        contents="Hi",
        config={"response_mime_type": "application/json"},
    )
    assert payload["response_format"] == {"type": "json_object"}


def test_build_payload_max_tokens():
    payload = build_payload(
        model="test-model",
        contents="Hi",
        config={"max_tokens": 123},
    )
    assert payload["max_tokens"] == 123


def test_parse_retry_after_seconds():
    assert parse_retry_after("12") == 12.0
    assert parse_retry_after("-3") == 0.0
    assert parse_retry_after("") is None
    assert parse_retry_after("soon") is None


def test_safe_json_loads_handles_fences_and_chatter():
    fenced = '```json\n{"title": "Transit"}\n```'
    assert safe_json_loads(fenced) == {"title": "Transit"}
    chatty = 'Sure! Here it is: {"title": "Housing", "note": "a {brace}"} Hope that helps.'
    assert safe_json_loads(chatty)["title"] == "Housing"
    assert safe_json_loads("{'title': 'Parks'}") == {"title": "Parks"}


def test_safe_json_loads_returns_empty_on_garbage():
    assert safe_json_loads("") == {}
    assert safe_json_loads("not json at all") == {}
    assert safe_json_loads("[1, 2, 3]") == {}
