from finchat.llm.normalizer import normalize_reply, parse_json_from_text, strip_code_fences


def test_fenced_json_payload_is_authoritative():
    text = '```json\n{"valid":true,"ambiguous":false,"answer":"ok"}\n```'
    reply = normalize_reply({"answer": text, "conversation_id": "c-1"})

    assert reply.valid is True
    assert reply.ambiguous is False
    assert reply.answer == "ok"
    assert reply.text == text
    assert reply.session_id == "c-1"
    assert reply.structured is True


def test_plain_prose_falls_back_to_conservative_flags():
    text = "What is your net monthly income after taxes?"
    reply = normalize_reply({"answer": text})

    assert reply.valid is False
    assert reply.ambiguous is True
    assert reply.answer == text
    assert reply.fields == {}
    assert reply.structured is False


def test_valid_without_ambiguous_infers_the_opposite():
    reply = normalize_reply({"answer": '{"valid": true}'})
    assert reply.valid is True
    assert reply.ambiguous is False

    reply = normalize_reply({"answer": '{"valid": false}'})
    assert reply.valid is False
    assert reply.ambiguous is True


def test_explicit_false_flags_are_not_replaced_by_defaults():
    reply = normalize_reply({"answer": '{"valid": false, "ambiguous": false, "answer": "hmm"}'})
    assert reply.valid is False
    assert reply.ambiguous is False


def test_non_boolean_flags_are_ignored():
    reply = normalize_reply({"answer": '{"valid": "yes", "answer": "sure"}'})
    assert reply.valid is False
    assert reply.ambiguous is True
    assert reply.answer == "sure"


def test_text_field_fallback_order():
    assert normalize_reply({"output": "from output"}).text == "from output"
    assert normalize_reply({"text": "from text"}).text == "from text"
    assert normalize_reply({"answer": "a", "output": "b"}).text == "a"
    assert normalize_reply({}).text == ""
    assert normalize_reply(None).answer == ""


def test_untagged_fence_with_surrounding_prose():
    text = 'Here you go:\n```\n{"valid": true, "incomeMonthlyNet": 4200, "answer": "Got it."}\n```'
    reply = normalize_reply({"answer": text})

    assert reply.valid is True
    assert reply.answer == "Got it."
    assert reply.fields == {"incomeMonthlyNet": 4200}
    assert reply.extracted == {"incomeMonthlyNet": 4200}


def test_fence_without_answer_key_displays_stripped_text():
    text = '```json\n{"valid": true, "amount": 300}\n```'
    reply = normalize_reply({"answer": text})
    assert reply.answer == '{"valid": true, "amount": 300}'
    assert reply.fields == {"amount": 300}


def test_nested_extracted_values_are_merged():
    text = '{"valid": true, "answer": "ok", "incomeMonthlyNet": 1, "extracted": {"currency": "USD"}}'
    reply = normalize_reply({"answer": text})
    assert reply.extracted == {"incomeMonthlyNet": 1, "currency": "USD"}


def test_broken_json_in_fence_is_treated_as_prose():
    text = "```json\n{not json}\n```"
    reply = normalize_reply({"answer": text})
    assert reply.valid is False
    assert reply.ambiguous is True
    assert reply.answer == "{not json}"


def test_json_that_is_not_an_object_is_prose():
    reply = normalize_reply({"answer": "[1, 2, 3]"})
    assert reply.fields == {}
    assert reply.answer == "[1, 2, 3]"


def test_meta_carries_flags_and_version():
    reply = normalize_reply({"answer": '{"valid": true, "answer": "ok", "debt": 30000}'})
    meta = reply.meta()
    assert meta["valid"] is True
    assert meta["ambiguous"] is False
    assert meta["fields"] == {"debt": 30000}
    assert meta["schema_version"] == 1


def test_helpers():
    assert strip_code_fences("```json\n{}\n```") == "{}"
    assert strip_code_fences(None) == ""
    assert parse_json_from_text("nope") is None
    assert parse_json_from_text('{"a": 1}') == {"a": 1}
