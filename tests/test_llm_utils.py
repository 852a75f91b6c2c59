from feedcore.llm_utils import build_label_prompt, build_payload, extract_message_text, parse_label


def test_build_payload_defaults():
    payload = build_payload(model="test-model", prompt="Hi")
    assert payload["model"] == "test-model"
    assert payload["messages"] == [{"role": "user", "content": "Hi"}]
    assert payload["max_tokens"] == 200


def test_build_payload_without_max_tokens():
    payload = build_payload(model="test-model", prompt="Hi", max_tokens=0)
    assert "max_tokens" not in payload


def test_label_prompt_lists_titles_and_sources():
    samples = [(f"Title {i}", "excerpt text", f"Source {i}") for i in range(12)]
    prompt = build_label_prompt(samples)

    assert '[1] "Title 0" (Source 0)' in prompt
    assert "[10]" in prompt
    assert "[11]" not in prompt
    assert "TOPIC:" in prompt and "SUMMARY:" in prompt


def test_extract_message_text():
    data = {"choices": [{"message": {"content": "TOPIC: x"}}]}
    assert extract_message_text(data) == "TOPIC: x"
    assert extract_message_text({"choices": []}) is None
    assert extract_message_text({"choices": [{"message": {"content": 3}}]}) is None
    assert extract_message_text("nope") is None


def test_parse_label():
    text = "TOPIC: Moon Landing Plans\nSUMMARY: Agencies outline new missions."
    assert parse_label(text) == ("Moon Landing Plans", "Agencies outline new missions.")


def test_parse_label_truncates():
    title, summary = parse_label(f"TOPIC: {'t' * 300}\nSUMMARY: {'s' * 300}")
    assert len(title) == 100
    assert len(summary) == 200


def test_parse_label_rejects_incomplete():
    assert parse_label("TOPIC: only a topic") is None
    assert parse_label("") is None
    assert parse_label(None) is None
