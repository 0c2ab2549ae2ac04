from harness_providers.logging import make_redaction_processor, redact, redact_text


def test_redacts_sensitive_keys_but_not_token_counts():
    event = {
        "event": "provider_request_ok",
        "x-api-key": "abc",
        "Authorization": "Bearer abc.def.ghi",
        "apiKey": "cfg-key",
        "tokens_used": 12,
        "nested": {"OPENAI_API_KEY": "env-key", "model": "gpt-4"},
    }
    out = redact(event, secrets=[])
    assert out["x-api-key"] == "[REDACTED]"
    assert out["Authorization"] == "[REDACTED]"
    assert out["apiKey"] == "[REDACTED]"
    assert out["tokens_used"] == 12
    assert out["nested"] == {"OPENAI_API_KEY": "[REDACTED]", "model": "gpt-4"}


def test_redacts_key_shapes_inside_free_text():
    msg = "Incorrect API key provided: sk-proj-abcdef123456 and sk-ant-api03-XYZxyz12345"
    out = redact_text(msg)
    assert "sk-proj-abcdef123456" not in out
    assert "sk-ant-api03-XYZxyz12345" not in out
    assert redact_text("header Bearer abcdefghij") == "header Bearer [REDACTED]"


def test_processor_redacts_explicit_secrets():
    proc = make_redaction_processor(secrets=["hunter2-secret-value"])
    out = proc(None, "info", {"event": "failed with hunter2-secret-value", "items": ["hunter2-secret-value", 3]})
    assert out == {"event": "failed with [REDACTED]", "items": ["[REDACTED]", 3]}
