"""Unit tests for log redaction and request context helpers."""
from marketplace.middleware.logging import REDACTED, function_name, redact_secrets


def test_sensitive_keys_are_masked() -> None:
    event = redact_secrets(
        None,
        "info",
        {
            "event": "setup_intent_created",
            "client_secret": "seti_1Abc_secret_XyZ",
            "Authorization": "Bearer token",
            "user_id": "user-1",
        },
    )

    assert event["client_secret"] == REDACTED
    assert event["Authorization"] == REDACTED
    assert event["user_id"] == "user-1"


def test_client_secrets_inside_messages_are_masked() -> None:
    event = redact_secrets(
        None,
        "warning",
        {"event": "backend_error", "error": "No such payment_intent: pi_3Nab12_secret_k9Qz for user"},
    )

    assert event["error"] == f"No such payment_intent: {REDACTED} for user"


def test_function_name_from_path() -> None:
    assert function_name("/functions/v1/create-payment-intent") == "create-payment-intent"
    assert function_name("/functions/v1/") is None
    assert function_name("/webhooks/stripe") is None
