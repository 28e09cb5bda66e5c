"""
Tests for the gateway error taxonomy.
"""

from cardsense_chat.errors import (
    ConversationNotFoundError,
    CorsError,
    ErrorKind,
    GatewayError,
    MalformedResponseError,
    NetworkError,
    PersistenceError,
    ProviderError,
    ProviderTimeoutError,
    TotalFailureError,
    UpstreamError,
)


class TestErrorHierarchy:
    def test_provider_errors_are_recoverable(self):
        for error in (
            NetworkError("down"),
            CorsError("blocked"),
            ProviderTimeoutError("slow"),
            MalformedResponseError("garbage"),
            UpstreamError("bad status", status_code=502),
        ):
            assert isinstance(error, ProviderError)
            assert error.recoverable is True

    def test_persistence_errors_are_not_recoverable(self):
        assert PersistenceError("write failed").recoverable is False
        assert ConversationNotFoundError("c1").recoverable is False

    def test_cors_is_a_network_error_with_its_own_kind(self):
        error = CorsError("blocked")
        assert isinstance(error, NetworkError)
        assert error.kind is ErrorKind.CORS

    def test_not_found_is_a_persistence_error(self):
        error = ConversationNotFoundError("conv-1")
        assert isinstance(error, PersistenceError)
        assert error.kind is ErrorKind.NOT_FOUND
        assert error.conversation_id == "conv-1"
        assert "conv-1" in str(error)


class TestErrorPayloads:
    def test_str_includes_details(self):
        error = GatewayError("Failed to save message", details="disk full")
        assert str(error) == "Failed to save message - disk full"

    def test_to_dict(self):
        error = ProviderTimeoutError("primary request timed out", provider="primary")
        assert error.to_dict() == {
            "kind": "timeout",
            "message": "primary request timed out",
            "details": None,
            "recoverable": True,
            "context": {"provider": "primary"},
        }

    def test_upstream_error_keeps_status_and_full_body(self):
        body = "x" * 800
        error = UpstreamError("Knowledge API request failed: 500", status_code=500, body=body, provider="primary")
        assert error.status_code == 500
        assert error.body == body
        assert len(error.details) == 500
        assert error.context == {"provider": "primary", "status_code": 500}

    def test_malformed_response_keeps_raw_body(self):
        error = MalformedResponseError("invalid JSON", raw_body="<html>")
        assert error.raw_body == "<html>"

    def test_total_failure_summarises_both_kinds(self):
        error = TotalFailureError(ProviderTimeoutError("slow"), UpstreamError("down", status_code=503))
        assert error.kind is ErrorKind.TOTAL_FAILURE
        assert error.details == "primary=timeout, fallback=upstream"
