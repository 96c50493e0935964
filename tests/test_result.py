import pytest

from chatdesk.services.result import AI_TIMEOUT, Result


class TestResultSuccess:
    def test_success_creates_ok_result(self):
        result = Result.success("reply text")
        assert result.ok is True
        assert result.value == "reply text"
        assert result.error is None

    def test_unwrap_returns_value(self):
        assert Result.success({"key": "value"}).unwrap() == {"key": "value"}


class TestResultFailure:
    def test_failure_carries_code(self):
        result = Result.failure("model timed out", AI_TIMEOUT)
        assert result.ok is False
        assert result.error == "model timed out"
        assert result.error_code == "ai_timeout"
        assert result.value is None

    def test_failure_default_code(self):
        assert Result.failure("Error message").error_code == "unknown"

    def test_unwrap_raises_on_failure(self):
        with pytest.raises(ValueError):
            Result.failure("boom", "ai_error").unwrap()

