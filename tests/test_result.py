from mchatly.services.result import GENERATION_ERROR, RAG_ERROR, Result


class TestResult:
    def test_success(self):
        result = Result.success("reply")
        assert result.ok is True
        assert result.value == "reply"
        assert result.error is None

    def test_failure(self):
        result = Result.failure("boom", RAG_ERROR)
        assert result.ok is False
        assert result.error == "boom"
        assert result.error_code == RAG_ERROR

    def test_failure_default_code(self):
        assert Result.failure("boom").error_code == "unknown"

    def test_from_exception_keeps_type_name(self):
        result = Result.from_exception(TimeoutError("slow upstream"), GENERATION_ERROR)
        assert result.ok is False
        assert result.error == "TimeoutError: slow upstream"
        assert result.error_code == GENERATION_ERROR

    def test_unwrap_or(self):
        assert Result.success(3).unwrap_or(0) == 3
        assert Result.failure("x").unwrap_or(0) == 0
