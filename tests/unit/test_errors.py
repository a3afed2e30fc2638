"""Tests for the core error hierarchy."""

from toolengine.core.errors import (
    AdmissionError,
    AdmissionTimeoutError,
    BatchRejectedError,
    BatchTimeoutError,
    CircuitOpenError,
    ConfigError,
    DependencyCycleError,
    DuplicateToolError,
    ErrorKind,
    RateLimitedError,
    RegistryError,
    SandboxError,
    SchedulerError,
    ToolEngineError,
    UnknownBatchError,
    UnknownToolError,
    ValidationFailedError,
    ValidationIssue,
)


class TestHierarchy:
    """All errors inherit from ToolEngineError."""

    def test_registry_errors(self):
        assert isinstance(DuplicateToolError("x"), RegistryError)
        assert isinstance(UnknownToolError("x"), RegistryError)
        assert isinstance(UnknownToolError("x"), ToolEngineError)

    def test_admission_subclasses(self):
        for err in (
            RateLimitedError("t"),
            AdmissionTimeoutError("t"),
            CircuitOpenError("t", 1.0),
        ):
            assert isinstance(err, AdmissionError)
            assert isinstance(err, ToolEngineError)

    def test_scheduler_subclasses(self):
        for err in (
            DependencyCycleError(["a", "b", "a"]),
            BatchRejectedError(["bad"]),
            UnknownBatchError("b-1"),
            BatchTimeoutError("b-1", 1.0),
        ):
            assert isinstance(err, SchedulerError)

    def test_config_and_sandbox(self):
        assert isinstance(ConfigError("bad"), ToolEngineError)
        assert isinstance(SandboxError("bad"), ToolEngineError)


class TestErrorKinds:
    """Errors that can end up in a result expose their kind."""

    def test_admission_kinds(self):
        assert RateLimitedError("t").kind is ErrorKind.RATE_LIMITED
        assert AdmissionTimeoutError("t").kind is ErrorKind.ADMISSION_TIMEOUT
        assert CircuitOpenError("t").kind is ErrorKind.CIRCUIT_OPEN

    def test_unknown_tool_kind(self):
        assert UnknownToolError("x").kind is ErrorKind.UNKNOWN_TOOL

    def test_validation_kind(self):
        err = ValidationFailedError("t", [ValidationIssue("a", "missing")])
        assert err.kind is ErrorKind.VALIDATION_FAILED


class TestMessages:
    def test_unknown_tool_name(self):
        err = UnknownToolError("ghost")
        assert err.name == "ghost"
        assert "ghost" in str(err)

    def test_validation_lists_every_issue(self):
        issues = [ValidationIssue("a", "missing"), ValidationIssue("b", "too long")]
        err = ValidationFailedError("tool", issues)
        assert err.errors == issues
        assert "a: missing" in str(err)
        assert "b: too long" in str(err)

    def test_cycle_message(self):
        err = DependencyCycleError(["a", "b", "a"])
        assert err.cycle == ["a", "b", "a"]
        assert "a -> b -> a" in str(err)

    def test_circuit_open_retry_after(self):
        err = CircuitOpenError("t", retry_after=2.5)
        assert err.retry_after == 2.5
        assert "2.5" in str(err)

    def test_admission_timeout_waited(self):
        assert "0.250" in str(AdmissionTimeoutError("t", waited=0.25))

    def test_batch_rejected_collects_validation_issues(self):
        issue = ValidationIssue("q", "missing")
        err = BatchRejectedError(
            ["inv-1: q: missing", "Tool not found: x"],
            [ValidationFailedError("t", [issue]), UnknownToolError("x")],
        )
        assert err.problems == ["inv-1: q: missing", "Tool not found: x"]
        assert err.validation_issues == [issue]
        assert "q: missing" in str(err)

    def test_batch_timeout_attributes(self):
        err = BatchTimeoutError("b-1", 2.0)
        assert err.batch_id == "b-1"
        assert err.timeout == 2.0
