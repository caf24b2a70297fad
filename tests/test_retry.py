"""Tests for the retry executor."""

import httpx
import pytest
import requests

from invoice_intake.config import RetryConfig
from invoice_intake.extraction_client import (
    DocumentTooLargeError,
    ExtractionAPIError,
    ExtractionTimeoutError,
)
from invoice_intake.retry import RetryOptions, execute, is_retryable_error
from invoice_intake.schemas import SchemaValidationError


class ServiceUnavailable(Exception):
    status_code = 503


class FlakyOperation:
    """Fails with the given errors in order, then returns a value."""

    def __init__(self, errors, value="ok"):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


class TestIsRetryableError:
    """Tests for the default retry predicate."""

    @pytest.mark.parametrize(
        "error",
        [
            ServiceUnavailable("unavailable"),
            ExtractionAPIError(429, "slow down"),
            ExtractionAPIError(502, "bad gateway"),
            ExtractionTimeoutError("timed out"),
            httpx.ConnectError("refused"),
            requests.ConnectionError("reset"),
            TimeoutError(),
            Exception("Request timed out"),
            Exception("rate limit exceeded"),
            Exception("Network is unreachable"),
        ],
    )
    def test_transient_errors(self, error):
        assert is_retryable_error(error) is True

    @pytest.mark.parametrize(
        "error",
        [
            ExtractionAPIError(400, "bad request"),
            ExtractionAPIError(401, "unauthorized"),
            SchemaValidationError("extract", "total must be a number"),
            DocumentTooLargeError(200_000, 100_000),
            ValueError("invalid literal"),
            KeyError("total"),
        ],
    )
    def test_fatal_errors(self, error):
        assert is_retryable_error(error) is False

    def test_retryable_attribute_wins_over_message(self):
        """An explicit flag overrides message matching."""
        error = SchemaValidationError("classify", "timeout field missing")
        assert is_retryable_error(error) is False

    def test_status_code_on_response(self):
        response = requests.Response()
        response.status_code = 500
        error = requests.HTTPError("server error", response=response)
        assert is_retryable_error(error) is True


class TestRetryOptions:
    """Tests for backoff computation."""

    def test_delay_doubles_until_capped(self):
        opts = RetryOptions(base_delay=1.0, max_delay=5.0)
        no_jitter = lambda: 0.5  # noqa: E731
        assert opts.compute_delay(0, no_jitter) == 1.0
        assert opts.compute_delay(1, no_jitter) == 2.0
        assert opts.compute_delay(2, no_jitter) == 4.0
        assert opts.compute_delay(3, no_jitter) == 5.0

    def test_jitter_bounds(self):
        opts = RetryOptions(base_delay=2.0, max_delay=30.0)
        assert opts.compute_delay(1, lambda: 0.0) == pytest.approx(3.0)
        assert opts.compute_delay(1, lambda: 0.999999) == pytest.approx(5.0, abs=1e-4)

    def test_delay_never_negative(self):
        opts = RetryOptions(base_delay=0.0, max_delay=0.0)
        assert opts.compute_delay(4, lambda: 0.0) == 0.0

    def test_from_config(self):
        config = RetryConfig(max_retries=4, base_delay_seconds=0.5, max_delay_seconds=8.0)
        opts = RetryOptions.from_config(config)
        assert (opts.max_retries, opts.base_delay, opts.max_delay) == (4, 0.5, 8.0)

    def test_from_config_override_retries(self):
        opts = RetryOptions.from_config(RetryConfig(), max_retries=0)
        assert opts.max_retries == 0


class TestExecute:
    """Tests for execute()."""

    def test_success_first_try(self):
        sleeps = []
        operation = FlakyOperation([])
        assert execute(operation, RetryOptions(), sleep=sleeps.append) == "ok"
        assert operation.calls == 1
        assert sleeps == []

    def test_recovers_after_two_503s(self):
        """Two 503s with max_retries=3: two sleeps, then the success value."""
        sleeps = []
        operation = FlakyOperation([ServiceUnavailable("503"), ServiceUnavailable("503")], "data")

        result = execute(
            operation,
            RetryOptions(max_retries=3, base_delay=1.0, max_delay=30.0),
            sleep=sleeps.append,
            rng=lambda: 0.5,
        )

        assert result == "data"
        assert operation.calls == 3
        assert sleeps == [1.0, 2.0]

    def test_non_retryable_raises_immediately(self):
        sleeps = []
        error = ExtractionAPIError(400, "bad request")
        operation = FlakyOperation([error])

        with pytest.raises(ExtractionAPIError) as exc_info:
            execute(operation, RetryOptions(max_retries=3), sleep=sleeps.append)

        assert exc_info.value is error
        assert operation.calls == 1
        assert sleeps == []

    def test_exhaustion_reraises_last_error(self):
        sleeps = []
        errors = [ServiceUnavailable(f"attempt {i}") for i in range(3)]
        operation = FlakyOperation(errors)

        with pytest.raises(ServiceUnavailable) as exc_info:
            execute(operation, RetryOptions(max_retries=2, base_delay=0.1), sleep=sleeps.append)

        assert str(exc_info.value) == "attempt 2"
        assert operation.calls == 3
        assert len(sleeps) == 2

    def test_zero_retries_is_single_attempt(self):
        operation = FlakyOperation([ServiceUnavailable("down")])
        with pytest.raises(ServiceUnavailable):
            execute(operation, RetryOptions(max_retries=0), sleep=lambda s: None)
        assert operation.calls == 1

    def test_custom_predicate(self):
        operation = FlakyOperation([ValueError("flaky parse")], "parsed")
        opts = RetryOptions(max_retries=1, is_retryable=lambda e: isinstance(e, ValueError))
        assert execute(operation, opts, sleep=lambda s: None) == "parsed"

    def test_logs_each_retry(self, caplog):
        operation = FlakyOperation([ServiceUnavailable("503 from upstream")])
        with caplog.at_level("WARNING", logger="invoice_intake.retry.executor"):
            execute(
                operation,
                RetryOptions(max_retries=2, base_delay=4.0),
                sleep=lambda s: None,
                rng=lambda: 0.5,
            )
        assert "Attempt 1/3 failed (503 from upstream), retrying in 4.00s" in caplog.text
