import pytest

from drive_client import DriveAPIError, is_retryable
from services.retry_policy import RetryPolicy


class TestRetryPolicy:
    def test_delays_never_decrease_and_are_capped(self):
        policy = RetryPolicy(max_retries=6, initial_delay=1, backoff_factor=2, max_delay=10)

        delays = [policy.delay_for(n) for n in range(1, 7)]

        assert delays == [1, 2, 4, 8, 10, 10]
        assert policy.max_attempts == 7

    def test_rejects_shrinking_backoff(self):
        with pytest.raises(ValueError):
            RetryPolicy(backoff_factor=0.5)

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        attempts = []

        async def operation():
            attempts.append(1)
            if len(attempts) < 3:
                raise DriveAPIError("unavailable", status_code=503)
            return "ok"

        result = await RetryPolicy(max_retries=3, initial_delay=0).run(
            operation, should_retry=is_retryable
        )

        assert result == "ok"
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_non_retryable_error_raises_immediately(self):
        seen = []

        async def operation():
            raise DriveAPIError("forbidden", status_code=403, reason="insufficientPermissions")

        with pytest.raises(DriveAPIError):
            await RetryPolicy(max_retries=3, initial_delay=0).run(
                operation, should_retry=is_retryable, on_attempt=seen.append
            )

        assert seen == [1]

    @pytest.mark.asyncio
    async def test_raises_last_error_when_exhausted(self):
        seen = []

        async def operation():
            raise DriveAPIError(f"attempt {len(seen)}", status_code=500)

        with pytest.raises(DriveAPIError, match="attempt 3"):
            await RetryPolicy(max_retries=2, initial_delay=0).run(operation, on_attempt=seen.append)

        assert seen == [1, 2, 3]


class TestRetryableClassification:
    @pytest.mark.parametrize(
        "status, reason, expected",
        [
            (None, None, True),
            (408, None, True),
            (401, None, True),
            (429, None, True),
            (503, None, True),
            (403, "userRateLimitExceeded", True),
            (403, "insufficientPermissions", False),
            (404, None, False),
            (400, None, False),
        ],
    )
    def test_drive_errors(self, status, reason, expected):
        assert DriveAPIError("x", status_code=status, reason=reason).retryable is expected

    def test_other_errors_are_retryable(self):
        assert is_retryable(ConnectionResetError())
