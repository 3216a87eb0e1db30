"""Tests for retry backoff helpers."""

from app.core.resilience import RetryConfig, calculate_backoff


class TestRetryConfig:
    """Tests for RetryConfig dataclass."""

    def test_default_values(self):
        """Test default retry configuration."""
        config = RetryConfig()
        assert config.max_attempts == 3
        assert config.base_delay_seconds == 1.0
        assert config.max_delay_seconds == 60.0
        assert config.exponential_base == 2.0
        assert config.jitter_factor == 0.1

    def test_custom_values(self):
        """Test custom retry configuration."""
        config = RetryConfig(
            max_attempts=5,
            base_delay_seconds=900.0,
            max_delay_seconds=7200.0,
        )
        assert config.max_attempts == 5
        assert config.base_delay_seconds == 900.0
        assert config.max_delay_seconds == 7200.0


class TestBackoffCalculation:
    """Tests for exponential backoff calculation."""

    def test_backoff_increases_with_attempts(self):
        """Backoff doubles with each attempt when jitter is off."""
        config = RetryConfig(base_delay_seconds=1.0, max_delay_seconds=100.0, jitter_factor=0.0)

        delays = [calculate_backoff(attempt, config) for attempt in range(4)]

        assert delays == [1.0, 2.0, 4.0, 8.0]

    def test_backoff_capped_at_max(self):
        """Backoff never exceeds max_delay_seconds."""
        config = RetryConfig(base_delay_seconds=1.0, max_delay_seconds=5.0, jitter_factor=0.0)

        assert calculate_backoff(10, config) == 5.0

    def test_backoff_includes_jitter(self):
        """Jitter stays within +/- jitter_factor of the base delay."""
        config = RetryConfig(base_delay_seconds=10.0, max_delay_seconds=100.0, jitter_factor=0.1)

        delays = {calculate_backoff(0, config) for _ in range(50)}

        assert all(9.0 <= d <= 11.0 for d in delays)
        assert len(delays) > 1

    def test_backoff_never_negative(self):
        config = RetryConfig(base_delay_seconds=1.0, jitter_factor=2.0)

        assert all(calculate_backoff(0, config) >= 0.0 for _ in range(50))

    def test_zero_base_delay(self):
        config = RetryConfig(base_delay_seconds=0.0, max_delay_seconds=0.0, jitter_factor=0.0)

        assert calculate_backoff(3, config) == 0.0
