"""Retry and backoff utilities.

Shared by the job retry loop (delay between passes) and the deferred
operation queue (reschedule delay).

Usage:
    from app.core.resilience import RetryConfig, calculate_backoff

    delay = calculate_backoff(attempt, RetryConfig(base_delay_seconds=1.0))
"""

import random
from dataclasses import dataclass


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1  # +/- 10% random jitter


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """Calculate delay with exponential backoff and symmetric jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        config: Retry configuration

    Returns:
        Delay in seconds before next retry, never negative
    """
    # Exponential backoff: base_delay * (exponential_base ^ attempt)
    delay = config.base_delay_seconds * (config.exponential_base**attempt)

    # Cap at max delay
    delay = min(delay, config.max_delay_seconds)

    # Spread retries out to prevent thundering herd
    jitter = delay * config.jitter_factor * (random.random() * 2 - 1)
    return max(0.0, delay + jitter)
