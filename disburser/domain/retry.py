import random
from datetime import datetime

from disburser.domain.models import RetryItem

# Each client gets one initial attempt plus up to MAX_RETRIES retries per job.
MAX_RETRIES = 3

def backoff_delay(
    attempts: int,
    base_delay_seconds: float = 1.0,
    max_delay_seconds: float = 30.0,
    jitter: bool = True
) -> float:
    """
    Calculates how long to wait before the next attempt using exponential
    backoff with optional jitter.

    Formula:
        delay = min(base * (2 ^ attempts), max_delay)
        if jitter:
            delay = delay + random_uniform(0, 0.1 * delay)

    Args:
        attempts: Number of failed attempts so far. attempts=0 means
                  "we failed once, how long until the second try?".

    Returns:
        float: The delay in seconds.
    """
    if attempts < 0:
        attempts = 0

    # 2^20 seconds is far beyond any sane max_delay, cap the exponent.
    safe_attempts = min(attempts, 20)

    delay = base_delay_seconds * (2 ** safe_attempts)

    if delay > max_delay_seconds:
        delay = max_delay_seconds

    if jitter:
        delay += random.uniform(0, delay * 0.1)

    return delay

def can_retry(item: RetryItem, max_retries: int = MAX_RETRIES) -> bool:
    return item.retry_count < max_retries

def next_retry(item: RetryItem, error: str) -> RetryItem:
    """Copy of the item scheduled for one more attempt."""
    return RetryItem(
        client=item.client,
        retry_count=item.retry_count + 1,
        last_error=error,
        last_attempt=datetime.now(),
    )
