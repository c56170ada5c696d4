import random
from typing import Callable, Optional


def compute_backoff_delay(
    attempt_index: int,
    min_delay: float,
    max_delay: float,
    factor: float = 2.0,
    jitter: float = 0.0,
    rng: Optional[Callable[[], float]] = None,
) -> float:
    """Delay in seconds before retry number `attempt_index` (0-based).

    `min(max_delay, min_delay * factor ** attempt_index)` plus a uniform
    jitter in `[0, jitter)`. The jitter is added after the cap.
    """
    if attempt_index < 0:
        raise ValueError("attempt_index must be >= 0")
    delay = min(max_delay, min_delay * factor ** attempt_index)
    if jitter > 0:
        delay += (rng or random.random)() * jitter
    return delay
