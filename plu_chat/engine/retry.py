from dataclasses import dataclass
from typing import Iterator


@dataclass
class RetryPolicy:
    """有界轮询策略：在 window_ms 内按 interval_ms（可指数退避）重复尝试。"""

    window_ms: int = 3000
    interval_ms: int = 350
    backoff: float = 1.0

    def __post_init__(self) -> None:
        if self.window_ms <= 0 or self.interval_ms <= 0:
            raise ValueError("window_ms and interval_ms must be positive")
        if self.backoff < 1.0:
            raise ValueError("backoff must be >= 1.0")

    def delays(self) -> Iterator[float]:
        """依次产出每次尝试前需要等待的秒数，第一次为 0。"""

        yield 0.0
        elapsed = 0.0
        interval = float(self.interval_ms)
        while elapsed + interval <= self.window_ms:
            elapsed += interval
            yield interval / 1000.0
            interval *= self.backoff

    @property
    def max_attempts(self) -> int:
        return sum(1 for _ in self.delays())
