from dataclasses import dataclass


@dataclass(frozen=True)
class ExponentialBackoff:
    """Delay before retry attempt n (1-based): initial * factor**(n-1), capped. No attempt limit."""

    initial_seconds: float = 1.0
    cap_seconds: float = 30.0
    factor: float = 2.0

    def delay(self, attempt: int) -> float:
        if attempt < 1:
            attempt = 1
        # Exponent clamp keeps the float from overflowing on very long waits
        exponent = min(attempt - 1, 64)
        return min(self.cap_seconds, self.initial_seconds * (self.factor ** exponent))
