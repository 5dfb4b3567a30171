from __future__ import annotations


class FakeClock:
    """Injectable time source in seconds, advanced explicitly by tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, delta_ms: int) -> None:
        self.now += delta_ms / 1000.0
