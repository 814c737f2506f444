from __future__ import annotations

"""Frame decimation for CPU-constrained capture loops."""

PROCESS = "process"
PASSTHROUGH = "passthrough"


class FrameSampler:
    """Select every Nth frame for classification.

    Passthrough frames skip the classifier and are recorded unannotated, so a
    subject visible only on those frames is never detected or alerted on.
    """

    def __init__(self, every_n: int = 2) -> None:
        if every_n < 1:
            raise ValueError(f"every_n must be >= 1, got {every_n}")
        self.every_n = every_n

    def decide(self, counter: int) -> str:
        return PROCESS if counter % self.every_n == 0 else PASSTHROUGH

    def should_process(self, counter: int) -> bool:
        return self.decide(counter) == PROCESS
