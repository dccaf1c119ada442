import time
from dataclasses import dataclass, field
from typing import Callable


@dataclass
class StartCooldown:
    """Spawn throttle for the status-poll path.

    Lives only as long as this host process, so a monotonic clock is enough;
    a restart forgets the last attempt.
    ``last_attempt == 0`` means no spawn has been attempted.
    """

    window_s: float = 90.0
    last_attempt: float = 0.0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def remaining(self) -> float:
        if self.last_attempt <= 0:
            return 0.0
        elapsed = self.clock() - self.last_attempt
        return min(self.window_s, max(0.0, self.window_s - elapsed))

    def try_begin(self) -> bool:
        if self.remaining() > 0:
            return False
        self.last_attempt = self.clock()
        return True

    def reset(self) -> None:
        self.last_attempt = 0.0
