import json
import threading
from datetime import datetime, timezone
from pathlib import Path


class AttemptLogger:
    """Appends one JSON line per booking-code verification attempt."""

    def __init__(self, path: str, enabled: bool = True):
        self.path = Path(path)
        self.enabled = enabled
        self.total_attempts = 0
        self._lock = threading.Lock()

    def log_attempt(
        self,
        subject_id: str,
        result: str,
        locked: bool,
        remaining_attempts: int | None,
        latency_ms: float,
        extra: dict | None = None,
    ) -> dict | None:
        if not self.enabled:
            return None

        with self._lock:
            self.total_attempts += 1
            record = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "subject_id": subject_id,
                "result": result,
                "locked": locked,
                "remaining_attempts": remaining_attempts,
                "latency_ms": round(latency_ms, 3),
                "attempt_id": self.total_attempts,
            }
            if extra:
                record.update(extra)

            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(record) + "\n")
        return record
