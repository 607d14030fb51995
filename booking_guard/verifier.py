import hmac
from typing import Dict, Protocol


class CodeVerifier(Protocol):
    def __call__(self, subject_id: str, code: str) -> bool: ...


def normalize_code(code: str) -> str:
    return code.strip().upper()


class StaticCodeVerifier:
    """Checks codes against a fixed subject -> code mapping."""

    def __init__(self, codes: Dict[str, str] | None = None):
        self.codes = {str(k): normalize_code(v) for k, v in (codes or {}).items()}

    def __call__(self, subject_id: str, code: str) -> bool:
        expected = self.codes.get(subject_id)
        if expected is None:
            return False
        return hmac.compare_digest(expected.encode(), normalize_code(code).encode())
