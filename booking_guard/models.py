from dataclasses import dataclass

from pydantic import BaseModel, Field
from sqlalchemy import Column, Float, Integer, String
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class AttemptRecordModel(Base):
    __tablename__ = "booking_code_attempts"

    subject_id = Column(String, primary_key=True)
    failure_count = Column(Integer, nullable=False, default=0)
    locked_until = Column(Float, nullable=True)
    updated_at = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=True, index=True)


@dataclass(frozen=True)
class AttemptRecord:
    """Failure streak and lockout state of one subject.

    Timestamps are epoch seconds. ``locked_until`` is only meaningful while it
    lies in the future; an expired value is equivalent to no lock at all.
    ``expires_at`` tells a store when the record stops carrying information
    and may be evicted.
    """

    subject_id: str
    failure_count: int = 0
    locked_until: float | None = None
    updated_at: float = 0.0
    expires_at: float | None = None

    def is_locked(self, now: float) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    @classmethod
    def from_orm_model(cls, row: AttemptRecordModel) -> "AttemptRecord":
        return cls(
            subject_id=row.subject_id,
            failure_count=row.failure_count,
            locked_until=row.locked_until,
            updated_at=row.updated_at,
            expires_at=row.expires_at,
        )


class LockoutStatus(BaseModel):
    locked: bool
    remaining_attempts: int
    locked_until: float | None = None
    retry_after_s: int | None = Field(default=None, description="seconds until the lock lifts")
    failures: int = 0
    store_available: bool = True
    degraded: bool = Field(default=False, description="answered by a fallback store")


class FailureResult(LockoutStatus):
    just_locked: bool = False


class VerifyCodeRequest(BaseModel):
    code: str = Field(min_length=1)


class VerifyCodeResponse(BaseModel):
    result: str
    locked: bool = False
    remaining_attempts: int | None = None
    locked_until: float | None = None
    retry_after_s: int | None = None
    latency_ms: float | None = None
    degraded: bool = False
