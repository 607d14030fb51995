import hmac
import logging
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from booking_guard.attempt_logger import AttemptLogger
from booking_guard.config import Config, load_config
from booking_guard.errors import InvalidSubjectError, StoreUnavailableError
from booking_guard.lockout_guard import LockoutGuard, build_guard, normalize_subject
from booking_guard.models import LockoutStatus, VerifyCodeRequest, VerifyCodeResponse
from booking_guard.verifier import CodeVerifier, StaticCodeVerifier

logger = logging.getLogger(__name__)


def create_app(
    config: Config | None = None,
    guard: LockoutGuard | None = None,
    verifier: CodeVerifier | None = None,
    attempt_logger: AttemptLogger | None = None,
) -> FastAPI:
    config = config or load_config()
    app = FastAPI(title="Booking Code Guard")
    app.state.config = config
    app.state.guard = guard or build_guard(config)
    app.state.verifier = verifier or StaticCodeVerifier(config.booking_codes)
    app.state.attempt_logger = attempt_logger or AttemptLogger(config.attempts_log_file, config.enable_attempt_log)

    @app.exception_handler(InvalidSubjectError)
    async def invalid_subject(request: Request, exc: InvalidSubjectError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable(request: Request, exc: StoreUnavailableError):
        return JSONResponse(status_code=503, content={"detail": "attempt store unavailable"})

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/subjects/{subject_id}/booking-code/status", response_model=LockoutStatus)
    def booking_code_status(subject_id: str):
        return app.state.guard.get_lockout_status(subject_id)

    @app.post("/subjects/{subject_id}/booking-code/verify", response_model=VerifyCodeResponse)
    def verify_booking_code(subject_id: str, req: VerifyCodeRequest):
        return _handle_verify(app, subject_id, req.code)

    @app.delete("/subjects/{subject_id}/booking-code/failures")
    def clear_booking_code_failures(subject_id: str, admin_token: str):
        if not hmac.compare_digest(admin_token.encode(), app.state.config.admin_token.encode()):
            raise HTTPException(status_code=403, detail="invalid admin token")
        app.state.guard.clear_booking_code_failures(subject_id)
        return {"result": "cleared"}

    return app


def _log_and_response(
    app: FastAPI,
    subject_id: str,
    result: str,
    status_code: int,
    start_time: float,
    status: LockoutStatus,
    extra: dict | None = None,
):
    latency_ms = (time.perf_counter() - start_time) * 1000
    if status.degraded:
        extra = {**(extra or {}), "degraded": True}
    app.state.attempt_logger.log_attempt(
        subject_id=subject_id,
        result=result,
        locked=status.locked,
        remaining_attempts=status.remaining_attempts,
        latency_ms=latency_ms,
        extra=extra,
    )
    body = VerifyCodeResponse(
        result=result,
        locked=status.locked,
        remaining_attempts=status.remaining_attempts,
        locked_until=status.locked_until,
        retry_after_s=status.retry_after_s,
        latency_ms=latency_ms,
        degraded=status.degraded,
    )
    headers = {"Retry-After": str(status.retry_after_s)} if status.retry_after_s else None
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


def _handle_verify(app: FastAPI, subject_id: str, code: str):
    start_time = time.perf_counter()
    guard: LockoutGuard = app.state.guard
    key = normalize_subject(subject_id)

    status = guard.get_lockout_status(key)
    if not status.store_available and status.locked:
        return _log_and_response(app, key, "store_unavailable", 503, start_time, status)
    if status.locked:
        return _log_and_response(app, key, "locked_out", 429, start_time, status)

    if not app.state.verifier(key, code):
        failure = guard.record_failure(key)
        if not failure.store_available and failure.locked:
            return _log_and_response(app, key, "store_unavailable", 503, start_time, failure)
        if failure.locked:
            extra = {"just_locked": failure.just_locked}
            return _log_and_response(app, key, "locked_out", 429, start_time, failure, extra)
        return _log_and_response(app, key, "invalid_code", 400, start_time, failure)

    try:
        guard.clear_booking_code_failures(key)
    except StoreUnavailableError as exc:
        logger.warning("could not clear failures for subject %s after a valid code: %s", key, exc)
    status = LockoutStatus(
        locked=False,
        remaining_attempts=guard.policy.max_attempts,
        degraded=getattr(guard.store, "degraded", False),
    )
    return _log_and_response(app, key, "verified", 200, start_time, status)


app = create_app(load_config("config.json"))
