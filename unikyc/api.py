"""
UniKYC HTTP API.

Thin FastAPI layer over the lifecycle engine. Every KycError is rendered
as {"detail": {"code", "message", "details"?}} with a stable HTTP status.

Access:
- subjects log in with a signed message and send the session token as
  ``Authorization: Bearer <token>`` to submit and release;
- operators send one of UNIKYC_OPERATOR_API_KEYS as ``x-api-key`` to
  approve and reject;
- the unlock callback carries its own proof (the network's signature).
"""

import logging
from datetime import timedelta
from pathlib import Path
from typing import Iterable, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from . import config
from .auth import AuthenticatedIdentity, Authenticator, Ed25519MessageAuthenticator
from .blocklock import get_network
from .errors import AuthenticationError, ErrorCode, KycError, ValidationError
from .identifiers import IdentifierResolver, InMemoryNameService, JsonFileNameService
from .lifecycle import RecordLifecycleEngine
from .logging_config import audit_log, configure_logging, set_request_id
from .models import (
    ApproveRequest,
    LoginRequest,
    RejectRequest,
    ReleaseRequest,
    StatusRequest,
    SubmitRequest,
    UnlockCallbackRequest,
)
from .rate_limit import RateLimiter, extract_client_id
from .storage import get_content_store
from .store import InMemoryRecordStore, SqliteRecordStore
from .threshold import ThresholdCipher, ThresholdScheme
from .timelock import TimeLockCoordinator
from .util import b64d, b64e, constant_time_compare

logger = logging.getLogger(__name__)

HTTP_STATUS = {
    ErrorCode.UNAUTHENTICATED: 401,
    ErrorCode.IDENTITY_MISMATCH: 403,
    ErrorCode.RELEASE_DENIED: 403,
    ErrorCode.RESOLUTION_NOT_FOUND: 404,
    ErrorCode.RECORD_NOT_FOUND: 404,
    ErrorCode.TIMELOCK_UNKNOWN_REQUEST: 404,
    ErrorCode.RESOLUTION_AMBIGUOUS: 409,
    ErrorCode.INVALID_TRANSITION: 409,
    ErrorCode.STORAGE_UNAVAILABLE: 503,
    ErrorCode.TIMELOCK_REGISTRATION_FAILED: 503,
    ErrorCode.TIMELOCK_NETWORK_UNAVAILABLE: 503,
}


def http_status_for(error: KycError) -> int:
    """Validation-type failures default to 422."""
    return HTTP_STATUS.get(error.code, 422)


def build_engine() -> RecordLifecycleEngine:
    """Engine wired from configuration."""
    configure_logging(
        level="DEBUG" if config.is_debug() else config.LOG_LEVEL,
        json_format=config.LOG_JSON,
        log_file=config.LOG_FILE,
    )

    if config.RECORD_STORE_BACKEND == "memory":
        record_store = InMemoryRecordStore()
    else:
        record_store = SqliteRecordStore(config.DB_PATH)

    if Path(config.NAME_SNAPSHOT_PATH).exists():
        name_service = JsonFileNameService(config.NAME_SNAPSHOT_PATH)
    else:
        logger.warning("Name snapshot %s not found; only address literals will resolve", config.NAME_SNAPSHOT_PATH)
        name_service = InMemoryNameService()

    engine = RecordLifecycleEngine(
        resolver=IdentifierResolver(name_service),
        cipher=ThresholdCipher(),
        coordinator=TimeLockCoordinator(get_network()),
        content_store=get_content_store(),
        record_store=record_store,
    )
    engine.recover()
    return engine


def _decode(value: str, field: str) -> bytes:
    try:
        return b64d(value)
    except ValueError:
        raise ValidationError(f"{field} must be valid base64", field=field)


def create_app(
    engine: Optional[RecordLifecycleEngine] = None,
    authenticator: Optional[Authenticator] = None,
    operator_keys: Optional[Iterable[str]] = None,
) -> FastAPI:
    production = config.is_production()
    app = FastAPI(
        title="UniKYC",
        docs_url=None if production else "/docs",
        redoc_url=None if production else "/redoc",
        openapi_url=None if production else "/openapi.json",
    )
    app.state.engine = engine
    app.state.authenticator = authenticator or Ed25519MessageAuthenticator()
    keys = frozenset(config.OPERATOR_API_KEYS if operator_keys is None else operator_keys)

    submit_limiter = RateLimiter(config.SUBMIT_RPM)
    status_limiter = RateLimiter(config.STATUS_RPM)

    def get_engine() -> RecordLifecycleEngine:
        if app.state.engine is None:
            app.state.engine = build_engine()
        return app.state.engine

    def rate_limit(limiter: RateLimiter, request: Request, endpoint: str) -> None:
        client_id = extract_client_id(request.headers)
        if not limiter.allow(f"{endpoint}:{client_id}"):
            audit_log.rate_limit_exceeded(client_id, endpoint)
            raise HTTPException(429, "RATE_LIMIT")

    def current_identity(request: Request) -> AuthenticatedIdentity:
        scheme, _, token = request.headers.get("authorization", "").partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthenticationError("bearer session token required")
        return app.state.authenticator.authenticate(token.strip())

    def require_operator(request: Request) -> None:
        supplied = request.headers.get("x-api-key", "")
        if not supplied or not any(constant_time_compare(supplied, k) for k in keys):
            audit_log.security_event(
                "OPERATOR_KEY_REJECTED",
                severity="medium",
                client_id=extract_client_id(request.headers),
                path=request.url.path,
            )
            raise AuthenticationError("operator API key required")

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = set_request_id(request.headers.get("x-request-id"))
        response = await call_next(request)
        response.headers["x-request-id"] = request_id
        return response

    @app.exception_handler(KycError)
    async def kyc_error_handler(request: Request, exc: KycError):
        return JSONResponse(status_code=http_status_for(exc), content={"detail": exc.to_dict()})

    @app.get("/health")
    def health():
        checks = config.validate_config()
        return {
            "status": "ok" if all(checks.values()) else "degraded",
            "env": config.ENV,
            "chain": config.CHAIN,
            "checks": checks,
        }

    @app.post("/auth/login")
    def login(req: LoginRequest):
        identity = app.state.authenticator.verify(req.message, req.signature)
        return {"address": identity.address, "session_token": identity.session_token}

    @app.post("/auth/logout")
    def logout(identity: AuthenticatedIdentity = Depends(current_identity)):
        app.state.authenticator.revoke(identity.session_token)
        return {"address": identity.address, "revoked": True}

    @app.post("/kyc/status")
    def kyc_status(req: StatusRequest, request: Request):
        rate_limit(status_limiter, request, "status")
        report = get_engine().check_status(req.identifier)
        body = report.to_public_dict()
        if report.record is not None:
            body["record_id"] = report.record.id
        return body

    @app.post("/kyc/submit", status_code=201)
    def kyc_submit(
        req: SubmitRequest,
        request: Request,
        identity: AuthenticatedIdentity = Depends(current_identity),
    ):
        rate_limit(submit_limiter, request, "submit")
        engine = get_engine()
        subject = engine.resolver.resolve(req.identifier)
        if subject.address != identity.address:
            audit_log.security_event(
                "SUBMIT_FOR_OTHER_ACCOUNT",
                severity="high",
                address=identity.address,
                target=subject.address,
            )
            raise AuthenticationError(
                "identifier does not resolve to the authenticated account",
                AuthenticationError.IDENTITY_MISMATCH,
                address=subject.address,
            )

        scheme = None
        if req.scheme is not None:
            scheme = ThresholdScheme(
                total_shares=req.scheme.total_shares,
                required_shares=req.scheme.required_shares,
            )
        result = engine.submit_verification(
            subject,
            _decode(req.payload_b64, "payload_b64"),
            scheme,
            req.unlock_block_height,
            req.gas_budget,
        )
        return {
            "record": result.record.to_dict(),
            "shares_b64": [b64e(s) for s in result.shares],
            "superseded": result.superseded.id if result.superseded else None,
        }

    @app.get("/kyc/{identifier}/history")
    def kyc_history(identifier: str, request: Request):
        rate_limit(status_limiter, request, "history")
        return {"records": [r.to_dict() for r in get_engine().history(identifier)]}

    @app.post("/kyc/{record_id}/approve", dependencies=[Depends(require_operator)])
    def kyc_approve(record_id: str, req: Optional[ApproveRequest] = None):
        validity = None
        if req is not None and req.validity_days:
            validity = timedelta(days=req.validity_days)
        return get_engine().approve(record_id, validity).to_dict()

    @app.post("/kyc/{record_id}/reject", dependencies=[Depends(require_operator)])
    def kyc_reject(record_id: str, req: Optional[RejectRequest] = None):
        return get_engine().reject(record_id, req.reason if req else None).to_dict()

    @app.post("/kyc/{record_id}/release")
    def kyc_release(
        record_id: str,
        req: ReleaseRequest,
        identity: AuthenticatedIdentity = Depends(current_identity),
    ):
        shares = [_decode(s, "shares_b64") for s in req.shares_b64]
        payload = get_engine().release_payload(record_id, shares, requested_by=identity.address)
        return {"record_id": record_id, "payload_b64": b64e(payload)}

    @app.post("/timelock/callback")
    def timelock_callback(req: UnlockCallbackRequest):
        outcome = get_engine().handle_unlock_callback(req.request_id, _decode(req.material_b64, "material_b64"))
        return {"request_id": req.request_id, "outcome": outcome.value}

    @app.get("/timelock/{request_id}")
    def timelock_status(request_id: str):
        return get_engine().unlock_status(request_id).to_dict()

    return app


app = create_app()
