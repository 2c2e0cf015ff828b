import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from motor.motor_asyncio import AsyncIOMotorDatabase
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import Accepted, AuthReason, Authenticator, Rejected, key_hash
from auth.authenticator import sign_state, verify_state
from gateway.schemas import (
    ActivateRequest,
    AnalyzeRequest,
    AnalyzeResponse,
    CreateDatabaseRequest,
    FailedItem,
    InvalidItem,
    LicenseInfo,
    Meta,
    ParseRequest,
    ParseResponse,
    SaveAnalysisRequest,
    SyncedItem,
    SyncRequest,
    SyncResponse,
    TokenUsage,
)
from gateway.settings import Settings, configure_logging
from providers.anthropic import AnthropicClient, LLMResult
from providers.base import MalformedResponseError, ProviderHTTPError
from providers.notion import NotionClient, format_analysis_page, format_trade_properties, validate_trade
from state.licenses import LicenseStore
from state.limiter import KIND_ANALYSIS, KIND_PARSE, DeniedDaily, DeniedMonthly, RateLimiter
from state.models import License, LicenseStatus
from state.mongo import close_mongo, init_mongo, ping
from state.usage import UsageStore
from writer import MAX_BATCH_SIZE, write_batch_with_retry

logger = logging.getLogger(__name__)
access_logger = logging.getLogger("gateway.access")

MAX_INPUT_LENGTH = 50000

_AUTH_STATUS = {AuthReason.IDENTITY_REVOKED: 403}
_AUTH_MESSAGES = {
    AuthReason.MISSING_IDENTITY: "License key is required in X-License-Key header.",
    AuthReason.INVALID_IDENTITY_FORMAT: "License key format is invalid.",
    AuthReason.MISSING_TIMESTAMP: "X-Timestamp header is required.",
    AuthReason.REQUEST_EXPIRED: "Request timestamp is outside the accepted window.",
    AuthReason.IDENTITY_NOT_FOUND: "License key not found.",
    AuthReason.IDENTITY_REVOKED: "License key has been revoked.",
    AuthReason.INVALID_SIGNATURE: "Request signature is invalid.",
}

app = FastAPI(title="Trade Journal Gateway", version="0.1.0")

# CORS is fixed when this module is imported; ALLOWED_ORIGIN is not part of Settings
_allowed_origin = os.getenv("ALLOWED_ORIGIN", "*")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[_allowed_origin],
    # extension pages and local dev are always allowed
    allow_origin_regex=r"^(chrome-extension://.*|http://localhost(:\d+)?|http://127\.0\.0\.1(:\d+)?)$",
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-License-Key", "X-Timestamp", "X-Signature", "Authorization"],
    max_age=86400,
)


def configure_app(
    settings: Settings,
    db: Optional[AsyncIOMotorDatabase] = None,
    licenses: Optional[LicenseStore] = None,
    usage: Optional[UsageStore] = None,
    anthropic: Optional[AnthropicClient] = None,
    notion: Optional[NotionClient] = None,
) -> None:
    """Wire stores and clients onto ``app.state``; tests pass fakes here."""
    licenses = licenses or LicenseStore(db=db)
    usage = usage or UsageStore(db=db)

    app.state.settings = settings
    app.state.db = db
    app.state.licenses = licenses
    app.state.limiter = RateLimiter(usage, limits=settings.kind_limits())
    app.state.authenticator = Authenticator(licenses, settings.signing_secret, settings.tolerance)
    app.state.anthropic = anthropic or AnthropicClient(api_key=settings.anthropic_api_key, model=settings.claude_model)
    app.state.notion = notion or NotionClient(
        client_id=settings.notion_client_id,
        client_secret=settings.notion_client_secret,
        redirect_uri=settings.notion_redirect_uri,
    )


@app.on_event("startup")
async def startup_event() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    client, db = await init_mongo(settings.mongodb_uri)
    app.state.mongo_client = client
    configure_app(settings, db=db)

    logger.info("Gateway initialized (limits: %s)", {k: v.model_dump() for k, v in settings.limits.items()})


@app.on_event("shutdown")
async def shutdown_event() -> None:
    for name in ("anthropic", "notion"):
        provider = getattr(app.state, name, None)
        if provider is not None:
            await provider.aclose()
    await close_mongo(getattr(app.state, "mongo_client", None))


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        access_logger.info(
            json.dumps(
                {
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "method": request.method,
                    "path": request.url.path,
                    "license_key_hash": key_hash(request.headers.get("X-License-Key")),
                    "status_code": status_code,
                    "latency_ms": int((time.perf_counter() - start) * 1000),
                }
            )
        )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        content = exc.detail
    else:
        content = {"error": {"code": "HTTP_ERROR", "message": str(exc.detail)}}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={"error": {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred."}},
    )


def api_error(status_code: int, code: str, message: str, headers: Optional[Dict[str, str]] = None, **extra: Any) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"error": {"code": code, "message": message, **extra}},
        headers=headers,
    )


async def require_identity(request: Request) -> Accepted:
    authenticator: Authenticator = request.app.state.authenticator
    raw_body = await request.body()
    result = await authenticator.authenticate(
        request.headers.get("X-License-Key"),
        request.headers.get("X-Timestamp"),
        request.headers.get("X-Signature"),
        raw_body,
    )
    if isinstance(result, Rejected):
        raise api_error(_AUTH_STATUS.get(result.reason, 401), result.reason.value, _AUTH_MESSAGES[result.reason])
    return result


async def require_active(auth: Accepted = Depends(require_identity)) -> Accepted:
    # license is None only when the store was down and auth failed open
    if auth.license is not None and auth.license.status != LicenseStatus.ACTIVE:
        raise api_error(403, "LICENSE_NOT_ACTIVE", f'License key status is "{auth.license.status.value}". Activation required.')
    return auth


async def consume_quota(request: Request, identity: str, kind: str) -> None:
    limiter: RateLimiter = request.app.state.limiter
    decision = await limiter.check_and_consume(identity, kind)
    if isinstance(decision, (DeniedDaily, DeniedMonthly)):
        now = datetime.now(timezone.utc)
        retry_after = max(0, int((decision.reset_at - now).total_seconds()))
        code = "DAILY_LIMIT_REACHED" if isinstance(decision, DeniedDaily) else "MONTHLY_LIMIT_REACHED"
        raise api_error(
            429,
            code,
            f"{decision.scope_exceeded.capitalize()} {kind} limit reached.",
            headers={"Retry-After": str(retry_after)},
            reset_at=decision.reset_at.isoformat(),
        )


async def call_llm(request: Request, identity: str, background: BackgroundTasks, coro) -> LLMResult:
    try:
        result: LLMResult = await coro
    except httpx.TimeoutException:
        raise api_error(504, "TIMEOUT", "The AI request timed out.")
    except ProviderHTTPError as e:
        logger.error("LLM call failed with status %s", e.status_code)
        raise api_error(502, "LLM_API_ERROR", "Trade AI service temporarily unavailable.")
    except MalformedResponseError:
        raise api_error(502, "EMPTY_RESPONSE", "No usable response from the AI service.")
    except httpx.TransportError as e:
        logger.error("LLM transport error: %s", e)
        raise api_error(502, "LLM_API_ERROR", "Trade AI service temporarily unavailable.")

    limiter: RateLimiter = request.app.state.limiter
    background.add_task(limiter.record_token_usage, identity, result.input_tokens, result.output_tokens)
    return result


def _meta(result: LLMResult) -> Meta:
    return Meta(token_usage=TokenUsage(input=result.input_tokens, output=result.output_tokens))


async def _notion_license(request: Request, auth: Accepted) -> License:
    lic = auth.license
    if lic is None:
        licenses: LicenseStore = request.app.state.licenses
        try:
            lic = await licenses.get(auth.identity)
        except Exception as e:
            logger.warning("License lookup failed: %s", e)
            lic = None
    if lic is None or not lic.notion_access_token:
        raise api_error(400, "NOTION_NOT_CONNECTED", "Connect a Notion workspace first.")
    return lic


@app.get("/health", tags=["health"])
async def health(request: Request):
    settings: Settings = request.app.state.settings
    db = getattr(request.app.state, "db", None)
    db_ok = db is not None and await ping(db)
    llm_ok = bool(settings.anthropic_api_key)
    notion_ok = bool(settings.notion_client_id)
    return {
        "status": "ok" if db_ok and llm_ok else "degraded",
        "service": "trade-journal-gateway",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "connected" if db_ok else "error",
            "anthropic_api_key": "configured" if llm_ok else "missing",
            "notion_client": "configured" if notion_ok else "missing",
        },
    }


@app.post("/api/license/activate")
async def activate_license(body: ActivateRequest, request: Request):
    licenses: LicenseStore = request.app.state.licenses
    try:
        outcome = await licenses.activate(body.key)
    except Exception as e:
        logger.exception("License activation failed: %s", e)
        raise api_error(500, "DB_ERROR", "Failed to activate license key.")

    if outcome.code == "INVALID_KEY_FORMAT":
        raise api_error(400, outcome.code, "License key must be in XXXX-XXXX-XXXX-XXXX format.")
    if outcome.code == "KEY_NOT_FOUND":
        raise api_error(404, outcome.code, "License key does not exist.")
    if outcome.code == "KEY_ALREADY_ACTIVE":
        raise api_error(409, outcome.code, "This license key is already activated.")
    if outcome.code == "KEY_REVOKED":
        raise api_error(403, outcome.code, "This license key has been revoked.")

    lic = outcome.license
    return {"data": {"key": lic.key, "status": lic.status.value, "activated_at": lic.activated_at}}


@app.get("/api/license/validate")
async def validate_license(auth: Accepted = Depends(require_identity)):
    lic = auth.license
    if lic is None:
        return {"data": LicenseInfo(key=auth.identity, status="unknown")}
    return {
        "data": LicenseInfo(
            key=lic.key,
            status=lic.status.value,
            activated_at=lic.activated_at,
            has_notion=lic.has_notion,
            notion_workspace_id=lic.notion_workspace_id,
            notion_database_id=lic.notion_database_id,
        )
    }


@app.get("/api/license/usage")
async def license_usage(request: Request, auth: Accepted = Depends(require_identity)):
    limiter: RateLimiter = request.app.state.limiter
    try:
        summary = await limiter.usage_summary(auth.identity)
    except Exception as e:
        logger.warning("Usage summary failed: %s", e)
        raise api_error(500, "USAGE_FETCH_ERROR", "Failed to retrieve usage data.")
    return {"data": summary}


@app.post("/api/parse", response_model=ParseResponse)
async def parse_trades(
    body: ParseRequest,
    request: Request,
    background: BackgroundTasks,
    auth: Accepted = Depends(require_active),
):
    if not body.raw_text.strip():
        raise api_error(400, "EMPTY_INPUT", "raw_text is required.")
    if len(body.raw_text) > MAX_INPUT_LENGTH:
        raise api_error(400, "INPUT_TOO_LARGE", "Input exceeds maximum length.")

    await consume_quota(request, auth.identity, KIND_PARSE)
    llm: AnthropicClient = request.app.state.anthropic
    result = await call_llm(request, auth.identity, background, llm.parse_trades(body.raw_text))

    data = result.data
    if isinstance(data, dict) and data.get("error"):
        return ParseResponse(error=str(data["error"]), message=data.get("message"), meta=_meta(result))
    if isinstance(data, dict):
        data = data.get("trades", [data])
    trades = [t for t in data if isinstance(t, dict)] if isinstance(data, list) else []
    return ParseResponse(trades=trades, meta=_meta(result))


@app.post("/api/analyze", response_model=AnalyzeResponse)
async def analyze_trades(
    body: AnalyzeRequest,
    request: Request,
    background: BackgroundTasks,
    auth: Accepted = Depends(require_active),
):
    await consume_quota(request, auth.identity, KIND_ANALYSIS)
    llm: AnthropicClient = request.app.state.anthropic
    result = await call_llm(request, auth.identity, background, llm.analyze_trades(body.trades, body.analysis_type))

    if not isinstance(result.data, dict):
        raise api_error(502, "EMPTY_RESPONSE", "No usable response from the AI service.")
    return AnalyzeResponse(analysis=result.data, meta=_meta(result))


@app.get("/api/notion/auth-url")
async def notion_auth_url(request: Request, auth: Accepted = Depends(require_identity)):
    notion: NotionClient = request.app.state.notion
    settings: Settings = request.app.state.settings
    if not notion.oauth_configured or not settings.state_secret:
        raise api_error(503, "NOTION_NOT_CONFIGURED", "Notion integration is not configured.")
    return {"url": notion.build_auth_url(sign_state(auth.identity, settings.state_secret))}


@app.get("/api/notion/callback", response_class=HTMLResponse)
async def notion_callback(
    request: Request,
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
):
    settings: Settings = request.app.state.settings
    if not code:
        raise api_error(400, "MISSING_CODE", "Authorization code is missing.")
    identity = verify_state(state, settings.state_secret) if settings.state_secret else None
    if identity is None:
        raise api_error(400, "INVALID_STATE", "OAuth state is missing or invalid.")

    notion: NotionClient = request.app.state.notion
    licenses: LicenseStore = request.app.state.licenses
    try:
        token = await notion.exchange_code(code)
        await licenses.set_notion_connection(identity, token["access_token"], token.get("workspace_id"))
    except (ProviderHTTPError, MalformedResponseError, httpx.HTTPError) as e:
        logger.error("Notion OAuth exchange failed: %s", e)
        raise api_error(502, "OAUTH_FAILED", "Notion authorization failed.")

    return HTMLResponse(
        "<html><body><script>window.close();</script>"
        "<p>Authorization successful. You can close this tab.</p></body></html>"
    )


@app.post("/api/notion/create-database")
async def notion_create_database(
    body: CreateDatabaseRequest,
    request: Request,
    auth: Accepted = Depends(require_active),
):
    lic = await _notion_license(request, auth)
    notion: NotionClient = request.app.state.notion
    licenses: LicenseStore = request.app.state.licenses
    try:
        database_id = await notion.create_database(lic.notion_access_token, body.parent_page_id, body.title)
    except (ProviderHTTPError, MalformedResponseError, httpx.HTTPError) as e:
        logger.error("Notion database creation failed: %s", e)
        raise api_error(502, "NOTION_API_ERROR", "Failed to create Notion database.")
    await licenses.set_notion_database(lic.key, database_id)
    return {"data": {"database_id": database_id}}


@app.post("/api/notion/sync", response_model=SyncResponse)
async def notion_sync(body: SyncRequest, request: Request, auth: Accepted = Depends(require_active)):
    if not body.trades:
        raise api_error(400, "NO_TRADES", "No trades to sync.")
    if len(body.trades) > MAX_BATCH_SIZE:
        raise api_error(400, "BATCH_TOO_LARGE", f"At most {MAX_BATCH_SIZE} trades per sync.")

    lic = await _notion_license(request, auth)
    database_id = body.database_id or lic.notion_database_id
    if not database_id:
        raise api_error(400, "NOTION_DATABASE_MISSING", "No Notion database selected.")

    positions: List[int] = []
    invalid: List[InvalidItem] = []
    for i, trade in enumerate(body.trades):
        errors = validate_trade(trade)
        if errors:
            invalid.append(InvalidItem(index=i, errors=errors))
        else:
            positions.append(i)

    notion: NotionClient = request.app.state.notion
    settings: Settings = request.app.state.settings

    async def write_one(trade: Dict[str, Any]) -> str:
        return await notion.create_page(lic.notion_access_token, database_id, format_trade_properties(trade))

    result = await write_batch_with_retry(
        [body.trades[i] for i in positions],
        write_one,
        pacing=settings.retry.pacing_seconds,
        policy=settings.retry_policy(),
    )

    return SyncResponse(
        synced_count=len(result.succeeded),
        succeeded=[SyncedItem(index=positions[s.index], page_id=s.remote_id) for s in result.succeeded],
        failed=[
            FailedItem(index=positions[f.index], reason=f.reason.value, status_code=f.status_code)
            for f in result.failed
        ],
        invalid=invalid,
    )


@app.post("/api/notion/save-analysis")
async def notion_save_analysis(body: SaveAnalysisRequest, request: Request, auth: Accepted = Depends(require_active)):
    lic = await _notion_license(request, auth)
    database_id = body.database_id or lic.notion_database_id
    if not database_id:
        raise api_error(400, "NOTION_DATABASE_MISSING", "No Notion database selected.")

    notion: NotionClient = request.app.state.notion
    settings: Settings = request.app.state.settings
    title = f"Analysis ({body.analysis_type}) {datetime.now(timezone.utc):%Y-%m-%d}"
    page = format_analysis_page(body.analysis, title)

    async def write_one(p: Dict[str, Any]) -> str:
        return await notion.create_page(lic.notion_access_token, database_id, p["properties"], p["children"])

    result = await write_batch_with_retry([page], write_one, pacing=0, policy=settings.retry_policy())
    if result.failed:
        failure = result.failed[0]
        raise api_error(502, "NOTION_API_ERROR", "Failed to save analysis to Notion.", reason=failure.reason.value)
    return {"data": {"page_id": result.succeeded[0].remote_id}}
