import hmac
import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, Response, WebSocket, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from sqlalchemy.orm import Session

from chatseal.config import settings
from chatseal.errors import BadRequestError, ServiceError
from chatseal.graph import GraphClient, get_graph_client
from chatseal.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from chatseal.messaging import send_text_message
from chatseal.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from chatseal.notifier import NotificationHub, get_hub, stream_to_websocket
from chatseal.oauth import (
    build_authorization_url,
    build_redirect_uri,
    connect_with_code,
    manual_connect,
    require_admin_key,
    verify_credentials,
)
from chatseal.schemas import (
    ErrorResponse,
    HealthResponse,
    ManualConnectRequest,
    ManualVerifyRequest,
    MessageResponse,
    MessagesListResponse,
    SendMessageRequest,
    SendMessageResponse,
    TenantEnvelope,
    TenantResponse,
    TenantsListResponse,
    VerifyReport,
)
from chatseal.storage import init_db, check_db_health, get_db, get_messages_for_tenant, list_tenants
from chatseal.utils import verify_meta_signature
from chatseal.webhook import process_webhook_payload


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, warn about permissive configuration
    """
    init_db()
    if not settings.signature_checks_enabled:
        logger.warning("META_APP_SECRET is empty: webhook signatures are NOT verified")
    if not settings.META_VERIFY_TOKEN:
        logger.warning("META_VERIFY_TOKEN is empty: webhook subscription handshakes will be refused")
    yield


app = FastAPI(
    title="ChatSeal WhatsApp Bridge",
    description="Multi-tenant bridge between a dashboard and the WhatsApp Business Cloud API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)

router = APIRouter(prefix="/api/whatsapp", tags=["whatsapp"])

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Missing or invalid input"},
    500: {"model": ErrorResponse, "description": "Upstream or internal failure"},
}


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message!r}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc.message!r}")
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse, response_model_exclude_none=True)
async def health_live() -> HealthResponse:
    """
    Liveness check - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse, response_model_exclude_none=True)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness check - returns 200 only if the DB is reachable and its schema
    is applied, 503 otherwise. Also reports whether webhook signatures are
    being verified.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied",
            signature_checks=settings.signature_checks_enabled,
        )

    return HealthResponse(status="ready", signature_checks=settings.signature_checks_enabled)


# =============================================================================
# OAuth Routes
# =============================================================================

@router.get("/oauth/start", status_code=status.HTTP_302_FOUND)
async def oauth_start(request: Request) -> RedirectResponse:
    """
    Redirect the browser to the Meta OAuth dialog.

    The redirect_uri built here must be reproduced byte-for-byte by the
    callback, so both use build_redirect_uri.
    """
    redirect_uri = build_redirect_uri(str(request.base_url))
    logger.info(f"Starting OAuth with redirect_uri={redirect_uri}")
    return RedirectResponse(build_authorization_url(redirect_uri), status_code=status.HTTP_302_FOUND)


@router.get(
    "/oauth/callback",
    response_model=TenantEnvelope,
    response_model_exclude_none=True,
    responses={**ERROR_RESPONSES, 403: {"description": "Missing required scopes"}},
)
async def oauth_callback(
    request: Request,
    code: Optional[str] = None,
    error_description: Optional[str] = None,
    db: Session = Depends(get_db),
    graph: GraphClient = Depends(get_graph_client),
) -> TenantEnvelope:
    """
    Finish the OAuth flow: exchange the code, check scopes, discover the
    WABA and its phone number, and upsert the tenant.
    """
    if not code:
        raise BadRequestError("Missing code", detail=error_description)

    tenant = await connect_with_code(db, graph, code, build_redirect_uri(str(request.base_url)))
    return TenantEnvelope(
        message="WhatsApp account connected",
        tenant=TenantResponse.model_validate(tenant),
    )


# =============================================================================
# Webhook Routes
# =============================================================================

@router.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    hub_mode: Annotated[Optional[str], Query(alias="hub.mode")] = None,
    hub_verify_token: Annotated[Optional[str], Query(alias="hub.verify_token")] = None,
    hub_challenge: Annotated[Optional[str], Query(alias="hub.challenge")] = None,
) -> Response:
    """
    Subscription handshake: echo hub.challenge when the verify token matches.
    """
    expected = settings.META_VERIFY_TOKEN
    token_ok = bool(expected) and bool(hub_verify_token) and hmac.compare_digest(
        hub_verify_token.encode("utf-8"), expected.encode("utf-8")
    )
    if hub_mode == "subscribe" and token_ok:
        logger.info("Webhook verified")
        return PlainTextResponse(hub_challenge or "")

    logger.warning(f"Webhook verification failed: mode={hub_mode}")
    return Response(status_code=status.HTTP_403_FORBIDDEN)


@router.post(
    "/webhook",
    responses={
        401: {"description": "Invalid signature"},
        500: {"description": "Processing failed"},
    },
)
async def receive_webhook(
    request: Request,
    x_hub_signature_256: Annotated[Optional[str], Header(alias="X-Hub-Signature-256")] = None,
    db: Session = Depends(get_db),
    hub: NotificationHub = Depends(get_hub),
) -> Response:
    """
    Ingest message and delivery-status notifications from the Cloud API.

    - Verifies X-Hub-Signature-256 against the raw body before anything else
    - Acknowledges with 200 whenever the delivery was handled, including
      duplicates and deliveries for unknown numbers, so Meta stops retrying
    - Never echoes the body or internal errors back to the caller
    """
    raw_body = await request.body()

    if not verify_meta_signature(raw_body, x_hub_signature_256, settings.META_APP_SECRET):
        logger.error("Invalid X-Hub-Signature-256")
        record_webhook_outcome("delivery", "invalid_signature")
        log_webhook_data(request=request, result="invalid_signature")
        return Response(status_code=status.HTTP_401_UNAUTHORIZED)

    try:
        payload = json.loads(raw_body) if raw_body else {}
    except ValueError as e:
        logger.warning(f"Webhook body is not valid JSON, acknowledging without processing: {e}")
        record_webhook_outcome("delivery", "ignored")
        log_webhook_data(request=request, result="ignored")
        return Response(status_code=status.HTTP_200_OK)

    try:
        result = process_webhook_payload(db, hub, payload)
    except Exception:
        db.rollback()
        logger.exception("Webhook processing failed")
        record_webhook_outcome("delivery", "error")
        log_webhook_data(request=request, result="error")
        return Response(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    record_webhook_outcome("delivery", result.outcome)
    log_webhook_data(
        request=request,
        wa_message_id=result.first_id,
        dup=result.only_duplicates,
        result=result.outcome,
    )
    return Response(status_code=status.HTTP_200_OK)


# =============================================================================
# Message Routes
# =============================================================================

@router.post(
    "/messages/send",
    response_model=SendMessageResponse,
    responses={
        **ERROR_RESPONSES,
        401: {"model": ErrorResponse, "description": "Access token invalid or expired"},
        404: {"model": ErrorResponse, "description": "Tenant not found"},
        409: {"model": ErrorResponse, "description": "Sender phone number not connected"},
    },
)
async def send_message(
    body: Optional[SendMessageRequest] = None,
    db: Session = Depends(get_db),
    graph: GraphClient = Depends(get_graph_client),
    hub: NotificationHub = Depends(get_hub),
) -> SendMessageResponse:
    """
    Send a text message from a tenant's WhatsApp number.
    """
    body = body or SendMessageRequest()
    data = await send_text_message(
        db, graph, hub, tenant_id=body.tenant_id, to=body.to, text=body.message
    )
    return SendMessageResponse(data=data)


@router.get("/messages/{tenant_id}", response_model=MessagesListResponse)
async def list_messages(tenant_id: str, db: Session = Depends(get_db)) -> MessagesListResponse:
    """
    All messages of a tenant, oldest first.
    """
    messages = get_messages_for_tenant(db, tenant_id)
    logger.info(f"GET /messages/{tenant_id}: returned {len(messages)} messages")
    return MessagesListResponse(messages=[MessageResponse.model_validate(m) for m in messages])


@router.websocket("/ws/{tenant_id}")
async def tenant_events(websocket: WebSocket, tenant_id: str, hub: NotificationHub = Depends(get_hub)):
    """Live feed of new_message events for one tenant."""
    await stream_to_websocket(websocket, hub, tenant_id)


# =============================================================================
# Tenant Routes
# =============================================================================

@router.get("/tenants", response_model=TenantsListResponse)
async def get_tenants(db: Session = Depends(get_db)) -> TenantsListResponse:
    """
    Connected tenants, without credentials.
    """
    return TenantsListResponse(tenants=[TenantResponse.model_validate(t) for t in list_tenants(db)])


@router.post(
    "/manual/connect",
    response_model=TenantEnvelope,
    response_model_exclude_none=True,
    responses={**ERROR_RESPONSES, 403: {"model": ErrorResponse}, 501: {"model": ErrorResponse}},
)
async def manual_connect_route(
    body: Optional[ManualConnectRequest] = None,
    x_admin_key: Annotated[Optional[str], Header(alias="X-Admin-Key")] = None,
    db: Session = Depends(get_db),
    graph: GraphClient = Depends(get_graph_client),
) -> TenantEnvelope:
    """
    Upsert a tenant from explicit WABA credentials (admin only).
    """
    require_admin_key(x_admin_key, "connect")
    body = body or ManualConnectRequest()
    tenant = await manual_connect(
        db,
        graph,
        name=body.name,
        waba_id=body.waba_id,
        phone_number_id=body.phone_number_id,
        access_token=body.access_token,
        phone_number=body.phone_number,
        is_test=body.is_test,
    )
    return TenantEnvelope(tenant=TenantResponse.model_validate(tenant))


@router.post(
    "/manual/verify",
    response_model=VerifyReport,
    responses={**ERROR_RESPONSES, 403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def manual_verify_route(
    body: Optional[ManualVerifyRequest] = None,
    x_admin_key: Annotated[Optional[str], Header(alias="X-Admin-Key")] = None,
    db: Session = Depends(get_db),
    graph: GraphClient = Depends(get_graph_client),
) -> VerifyReport:
    """
    Check a WABA / phone number / token combination against the Graph API
    and report what works, what does not, and how to fix it (admin only).
    """
    require_admin_key(x_admin_key, "verify")
    body = body or ManualVerifyRequest()
    report = await verify_credentials(
        db,
        graph,
        tenant_id=body.tenant_id,
        waba_id=body.waba_id,
        phone_number_id=body.phone_number_id,
        access_token=body.access_token,
    )
    return VerifyReport(**report)


app.include_router(router)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
