"""
Tenant onboarding: the OAuth code flow with WABA/phone discovery, plus the
admin-only manual connect and verify operations.
"""

import hmac
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from sqlalchemy.orm import Session

from chatseal.config import settings
from chatseal.errors import (
    BadRequestError,
    ForbiddenError,
    MissingScopesError,
    NotConfiguredError,
    NotFoundError,
    UpstreamError,
)
from chatseal.graph import (
    OAUTH_SCOPES,
    REQUIRED_SCOPES,
    GraphAPIError,
    GraphClient,
    GraphErrorKind,
    error_detail,
)
from chatseal.metrics import record_connection_outcome
from chatseal.storage import get_tenant, upsert_tenant
from chatseal.utils import clean_access_token

logger = logging.getLogger(__name__)

REDIRECT_PATH = "/api/whatsapp/oauth/callback"
DEFAULT_BUSINESS_NAME = "WhatsApp Business"
MISSING_SCOPES_HINT = (
    "Re-run OAuth and grant permissions. "
    "Ensure your app is added to the WABA and your user has access."
)


# =============================================================================
# OAuth code flow
# =============================================================================

def build_redirect_uri(request_base_url: str) -> str:
    """PUBLIC_BASE_URL when configured, otherwise the current request's origin."""
    base = settings.PUBLIC_BASE_URL or request_base_url
    return f"{base.rstrip('/')}{REDIRECT_PATH}"


def build_authorization_url(redirect_uri: str) -> str:
    params = {
        "client_id": settings.META_APP_ID,
        "redirect_uri": redirect_uri,
        "scope": ",".join(OAUTH_SCOPES),
        "response_type": "code",
    }
    dialog = f"{settings.OAUTH_DIALOG_BASE_URL.rstrip('/')}/{settings.GRAPH_API_VERSION}/dialog/oauth"
    return f"{dialog}?{urlencode(params)}"


def missing_scopes(granted: List[str]) -> List[str]:
    return [scope for scope in REQUIRED_SCOPES if scope not in set(granted)]


async def discover_business_account(graph: GraphClient, token: str) -> Optional[str]:
    """Find a WABA id, first among the user's accounts, then among owned ones."""
    try:
        accounts = await graph.list_business_accounts(token)
        if accounts and accounts[0].get("id"):
            return str(accounts[0]["id"])
    except (GraphAPIError, httpx.HTTPError) as exc:
        logger.warning(f"WABA lookup via me/whatsapp_business_accounts failed: {error_detail(exc)}")

    try:
        for account in await graph.list_owned_business_accounts(token):
            if account.get("id"):
                return str(account["id"])
    except (GraphAPIError, httpx.HTTPError) as exc:
        logger.warning(f"WABA lookup via owned business accounts failed: {error_detail(exc)}")

    return None


async def connect_with_code(db: Session, graph: GraphClient, code: Optional[str], redirect_uri: str):
    """
    Run the callback half of the OAuth flow and persist the tenant.

    Steps: code exchange, scope check, WABA discovery, WABA name (best
    effort), first phone number, upsert by WABA id.

    Raises:
        BadRequestError: no authorization code
        MissingScopesError: the granted token lacks a required scope
        UpstreamError: exchange or discovery failed
    """
    if not code:
        raise BadRequestError("Missing code")

    logger.info(f"Exchanging OAuth code with redirect_uri={redirect_uri}")
    try:
        token = clean_access_token(await graph.exchange_code(code, redirect_uri))
    except (GraphAPIError, httpx.HTTPError) as exc:
        record_connection_outcome("failed")
        raise UpstreamError(error_detail(exc))

    try:
        granted = await graph.token_scopes(token)
    except (GraphAPIError, httpx.HTTPError) as exc:
        logger.warning(f"debug_token failed, treating token as scopeless: {error_detail(exc)}")
        granted = []
    logger.info(f"OAuth token scopes: {granted}")

    missing = missing_scopes(granted)
    if missing:
        record_connection_outcome("missing_scopes")
        raise MissingScopesError(missing, hint=MISSING_SCOPES_HINT)

    waba_id = await discover_business_account(graph, token)
    if not waba_id:
        record_connection_outcome("failed")
        raise UpstreamError("No WhatsApp Business Account found.")

    business_name = DEFAULT_BUSINESS_NAME
    try:
        info = await graph.get_business_account(waba_id, token, fields="name")
        business_name = info.get("name") or business_name
    except (GraphAPIError, httpx.HTTPError) as exc:
        logger.warning(f"Could not read name of WABA {waba_id}: {error_detail(exc)}")

    try:
        phones = await graph.list_phone_numbers(waba_id, token)
    except (GraphAPIError, httpx.HTTPError) as exc:
        record_connection_outcome("failed")
        raise UpstreamError(error_detail(exc))
    phone = phones[0] if phones else {}
    if not phone.get("id"):
        record_connection_outcome("failed")
        raise UpstreamError("No phone number is connected to this WABA.")

    tenant, created = upsert_tenant(
        db,
        waba_id=waba_id,
        name=business_name,
        access_token=token,
        phone_number_id=str(phone["id"]),
        phone_number=phone.get("display_phone_number"),
    )
    record_connection_outcome("connected")
    logger.info(f"WhatsApp account connected: tenant={tenant.id} waba_id={waba_id} created={created}")
    return tenant


# =============================================================================
# Manual connect / verify (admin)
# =============================================================================

def require_admin_key(provided: Optional[str], action: str) -> None:
    expected = settings.ADMIN_API_KEY
    if not expected:
        raise NotConfiguredError(
            "ADMIN_API_KEY not configured",
            hint=f"Set ADMIN_API_KEY in .env to enable manual {action}",
        )
    if not provided or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise ForbiddenError("Forbidden")


async def manual_connect(
    db: Session,
    graph: GraphClient,
    *,
    name: Optional[str],
    waba_id: Optional[str],
    phone_number_id: Optional[str],
    access_token: Optional[str],
    phone_number: Optional[str] = None,
    is_test: Optional[bool] = None,
):
    """Upsert a tenant from explicitly supplied credentials."""
    required = {
        "name": name,
        "wabaId": waba_id,
        "phoneNumberId": phone_number_id,
        "accessToken": clean_access_token(access_token),
    }
    missing = [field for field, value in required.items() if not value]
    if missing:
        raise BadRequestError("Missing required fields", required=list(required), missing=missing)

    token = required["accessToken"]
    display_phone = phone_number or None
    if not display_phone:
        try:
            info = await graph.get_phone_number(
                phone_number_id,
                token,
                fields="display_phone_number",
                timeout=settings.PREFLIGHT_TIMEOUT_SECONDS,
            )
            display_phone = info.get("display_phone_number") or None
        except (GraphAPIError, httpx.HTTPError) as exc:
            logger.warning(f"Could not fetch display_phone_number for {phone_number_id}: {error_detail(exc)}")

    tenant, created = upsert_tenant(
        db,
        waba_id=waba_id,
        name=name,
        access_token=token,
        phone_number_id=phone_number_id,
        phone_number=display_phone,
        is_test=is_test,
    )
    record_connection_outcome("manual")
    logger.info(f"Manual connect: tenant={tenant.id} waba_id={waba_id} created={created}")
    return tenant


def _hints_for(exc: Exception, permission_hint: str) -> List[str]:
    if not isinstance(exc, GraphAPIError):
        return []
    if exc.kind is GraphErrorKind.TOKEN_INVALID:
        return ["Access token invalid/expired; generate a fresh token."]
    if exc.kind in (GraphErrorKind.PERMISSION_DENIED, GraphErrorKind.INVALID_PARAMETER):
        return [permission_hint]
    if exc.kind is GraphErrorKind.NOT_REGISTERED:
        return ["Phone number is not registered for Cloud API messaging; register it in WhatsApp Manager > API Setup."]
    if exc.kind is GraphErrorKind.RATE_LIMITED:
        return ["Graph API rate limit reached; retry the verification later."]
    return []


async def verify_credentials(
    db: Session,
    graph: GraphClient,
    *,
    tenant_id: Optional[str] = None,
    waba_id: Optional[str] = None,
    phone_number_id: Optional[str] = None,
    access_token: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Diagnose a WABA / phone number / token combination without mutating state.

    Explicit values win over the stored tenant's. Each check records either
    its result or an ``*_error`` entry; one failing check never stops the rest.
    """
    token = clean_access_token(access_token)
    if tenant_id:
        tenant = get_tenant(db, tenant_id)
        if tenant is None:
            raise NotFoundError("Tenant not found")
        waba_id = waba_id or tenant.waba_id
        phone_number_id = phone_number_id or tenant.phone_number_id
        token = token or clean_access_token(tenant.access_token)

    if not waba_id or not phone_number_id or not token:
        raise BadRequestError(
            "Missing required fields",
            required=["wabaId", "phoneNumberId", "accessToken"],
            hint="Tenant is missing some fields; pass explicit values or update tenant." if tenant_id else None,
        )

    checks: Dict[str, Any] = {}
    hints: List[str] = []

    try:
        scopes = await graph.token_scopes(token)
        checks["scopes"] = scopes
        checks["missing_scopes"] = missing_scopes(scopes)
        if checks["missing_scopes"]:
            hints.append("Grant required scopes during OAuth or use a System User token with these permissions.")
    except (GraphAPIError, httpx.HTTPError) as exc:
        checks["scopes_error"] = error_detail(exc)
        hints.append("Token debug failed; token may be invalid or app credentials not set.")

    try:
        checks["waba"] = await graph.get_business_account(waba_id, token, fields="id,name")
    except (GraphAPIError, httpx.HTTPError) as exc:
        checks["waba_error"] = error_detail(exc)
        hints.extend(_hints_for(
            exc,
            "Missing Permission or not authorized for this WABA. "
            "Ensure app is added to WABA and user/system user has access.",
        ))

    try:
        checks["phone_number"] = await graph.get_phone_number(
            phone_number_id, token, fields="id,display_phone_number"
        )
    except (GraphAPIError, httpx.HTTPError) as exc:
        checks["phone_number_error"] = error_detail(exc)
        hints.extend(_hints_for(
            exc,
            "Phone number not accessible by this token/WABA. "
            "Confirm phone number belongs to the WABA and app has access.",
        ))

    try:
        numbers = await graph.list_phone_numbers(
            waba_id,
            token,
            fields="id,display_phone_number,status,name_status,verified_name,quality_rating",
        )
        checks["waba_phone_numbers"] = numbers
        match = next((n for n in numbers if str(n.get("id")) == str(phone_number_id)), None)
        phone_status = (match or {}).get("status")
        if phone_status and str(phone_status).upper() != "CONNECTED":
            hints.append(
                f"Phone number status is '{phone_status}'. Complete registration/verification "
                "in WhatsApp Manager > API Setup > Add phone number."
            )
    except (GraphAPIError, httpx.HTTPError) as exc:
        checks["waba_phone_numbers_error"] = error_detail(exc)

    # Same hint can come from several checks
    hints = list(dict.fromkeys(hints))

    # A failed debug_token call is reported but does not by itself fail the check
    success = not checks.get("missing_scopes") and "waba" in checks and "phone_number" in checks
    return {"success": success, "checks": checks, "hints": hints}
