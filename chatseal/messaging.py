"""
Outbound send path: preflight, Graph send call, persistence, notification.
"""

import logging
from typing import Any, Dict, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chatseal.config import settings
from chatseal.errors import BadRequestError, ConflictError, NotFoundError, UnauthorizedError, UpstreamError
from chatseal.graph import GraphAPIError, GraphClient, GraphErrorKind, error_detail
from chatseal.metrics import record_outbound_outcome
from chatseal.notifier import NotificationHub, publish_new_message
from chatseal.storage import create_message, get_tenant
from chatseal.utils import utcnow

logger = logging.getLogger(__name__)

CONNECTED_STATUS = "CONNECTED"


async def preflight_sender(graph: GraphClient, tenant) -> Optional[Dict[str, Any]]:
    """
    Check that the tenant's sender number is registered before sending.

    Raises:
        ConflictError: the number reports a status other than CONNECTED
        UnauthorizedError: the stored token is invalid or expired

    Any other failure is logged and ignored: the send call itself will
    report the definitive error.
    """
    try:
        info = await graph.get_phone_number(
            tenant.phone_number_id,
            tenant.access_token,
            timeout=settings.PREFLIGHT_TIMEOUT_SECONDS,
        )
    except GraphAPIError as exc:
        if exc.kind is GraphErrorKind.TOKEN_INVALID:
            record_outbound_outcome("invalid_token")
            raise UnauthorizedError("Access token invalid or expired", details=exc.detail)
        logger.warning(f"Preflight failed for tenant={tenant.id} ({exc.kind.value}), sending anyway")
        return None
    except httpx.HTTPError as exc:
        logger.warning(f"Preflight unavailable for tenant={tenant.id}: {exc!r}, sending anyway")
        return None

    phone_status = info.get("status")
    if phone_status and str(phone_status).upper() != CONNECTED_STATUS:
        record_outbound_outcome("not_connected")
        raise ConflictError(
            f"Sender phone status is '{phone_status}'. "
            "Complete registration in WhatsApp Manager > API Setup.",
            details=info,
        )
    return info


async def send_text_message(
    db: Session,
    graph: GraphClient,
    hub: NotificationHub,
    *,
    tenant_id: Optional[str],
    to: Optional[str],
    text: Optional[str],
) -> Dict[str, Any]:
    """
    Send a text message on behalf of a tenant and record it.

    Returns:
        The Graph API send response.
    """
    missing = [name for name, value in (("tenantId", tenant_id), ("to", to), ("message", text)) if not value]
    if missing:
        raise BadRequestError("tenantId, to, and message are required", missing=missing)

    tenant = get_tenant(db, tenant_id)
    if tenant is None:
        raise NotFoundError("Tenant not found")

    await preflight_sender(graph, tenant)

    try:
        data = await graph.send_text_message(
            tenant.phone_number_id,
            tenant.access_token,
            to=to,
            body=text,
            timeout=settings.SEND_TIMEOUT_SECONDS,
        )
    except (GraphAPIError, httpx.HTTPError) as exc:
        record_outbound_outcome("failed")
        logger.error(f"Send failed for tenant={tenant.id}: {error_detail(exc)}")
        raise UpstreamError(error_detail(exc))

    sent = data.get("messages")
    wa_message_id = None
    if isinstance(sent, list) and sent and isinstance(sent[0], dict):
        wa_message_id = sent[0].get("id")

    try:
        row, is_duplicate = create_message(
            db,
            tenant_id=tenant.id,
            direction="outbound",
            from_address=tenant.phone_number_id,
            to_address=to,
            message=text,
            status="sent",
            timestamp=utcnow(),
            wa_message_id=wa_message_id,
            wa_type="text",
        )
    except SQLAlchemyError as exc:
        record_outbound_outcome("failed")
        raise UpstreamError(f"Message sent but could not be stored: {exc}")

    record_outbound_outcome("sent")
    logger.info(f"Outbound message sent: tenant={tenant.id} wa_message_id={wa_message_id}")
    if not is_duplicate:
        publish_new_message(hub, row)
    return data
