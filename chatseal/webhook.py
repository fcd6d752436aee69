"""
WhatsApp Cloud API webhook ingestion.

A delivery carries ``entry[*].changes[*].value`` objects. Each value may hold
``statuses`` (delivery callbacks for messages we sent) and/or ``messages``
(inbound messages for one of our phone numbers). Everything is processed in
payload order; shapes that do not match are skipped rather than raising.
"""

import logging
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy.orm import Session

from chatseal.metrics import record_webhook_outcome
from chatseal.notifier import NotificationHub, publish_new_message
from chatseal.storage import (
    apply_status_update,
    create_message,
    get_tenant_by_phone_number_id,
    message_exists,
)
from chatseal.utils import datetime_from_unix_seconds

logger = logging.getLogger(__name__)

CAPTIONED_MEDIA_TYPES = ("image", "video", "document")
PLAIN_TAG_TYPES = ("audio", "sticker", "contacts")


class WebhookResult:
    """Counters describing what one delivery did."""

    def __init__(self):
        self.created = 0
        self.duplicates = 0
        self.ignored = 0
        self.statuses_updated = 0
        self.statuses_unmatched = 0
        self.first_id: Optional[str] = None

    def note_id(self, wa_id: Optional[str]) -> None:
        if self.first_id is None and wa_id:
            self.first_id = wa_id

    @property
    def outcome(self) -> str:
        if self.created or self.statuses_updated:
            return "processed"
        if self.duplicates:
            return "duplicate"
        return "ignored"

    @property
    def only_duplicates(self) -> bool:
        return self.duplicates > 0 and self.created == 0


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _as_text(value: Any) -> Optional[str]:
    # Ids and types arrive as strings; anything non-scalar is treated as absent
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    return str(value) or None


def iter_change_values(payload: Any) -> Iterator[Dict[str, Any]]:
    for entry in _as_list(_as_dict(payload).get("entry")):
        for change in _as_list(_as_dict(entry).get("changes")):
            value = _as_dict(change).get("value")
            if isinstance(value, dict):
                yield value


def normalize_message_body(message: Dict[str, Any]) -> str:
    """
    Render an inbound message as display text.

    Text passes through; other types become a bracketed tag, with the
    caption, coordinates or selected reply appended where the payload has them.
    """
    msg_type = _as_text(message.get("type"))

    if msg_type == "text":
        return str(_as_dict(message.get("text")).get("body") or "")

    if msg_type in CAPTIONED_MEDIA_TYPES:
        caption = _as_dict(message.get(msg_type)).get("caption")
        return f"[{msg_type}] {caption}" if caption else f"[{msg_type}]"

    if msg_type in PLAIN_TAG_TYPES:
        return f"[{msg_type}]"

    if msg_type == "location":
        location = _as_dict(message.get("location"))
        return f"[location] lat={location.get('latitude')}, lng={location.get('longitude')}"

    if msg_type == "interactive":
        interactive = _as_dict(message.get("interactive"))
        button = interactive.get("button_reply")
        if isinstance(button, dict):
            return f"[button] {button.get('title')} ({button.get('id')})"
        selection = interactive.get("list_reply")
        if isinstance(selection, dict):
            return f"[list] {selection.get('title')} ({selection.get('id')})"
        return "[interactive]"

    if msg_type == "button":
        # Quick-reply tap on a template message
        return f"[button] {_as_dict(message.get('button')).get('text') or ''}".rstrip()

    if msg_type == "reaction":
        return f"[reaction] {_as_dict(message.get('reaction')).get('emoji') or ''}"

    return f"[{msg_type or 'unknown'}]"


def _profile_names(contacts: List[Any]) -> Dict[str, str]:
    names: Dict[str, str] = {}
    for contact in contacts:
        contact = _as_dict(contact)
        name = _as_text(_as_dict(contact.get("profile")).get("name"))
        if not name:
            continue
        names.setdefault("", name)
        wa_id = _as_text(contact.get("wa_id"))
        if wa_id:
            names[wa_id] = name
    return names


def apply_statuses(db: Session, statuses: List[Any], result: WebhookResult) -> None:
    for entry in statuses:
        entry = _as_dict(entry)
        wa_message_id = _as_text(entry.get("id"))
        new_status = _as_text(entry.get("status"))
        if not wa_message_id or not new_status:
            logger.debug("Skipping status entry without id or status")
            continue
        result.note_id(wa_message_id)

        errors = _as_list(entry.get("errors"))
        conversation = entry.get("conversation")
        pricing = entry.get("pricing")
        updated = apply_status_update(
            db,
            wa_message_id=wa_message_id,
            status=new_status,
            timestamp=datetime_from_unix_seconds(entry.get("timestamp")),
            conversation=conversation if isinstance(conversation, dict) else None,
            pricing=pricing if isinstance(pricing, dict) else None,
            error=errors[0] if errors and isinstance(errors[0], dict) else None,
        )
        if updated:
            result.statuses_updated += 1
            record_webhook_outcome("status", "updated")
        else:
            # The message may not be ours, or the callback beat the send-path write
            result.statuses_unmatched += 1
            record_webhook_outcome("status", "unmatched")


def ingest_messages(
    db: Session,
    hub: NotificationHub,
    value: Dict[str, Any],
    messages: List[Any],
    result: WebhookResult,
) -> None:
    phone_number_id = _as_text(_as_dict(value.get("metadata")).get("phone_number_id"))
    tenant = get_tenant_by_phone_number_id(db, phone_number_id)
    if tenant is None:
        logger.info(f"Ignoring {len(messages)} message(s) for unknown phone_number_id={phone_number_id}")
        result.ignored += len(messages)
        record_webhook_outcome("message", "ignored")
        return

    names = _profile_names(_as_list(value.get("contacts")))

    for message in messages:
        message = _as_dict(message)
        wa_message_id = _as_text(message.get("id"))
        if not wa_message_id:
            logger.debug("Skipping inbound message without id")
            result.ignored += 1
            continue
        result.note_id(wa_message_id)

        if message_exists(db, wa_message_id):
            logger.info(f"Duplicate inbound message skipped: {wa_message_id}")
            result.duplicates += 1
            record_webhook_outcome("message", "duplicate")
            continue

        sender = _as_text(message.get("from"))
        row, is_duplicate = create_message(
            db,
            tenant_id=tenant.id,
            direction="inbound",
            from_address=sender,
            to_address=tenant.phone_number_id,
            message=normalize_message_body(message),
            status="received",
            timestamp=datetime_from_unix_seconds(message.get("timestamp")),
            wa_message_id=wa_message_id,
            wa_type=_as_text(message.get("type")),
            profile_name=names.get(sender or "") or names.get(""),
        )
        if is_duplicate:
            result.duplicates += 1
            record_webhook_outcome("message", "duplicate")
            continue

        result.created += 1
        record_webhook_outcome("message", "created")
        publish_new_message(hub, row)


def process_webhook_payload(db: Session, hub: NotificationHub, payload: Any) -> WebhookResult:
    """
    Apply one verified webhook delivery to the message store.

    Returns:
        WebhookResult with per-outcome counters.
    """
    result = WebhookResult()
    for value in iter_change_values(payload):
        statuses = _as_list(value.get("statuses"))
        if statuses:
            apply_statuses(db, statuses, result)

        messages = _as_list(value.get("messages"))
        if messages:
            ingest_messages(db, hub, value, messages, result)

    logger.info(
        f"Webhook processed: created={result.created} duplicates={result.duplicates} "
        f"ignored={result.ignored} statuses_updated={result.statuses_updated} "
        f"statuses_unmatched={result.statuses_unmatched}"
    )
    return result
