"""
Audit trail for data changes.

Every mutating route records WHO changed WHICH row and HOW, with before/after column
snapshots. Entries are added to the current session only; the calling route owns the
commit/rollback, so the audit row and the change land in the same transaction.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from flask import has_request_context, request
from flask_login import current_user

from .extensions import db
from .models import AuditLog

logger = logging.getLogger(__name__)

# Never copied into snapshots
_REDACTED_COLUMNS = {"password", "password_hash"}


def _safe_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def serialize_model(instance: Any) -> Dict[str, Optional[str]]:
    """
    Column snapshot of a model instance (relationships excluded).

    Values are stringified so Decimal and datetime survive json.dumps on SQLite and PostgreSQL.
    """
    data: Dict[str, Optional[str]] = {}
    for column in instance.__table__.columns:
        if column.name in _REDACTED_COLUMNS:
            continue
        data[column.name] = _safe_str(getattr(instance, column.name))
    return data


def _actor():
    if has_request_context() and current_user.is_authenticated:
        return current_user.id, current_user.username
    return None, None


def log_action(
    entity: Any,
    action: str,
    *,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Add an AuditLog row for entity (CREATE / UPDATE / DELETE / STATUS / SEND ...).

    The entity must already have an id, so call db.session.flush() first on inserts.
    """
    entity_id = getattr(entity, "id", None)
    if entity_id is None:
        raise ValueError("log_action entity must have an 'id' attribute (after flush).")

    user_id, username = _actor()
    entry = AuditLog(
        user_id=user_id,
        username_snapshot=username,
        entity_type=entity.__class__.__name__,
        entity_id=int(entity_id),
        action=str(action),
        before_data=json.dumps(before, ensure_ascii=False) if before else None,
        after_data=json.dumps(after, ensure_ascii=False) if after else None,
        ip_address=request.remote_addr if has_request_context() else None,
    )
    db.session.add(entry)

    logger.info(
        "%s %s #%s",
        action,
        entry.entity_type,
        entity_id,
        extra={"entity": entry.entity_type, "entity_id": entity_id, "action": action, "user": username},
    )
    return entry
