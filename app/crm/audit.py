from __future__ import annotations

import json
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.crm.models import AuditEvent, User


def _request_origin(request_id: str | None) -> tuple[str | None, str | None]:
    """(request id, client ip) for the current request; service calls from scripts have neither."""
    if not has_request_context():
        return request_id, None
    return request_id or getattr(g, "request_id", None), request.remote_addr


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append one row to the audit trail. The caller owns the commit, so the
    event lands (or rolls back) together with the change it describes.

    `metadata` is stored as sorted JSON; dates and Decimals are stringified.
    """
    rid, ip = _request_origin(request_id)
    ev = AuditEvent(
        request_id=rid,
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=ip,
    )
    s.add(ev)
    return ev
