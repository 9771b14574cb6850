from typing import Any

from sqlalchemy.orm import Session

from retail_erp.core.id_utils import new_id
from retail_erp.models.audit_log import AuditLog


def log_audit_event(
    db: Session,
    *,
    action: str,
    target_type: str,
    target_id: str | None = None,
    actor: str | None = None,
    metadata_json: dict[str, Any] | None = None,
) -> AuditLog:
    event = AuditLog(
        id=new_id(),
        actor=actor,
        action=action,
        target_type=target_type,
        target_id=target_id,
        metadata_json=metadata_json,
    )
    db.add(event)
    return event
