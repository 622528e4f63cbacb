import logging
from typing import Any

from sqlalchemy.orm import Session

from app.db.models import AuditLog

logger = logging.getLogger(__name__)


def _reference(record: Any) -> tuple[str | None, int | None]:
    if record is None:
        return None, None
    return record.__tablename__, record.id


def record_audit(
    db: Session,
    action: str,
    actor: Any,
    target: Any = None,
    meta: dict[str, Any] | None = None,
    ip_address: str | None = None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction; the caller commits."""
    actor_type, actor_id = _reference(actor)
    target_type, target_id = _reference(target)
    entry = AuditLog(
        action=action,
        actor_type=actor_type,
        actor_id=actor_id,
        target_type=target_type,
        target_id=target_id,
        meta=meta or {},
        ip_address=ip_address,
    )
    db.add(entry)
    logger.info(
        "audit_recorded action=%s actor=%s:%s target=%s:%s",
        action,
        actor_type,
        actor_id,
        target_type,
        target_id,
    )
    return entry
