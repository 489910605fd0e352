from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.rental_models import AuditLog


def log_audit(db: Session, entity_type: str, entity_id: int, action: str, details: str | None = None) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            CreatedAt=datetime.now(),
        )
    )


def list_audit_entries(db: Session, entity_type: str, entity_id: int) -> list[AuditLog]:
    stmt = (
        select(AuditLog)
        .where(AuditLog.EntityType == entity_type)
        .where(AuditLog.EntityID == entity_id)
        .order_by(AuditLog.AuditID)
    )
    return list(db.execute(stmt).scalars().all())


def serialize_audit_entry(entry: AuditLog) -> dict:
    return {
        "auditID": entry.AuditID,
        "entityType": entry.EntityType,
        "entityID": entry.EntityID,
        "action": entry.Action,
        "details": entry.Details,
        "createdAt": entry.CreatedAt,
    }
