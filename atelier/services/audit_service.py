from __future__ import annotations

from sqlalchemy.orm import Session

from atelier.models import AuditLog


def log_audit(
    db: Session,
    *,
    shop_id: int | None,
    action: str,
    ip: str | None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            shop_id=shop_id,
            action=action,
            ip=ip,
            meta=metadata or {},
        )
    )
