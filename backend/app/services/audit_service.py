"""
Journal d'audit des conventions (table séparée, append-only).
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.convention import AuditAction, ConventionAuditLog

logger = logging.getLogger(__name__)


def append_audit_log(
    db: Session,
    convention_id: uuid.UUID,
    action: AuditAction,
    actor_email: Optional[str],
    details: str,
    ip: Optional[str] = None,
    date: Optional[datetime] = None,
    commit: bool = True,
) -> ConventionAuditLog:
    """
    Ajoute une entrée au journal.
    commit=False permet de l'inclure dans la transaction d'une transition de statut.
    """
    entry = ConventionAuditLog(
        convention_id=convention_id,
        date=date or datetime.now(timezone.utc),
        action=action.value,
        actor_email=actor_email,
        ip=ip,
        details=details,
    )
    db.add(entry)
    if commit:
        db.commit()
    logger.info("Audit %s sur la convention %s (%s)", action.value, convention_id, actor_email)
    return entry


def list_audit_logs(db: Session, convention_id: uuid.UUID) -> list[ConventionAuditLog]:
    """Entrées dans l'ordre d'insertion."""
    return db.execute(
        select(ConventionAuditLog)
        .where(ConventionAuditLog.convention_id == convention_id)
        .order_by(ConventionAuditLog.id)
    ).scalars().all()
