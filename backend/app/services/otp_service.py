"""
Service des codes à usage unique (OTP) : génération, envoi, vérification.

Flux de vérification :
  1. DELETE de tous les codes correspondant à (email, code[, purpose][, convention]) avec RETURNING
     → la suppression fait office de lecture, un seul appelant concurrent voit les lignes
  2. Aucune ligne → InvalidCode
  3. Toutes expirées → CodeExpired (elles sont supprimées quand même)
  4. Au moins une valide → succès ; les autres codes du même email pour le même usage
     sont purgés dans la même transaction. Si le code est lié à une convention,
     entrée OTP_VALIDATED dans le journal (non bloquante)
"""

import logging
import re
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.convention import AuditAction, Convention, ConventionAuditLog
from app.models.otp import OtpCode, OtpPurpose
from app.services import email_service
from app.services.audit_service import append_audit_log
from app.services.errors import CodeExpired, DeliveryFailure, InvalidCode, NotFound, ValidationError

logger = logging.getLogger(__name__)

OTP_CODE_PATTERN = re.compile(r"^\d{4}$")


def generate_otp_code() -> str:
    """Code à 4 chiffres tiré uniformément dans [1000, 9999]."""
    return str(1000 + secrets.randbelow(9000))


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def request_code(
    db: Session,
    email: str,
    purpose: OtpPurpose,
    convention_id: Optional[uuid.UUID] = None,
    ip: str = "unknown",
    now: Optional[datetime] = None,
) -> OtpCode:
    """
    Crée et envoie un code valable OTP_TTL_MINUTES.

    Échec d'envoi :
    - activation → simple avertissement, le code reste utilisable
    - signature / générique → DeliveryFailure remonte à l'appelant ; pour une
      signature, l'étape du destinataire est marquée dans invalid_emails
    """
    convention = None
    if purpose == OtpPurpose.SIGNATURE:
        if convention_id is None:
            raise ValidationError("ID Convention requis")
        convention = db.get(Convention, convention_id)
        if convention is None:
            raise NotFound(f"Convention {convention_id} introuvable.")

    now = now or datetime.now(timezone.utc)
    record = OtpCode(
        email=email,
        code=generate_otp_code(),
        purpose=purpose.value,
        convention_id=convention_id,
        expires_at=now + timedelta(minutes=settings.OTP_TTL_MINUTES),
        created_at=now,
    )
    db.add(record)
    db.commit()

    try:
        if purpose == OtpPurpose.ACTIVATION:
            email_service.send_activation_otp_email(email, record.code, settings.OTP_TTL_MINUTES)
        else:
            email_service.send_signature_otp_email(email, record.code, settings.OTP_TTL_MINUTES)
    except DeliveryFailure:
        if convention is not None:
            # Import local : convention_service dépend déjà de ce module
            from app.services import convention_service

            # Le circuit reste bloqué jusqu'à correction de l'adresse
            convention_service.mark_invalid_address(db, convention, email)
        if purpose != OtpPurpose.ACTIVATION:
            raise
        # Le code reste valable : un opérateur doit le transmettre manuellement
        logger.warning("Code d'activation généré mais non envoyé à %s : %s", email, record.code)
        return record

    if convention_id is not None:
        try:
            append_audit_log(
                db, convention_id, AuditAction.OTP_SENT, email, "Code envoyé par email", ip=ip, date=now
            )
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Erreur journal d'audit (OTP_SENT, convention %s) : %s", convention_id, exc)

    logger.info("Code OTP (%s) créé pour %s", purpose.value, email)
    return record


def verify_code(
    db: Session,
    email: str,
    code: str,
    purpose: Optional[OtpPurpose] = None,
    convention_id: Optional[uuid.UUID] = None,
    ip: str = "unknown",
    now: Optional[datetime] = None,
) -> Optional[ConventionAuditLog]:
    """
    Consomme le code. Retourne l'entrée d'audit OTP_VALIDATED quand le code est lié
    à une convention et que l'écriture du journal a réussi, None sinon.

    Avec `convention_id`, seul un code émis pour cette convention est accepté.
    Un succès purge aussi les autres codes du même email pour le même usage.
    Lève ValidationError, InvalidCode ou CodeExpired.
    """
    if not OTP_CODE_PATTERN.match(code or ""):
        raise ValidationError("Format invalide")

    now = now or datetime.now(timezone.utc)

    stmt = delete(OtpCode).where(OtpCode.email == email, OtpCode.code == code)
    if purpose is not None:
        stmt = stmt.where(OtpCode.purpose == purpose.value)
    if convention_id is not None:
        stmt = stmt.where(OtpCode.convention_id == convention_id)
    rows = db.execute(stmt.returning(OtpCode.expires_at, OtpCode.convention_id, OtpCode.purpose)).all()

    valid = [row for row in rows if _as_utc(row.expires_at) > now]
    if valid:
        purge = delete(OtpCode).where(
            OtpCode.email == email,
            OtpCode.purpose.in_(sorted({row.purpose for row in valid})),
        )
        if convention_id is not None:
            purge = purge.where(OtpCode.convention_id == convention_id)
        db.execute(purge)
    db.commit()

    if not rows:
        raise InvalidCode()

    if not valid:
        logger.info("Code OTP expiré pour %s (%d supprimé(s))", email, len(rows))
        raise CodeExpired()

    logger.info("Code OTP validé pour %s (%d supprimé(s))", email, len(rows))

    if convention_id is None:
        convention_id = next((row.convention_id for row in valid if row.convention_id), None)
    if convention_id is None:
        return None

    try:
        return append_audit_log(
            db,
            convention_id,
            AuditAction.OTP_VALIDATED,
            email,
            "Code OTP validé avec succès",
            ip=ip,
            date=now,
        )
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Erreur journal d'audit (OTP_VALIDATED, convention %s) : %s", convention_id, exc)
        return None


def purge_expired_codes(db: Session, now: Optional[datetime] = None) -> int:
    """Supprime les codes expirés jamais vérifiés. Retourne le nombre de lignes supprimées."""
    now = now or datetime.now(timezone.utc)
    result = db.execute(delete(OtpCode).where(OtpCode.expires_at <= now))
    db.commit()
    return result.rowcount
