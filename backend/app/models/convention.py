"""
Modèles SQLAlchemy pour les conventions de stage (PFMP) et leur journal d'audit.
"""

import enum
import uuid

from sqlalchemy import JSON, Boolean, Column, Date, DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from app.database import Base


class ConventionStatus(str, enum.Enum):
    """Statuts ordonnés du circuit de signature (le dernier est terminal)."""
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    SIGNED_PARENT = "SIGNED_PARENT"
    VALIDATED_TEACHER = "VALIDATED_TEACHER"
    SIGNED_COMPANY = "SIGNED_COMPANY"
    SIGNED_TUTOR = "SIGNED_TUTOR"
    VALIDATED_HEAD = "VALIDATED_HEAD"


class SignatureStep(str, enum.Enum):
    """Étapes de signature, une par signataire."""
    STUDENT = "student"
    PARENT = "parent"
    TEACHER = "teacher"
    COMPANY = "company"
    TUTOR = "tutor"
    HEAD = "head"


class AuditAction(str, enum.Enum):
    CREATED = "CREATED"
    OTP_SENT = "OTP_SENT"
    OTP_VALIDATED = "OTP_VALIDATED"
    SIGNED = "SIGNED"
    ATTESTATION_SIGNED = "ATTESTATION_SIGNED"
    REMINDER_SENT = "REMINDER_SENT"
    EMAIL_CORRECTED = "EMAIL_CORRECTED"


class Convention(Base):
    """Convention de stage et état de son circuit de signature."""
    __tablename__ = "conventions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    student_id = Column(String(255), nullable=True)

    # Élève
    eleve_nom = Column(String(100), nullable=False)
    eleve_prenom = Column(String(100), nullable=False)
    eleve_email = Column(String(255), nullable=False)
    eleve_classe = Column(String(50), nullable=True)
    est_mineur = Column(Boolean, nullable=False, default=False)

    # Représentant légal (élève mineur uniquement)
    rep_legal_nom = Column(String(100), nullable=True)
    rep_legal_prenom = Column(String(100), nullable=True)
    rep_legal_email = Column(String(255), nullable=True)

    # Établissement
    ecole_nom = Column(String(255), nullable=True)
    ecole_chef_nom = Column(String(200), nullable=True)
    ecole_chef_email = Column(String(255), nullable=False)
    prof_nom = Column(String(200), nullable=True)
    prof_email = Column(String(255), nullable=False)
    prof_suivi_email = Column(String(255), nullable=True)

    # Entreprise
    ent_nom = Column(String(255), nullable=False)
    ent_adresse = Column(String(255), nullable=True)
    ent_code_postal = Column(String(10), nullable=True)
    ent_ville = Column(String(100), nullable=True)
    ent_rep_nom = Column(String(200), nullable=True)
    ent_rep_email = Column(String(255), nullable=False)
    tuteur_nom = Column(String(200), nullable=True)
    tuteur_email = Column(String(255), nullable=False)

    stage_date_debut = Column(Date, nullable=False)
    stage_date_fin = Column(Date, nullable=False)

    status = Column(String(30), nullable=False, default=ConventionStatus.DRAFT.value)
    signatures = Column(JSON, nullable=False, default=dict)       # {step: {code, at, img}}
    invalid_emails = Column(JSON, nullable=False, default=list)   # [step, ...]
    certificate_hash = Column(String(12), nullable=True)
    last_reminder_at = Column(DateTime(timezone=True), nullable=True)

    # Attestation de fin de stage (indépendante du circuit principal)
    attestation_signed = Column(Boolean, default=False)
    attestation_date = Column(DateTime(timezone=True), nullable=True)
    attestation_total_jours = Column(Float, nullable=True)
    attestation_signature_code = Column(String(20), nullable=True)
    attestation_signature_img = Column(Text, nullable=True)
    attestation_signer_name = Column(String(200), nullable=True)
    attestation_signer_function = Column(String(200), nullable=True)
    attestation_hash = Column(String(12), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    # Mis à jour explicitement à chaque transition (sert de point de départ au délai de relance)
    updated_at = Column(DateTime(timezone=True), server_default=func.now())


class ConventionAuditLog(Base):
    """Entrée du journal d'audit : append-only, ordonnée par id."""
    __tablename__ = "convention_audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    convention_id = Column(
        UUID(as_uuid=True), ForeignKey("conventions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    date = Column(DateTime(timezone=True), nullable=False)
    action = Column(String(30), nullable=False)
    actor_email = Column(String(255), nullable=True)
    ip = Column(String(64), nullable=True)
    details = Column(Text, nullable=True)
