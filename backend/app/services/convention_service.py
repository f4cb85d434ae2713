"""
Circuit de signature des conventions de stage.

Ordre des statuts :
  DRAFT → SUBMITTED → [SIGNED_PARENT, élève mineur uniquement] → VALIDATED_TEACHER
        → SIGNED_COMPANY → SIGNED_TUTOR → VALIDATED_HEAD

Une signature fait avancer d'exactement un statut. Pour un élève majeur l'étape
"parent" est affichée comme terminée sans transition réelle : l'enseignant signe
directement depuis SUBMITTED.

Signature d'une étape :
  1. L'étape doit être "current" pour la convention
  2. Vérification du code OTP du signataire, émis pour cette convention (échec → aucune écriture)
  3. UPDATE conditionné sur le statut lu → StaleState si un autre appel est passé avant
  4. signatures[step] = {code, at, img}, nouveau statut, email de l'étape retiré
     d'invalid_emails, empreinte du certificat, entrée SIGNED dans le journal
  5. Notification du signataire suivant ; en cas d'échec son étape est marquée
     dans invalid_emails
"""

import enum
import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from app.config import settings
from app.models.convention import AuditAction, Convention, ConventionStatus, SignatureStep
from app.models.mission_order import MissionOrder
from app.models.otp import OtpPurpose
from app.schemas.convention import ConventionCreate, ConventionTimeline, TimelineStep
from app.services import email_service, mission_order_service, otp_service
from app.services.audit_service import append_audit_log
from app.services.errors import DeliveryFailure, NotFound, ReminderCooldown, StaleState, ValidationError
from app.services.signature_service import generate_signature_code
from app.services.verification_service import (
    DocumentKind,
    VerificationLink,
    generate_qr_image,
    generate_verification_url,
)

logger = logging.getLogger(__name__)

SIGNATURE_CODE_PATTERN = re.compile(r"^[A-Z]{8}-\d{5}$")
HASH_DISPLAY_PATTERN = re.compile(r"^[0-9A-F]{12}$")


class StepStatus(str, enum.Enum):
    COMPLETED = "completed"
    CURRENT = "current"
    PENDING = "pending"


_RANK = {status: index for index, status in enumerate(ConventionStatus)}

# Statut atteint après la signature de chaque étape
STEP_TARGET_STATUS = {
    SignatureStep.STUDENT: ConventionStatus.SUBMITTED,
    SignatureStep.PARENT: ConventionStatus.SIGNED_PARENT,
    SignatureStep.TEACHER: ConventionStatus.VALIDATED_TEACHER,
    SignatureStep.COMPANY: ConventionStatus.SIGNED_COMPANY,
    SignatureStep.TUTOR: ConventionStatus.SIGNED_TUTOR,
    SignatureStep.HEAD: ConventionStatus.VALIDATED_HEAD,
}

STEP_EMAIL_FIELD = {
    SignatureStep.STUDENT: "eleve_email",
    SignatureStep.PARENT: "rep_legal_email",
    SignatureStep.TEACHER: "prof_email",
    SignatureStep.COMPANY: "ent_rep_email",
    SignatureStep.TUTOR: "tuteur_email",
    SignatureStep.HEAD: "ecole_chef_email",
}

STEP_LABELS = {
    SignatureStep.STUDENT: "Élève",
    SignatureStep.PARENT: "Représentant Légal",
    SignatureStep.TEACHER: "Enseignant Référent",
    SignatureStep.COMPANY: "Chef d'Entreprise",
    SignatureStep.TUTOR: "Tuteur",
    SignatureStep.HEAD: "Chef d'Établissement",
}


# ----------------------------------------------------------------
# Fonctions pures
# ----------------------------------------------------------------

def _reached(status: ConventionStatus, threshold: ConventionStatus) -> bool:
    return _RANK[status] >= _RANK[threshold]


def get_step_status(step: SignatureStep, status: ConventionStatus, est_mineur: bool) -> StepStatus:
    """Statut affiché d'une étape, recalculé depuis (status, est_mineur)."""
    status = ConventionStatus(status)

    if step == SignatureStep.STUDENT:
        return StepStatus.CURRENT if status == ConventionStatus.DRAFT else StepStatus.COMPLETED

    if step == SignatureStep.PARENT:
        if not est_mineur:
            return StepStatus.COMPLETED
        if status == ConventionStatus.SUBMITTED:
            return StepStatus.CURRENT
        return StepStatus.COMPLETED if _reached(status, ConventionStatus.SIGNED_PARENT) else StepStatus.PENDING

    if step == SignatureStep.TEACHER:
        ready = ConventionStatus.SIGNED_PARENT if est_mineur else ConventionStatus.SUBMITTED
        if status == ready:
            return StepStatus.CURRENT
        return StepStatus.COMPLETED if _reached(status, ConventionStatus.VALIDATED_TEACHER) else StepStatus.PENDING

    if step == SignatureStep.COMPANY:
        if status == ConventionStatus.VALIDATED_TEACHER:
            return StepStatus.CURRENT
        return StepStatus.COMPLETED if _reached(status, ConventionStatus.SIGNED_COMPANY) else StepStatus.PENDING

    if step == SignatureStep.TUTOR:
        if status == ConventionStatus.SIGNED_COMPANY:
            return StepStatus.CURRENT
        return StepStatus.COMPLETED if _reached(status, ConventionStatus.SIGNED_TUTOR) else StepStatus.PENDING

    if step == SignatureStep.HEAD:
        if status == ConventionStatus.SIGNED_TUTOR:
            return StepStatus.CURRENT
        return StepStatus.COMPLETED if status == ConventionStatus.VALIDATED_HEAD else StepStatus.PENDING

    raise ValueError(f"Étape inconnue : {step}")


def current_step(status: ConventionStatus, est_mineur: bool) -> Optional[SignatureStep]:
    """Étape en attente de signature, None quand la convention est entièrement validée."""
    for step in SignatureStep:
        if get_step_status(step, status, est_mineur) == StepStatus.CURRENT:
            return step
    return None


def expected_status_for(step: SignatureStep, est_mineur: bool) -> Optional[ConventionStatus]:
    """Statut dans lequel l'étape est signable (None : étape parent d'un élève majeur)."""
    for status in ConventionStatus:
        if get_step_status(step, status, est_mineur) == StepStatus.CURRENT:
            return status
    return None


def next_status(status: ConventionStatus, est_mineur: bool) -> Optional[ConventionStatus]:
    step = current_step(status, est_mineur)
    return STEP_TARGET_STATUS[step] if step else None


def can_send_reminder(
    updated_at: Optional[datetime],
    last_reminder_at: Optional[datetime],
    now: datetime,
    initial_delay: Optional[timedelta] = None,
    cooldown: Optional[timedelta] = None,
) -> bool:
    """Relance autorisée si le délai initial est dépassé ET si la dernière relance date d'au moins `cooldown`."""
    initial_delay = initial_delay if initial_delay is not None else timedelta(seconds=settings.REMINDER_INITIAL_DELAY_SECONDS)
    cooldown = cooldown if cooldown is not None else timedelta(hours=settings.REMINDER_COOLDOWN_HOURS)

    if updated_at is None or now - _as_utc(updated_at) <= initial_delay:
        return False
    return last_reminder_at is None or now - _as_utc(last_reminder_at) >= cooldown


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def email_for_step(convention: Convention, step: SignatureStep) -> Optional[str]:
    return getattr(convention, STEP_EMAIL_FIELD[step])


def party_name_for_step(convention: Convention, step: SignatureStep) -> Optional[str]:
    if step == SignatureStep.STUDENT:
        return f"{convention.eleve_prenom} {convention.eleve_nom}"
    if step == SignatureStep.PARENT:
        if not convention.rep_legal_nom:
            return None
        return f"{convention.rep_legal_prenom or ''} {convention.rep_legal_nom}".strip()
    return {
        SignatureStep.TEACHER: convention.prof_nom,
        SignatureStep.COMPANY: convention.ent_rep_nom,
        SignatureStep.TUTOR: convention.tuteur_nom,
        SignatureStep.HEAD: convention.ecole_chef_nom,
    }[step]


def get_timeline(convention: Convention, now: Optional[datetime] = None) -> ConventionTimeline:
    now = now or datetime.now(timezone.utc)
    status = ConventionStatus(convention.status)
    invalid = set(convention.invalid_emails or [])
    remind_ok = can_send_reminder(convention.updated_at, convention.last_reminder_at, now)

    steps = []
    for step in SignatureStep:
        step_status = get_step_status(step, status, convention.est_mineur)
        is_invalid = step.value in invalid
        steps.append(TimelineStep(
            step=step,
            label=STEP_LABELS[step],
            status=step_status.value,
            party_name=party_name_for_step(convention, step),
            email=email_for_step(convention, step),
            invalid_email=is_invalid,
            # L'élève n'est jamais relancé ; une adresse invalide se corrige d'abord
            can_remind=(
                step_status == StepStatus.CURRENT
                and step != SignatureStep.STUDENT
                and not is_invalid
                and remind_ok
            ),
        ))

    return ConventionTimeline(
        convention_id=convention.id,
        status=status,
        est_mineur=convention.est_mineur,
        steps=steps,
    )


# ----------------------------------------------------------------
# Lecture / création
# ----------------------------------------------------------------

def get_convention(db: Session, convention_id: uuid.UUID) -> Convention:
    convention = db.get(Convention, convention_id)
    if convention is None:
        raise NotFound(f"Convention {convention_id} introuvable.")
    return convention


def create_convention(
    db: Session,
    data: ConventionCreate,
    actor_email: Optional[str] = None,
    ip: Optional[str] = None,
) -> Convention:
    """Crée la convention en DRAFT et ouvre son journal d'audit."""
    now = datetime.now(timezone.utc)
    convention = Convention(
        **data.model_dump(),
        status=ConventionStatus.DRAFT.value,
        signatures={},
        invalid_emails=[],
        created_at=now,
        updated_at=now,
    )
    db.add(convention)
    db.flush()  # Obtenir l'ID avant l'entrée d'audit

    append_audit_log(
        db, convention.id, AuditAction.CREATED, actor_email or data.eleve_email,
        "Création de la convention", ip=ip, date=now, commit=False,
    )
    db.commit()
    db.refresh(convention)

    logger.info("Convention créée : %s (%s %s)", convention.id, data.eleve_prenom, data.eleve_nom)
    return convention


def update_minor_flag(db: Session, convention_id: uuid.UUID, est_mineur: bool) -> Convention:
    """
    Le statut mineur/majeur décide de l'étape parent : il n'est modifiable qu'en DRAFT.
    """
    convention = get_convention(db, convention_id)
    if convention.est_mineur == est_mineur:
        return convention
    if convention.status != ConventionStatus.DRAFT.value:
        raise ValueError(
            f"Impossible de modifier le statut mineur/majeur : la convention est en statut {convention.status}."
        )
    if est_mineur and not convention.rep_legal_email:
        raise ValidationError("L'email du représentant légal est obligatoire pour un élève mineur.")

    convention.est_mineur = est_mineur
    convention.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(convention)
    return convention


# ----------------------------------------------------------------
# Signature
# ----------------------------------------------------------------

def sign_step(
    db: Session,
    convention_id: uuid.UUID,
    step: SignatureStep,
    otp_code: str,
    actor_ip: str = "unknown",
    signature_img: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Convention:
    """
    Enregistre la signature d'une étape et avance le statut d'un cran.

    Lève NotFound, ValueError (étape non signable), ValidationError / InvalidCode /
    CodeExpired (OTP) ou StaleState (modification concurrente).
    """
    convention = get_convention(db, convention_id)
    expected = ConventionStatus(convention.status)

    if get_step_status(step, expected, convention.est_mineur) != StepStatus.CURRENT:
        raise ValueError(
            f"La signature n'a pas pu être prise en compte. Statut : {expected.value}, étape : {step.value}."
        )

    signer_email = email_for_step(convention, step)
    if not signer_email:
        raise ValidationError(f"Aucune adresse email pour l'étape {step.value}.")

    # Seul un code émis pour cette convention est accepté ; aucune écriture avant validation
    otp_service.verify_code(
        db, signer_email, otp_code, OtpPurpose.SIGNATURE, convention_id=convention.id, ip=actor_ip, now=now
    )

    now = now or datetime.now(timezone.utc)
    signatures = dict(convention.signatures or {})
    signatures[step.value] = {"code": generate_signature_code(), "at": now.isoformat()}
    if signature_img:
        signatures[step.value]["img"] = signature_img

    new_status = STEP_TARGET_STATUS[step]
    invalid_emails = [s for s in (convention.invalid_emails or []) if s != step.value]
    link = generate_verification_url(convention, DocumentKind.CONVENTION, signatures=signatures)

    result = db.execute(
        update(Convention)
        .where(Convention.id == convention.id, Convention.status == expected.value)
        .values(
            status=new_status.value,
            signatures=signatures,
            invalid_emails=invalid_emails,
            certificate_hash=link.hash_display,
            updated_at=now,
        )
    )
    if result.rowcount != 1:
        db.rollback()
        logger.warning("Signature concurrente refusée : convention %s, étape %s", convention.id, step.value)
        raise StaleState("La convention a été modifiée entre-temps. Rechargez-la avant de signer.")

    append_audit_log(
        db, convention.id, AuditAction.SIGNED, signer_email,
        f"Signature par {step.value}", ip=actor_ip, date=now, commit=False,
    )
    db.commit()
    db.refresh(convention)

    logger.info("Convention %s : %s → %s (%s)", convention.id, expected.value, new_status.value, step.value)
    notify_current_party(db, convention)
    return convention


def notify_current_party(db: Session, convention: Convention) -> Optional[SignatureStep]:
    """
    Prévient le signataire attendu. Un échec d'envoi bloque le circuit :
    l'étape est marquée dans invalid_emails jusqu'à correction de l'adresse.
    """
    step = current_step(ConventionStatus(convention.status), convention.est_mineur)
    if step is None or step == SignatureStep.STUDENT:
        return None

    recipient = email_for_step(convention, step)
    if not recipient:
        mark_invalid_email(db, convention, step)
        return step

    try:
        email_service.send_signature_request_email(
            recipient,
            STEP_LABELS[step],
            f"{convention.eleve_prenom} {convention.eleve_nom}",
            convention.ecole_nom,
        )
    except DeliveryFailure:
        mark_invalid_email(db, convention, step)
    return step


def mark_invalid_email(db: Session, convention: Convention, step: SignatureStep) -> Convention:
    """Ajoute l'étape à invalid_emails (sans toucher au statut)."""
    invalid = list(convention.invalid_emails or [])
    if step.value not in invalid:
        invalid.append(step.value)
        convention.invalid_emails = invalid
        db.commit()
        logger.warning("Adresse invalide pour l'étape %s de la convention %s", step.value, convention.id)
    return convention


def mark_invalid_address(db: Session, convention: Convention, email: str) -> Optional[SignatureStep]:
    """
    Marque l'étape dont l'adresse vient d'être refusée par le serveur SMTP.
    L'étape en cours est prioritaire, sinon la première étape non signée qui utilise cette adresse.
    """
    status = ConventionStatus(convention.status)
    candidates = [current_step(status, convention.est_mineur)] + [
        s for s in SignatureStep
        if get_step_status(s, status, convention.est_mineur) == StepStatus.PENDING
    ]
    for step in candidates:
        if step is not None and email_for_step(convention, step) == email:
            mark_invalid_email(db, convention, step)
            return step
    logger.warning("Adresse %s refusée sans étape correspondante (convention %s)", email, convention.id)
    return None


def mark_invalid_email_by_id(db: Session, convention_id: uuid.UUID, step: SignatureStep) -> Convention:
    return mark_invalid_email(db, get_convention(db, convention_id), step)


def update_email(
    db: Session,
    convention_id: uuid.UUID,
    step: SignatureStep,
    new_email: str,
    actor_email: Optional[str] = None,
    ip: Optional[str] = None,
) -> Convention:
    """
    Corrige l'adresse d'un signataire et lève le blocage invalid_emails.
    Le statut n'est jamais modifié ; si l'étape est en cours, la demande de signature est renvoyée.
    """
    convention = get_convention(db, convention_id)
    if step == SignatureStep.PARENT and not convention.est_mineur:
        raise ValueError("Pas de représentant légal pour un élève majeur.")

    old_email = email_for_step(convention, step)
    now = datetime.now(timezone.utc)
    setattr(convention, STEP_EMAIL_FIELD[step], new_email)
    convention.invalid_emails = [s for s in (convention.invalid_emails or []) if s != step.value]
    convention.updated_at = now

    append_audit_log(
        db, convention.id, AuditAction.EMAIL_CORRECTED, actor_email,
        f"Email {step.value} corrigé : {old_email} → {new_email}", ip=ip, date=now, commit=False,
    )
    db.commit()
    db.refresh(convention)

    if current_step(ConventionStatus(convention.status), convention.est_mineur) == step:
        notify_current_party(db, convention)
    return convention


# ----------------------------------------------------------------
# Relances
# ----------------------------------------------------------------

def send_reminder(
    db: Session,
    convention_id: uuid.UUID,
    actor_email: Optional[str] = None,
    ip: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """
    Relance le signataire attendu. Retourne l'adresse relancée, ou None si personne
    n'est à relancer (brouillon ou convention terminée).
    Lève ReminderCooldown si le délai initial ou le délai de 48 h n'est pas écoulé.
    """
    convention = get_convention(db, convention_id)
    now = now or datetime.now(timezone.utc)

    step = current_step(ConventionStatus(convention.status), convention.est_mineur)
    if step is None or step == SignatureStep.STUDENT:
        return None
    if step.value in (convention.invalid_emails or []):
        raise ValueError("L'adresse email de ce signataire est invalide : corrigez-la avant de relancer.")

    if not can_send_reminder(convention.updated_at, convention.last_reminder_at, now):
        logger.info("Relance refusée (délai) pour la convention %s", convention.id)
        raise ReminderCooldown(
            f"Veuillez attendre {settings.REMINDER_COOLDOWN_HOURS}h avant de relancer à nouveau."
        )

    recipient = email_for_step(convention, step)
    if not recipient:
        return None

    try:
        email_service.send_reminder_email(
            recipient,
            f"{convention.eleve_prenom} {convention.eleve_nom}",
            convention.ecole_nom,
            convention.eleve_classe,
            convention.stage_date_debut,
            convention.stage_date_fin,
            convention.tuteur_nom,
            convention.prof_nom,
        )
    except DeliveryFailure:
        mark_invalid_email(db, convention, step)
        raise

    # updated_at n'est pas modifié : il date la dernière transition
    convention.last_reminder_at = now
    append_audit_log(
        db, convention.id, AuditAction.REMINDER_SENT, actor_email,
        f"Relance envoyée à {recipient} ({STEP_LABELS[step]})", ip=ip, date=now, commit=False,
    )
    db.commit()

    logger.info("Relance envoyée à %s pour la convention %s", recipient, convention.id)
    return recipient


# ----------------------------------------------------------------
# Attestation, liens de vérification, recherche par code
# ----------------------------------------------------------------

def validate_attestation(
    db: Session,
    convention_id: uuid.UUID,
    total_days: float,
    signer_name: str,
    signer_function: str,
    signature_img: Optional[str] = None,
    ip: Optional[str] = None,
) -> Convention:
    """
    Signe l'attestation de fin de stage (indépendante du circuit principal).
    Réservée aux conventions VALIDATED_HEAD, une seule fois.
    """
    convention = get_convention(db, convention_id)
    if convention.status != ConventionStatus.VALIDATED_HEAD.value:
        raise ValueError("L'attestation ne peut être signée qu'une fois la convention entièrement validée.")
    if convention.attestation_signed:
        raise ValueError("L'attestation de stage est déjà signée.")

    now = datetime.now(timezone.utc)
    convention.attestation_signed = True
    convention.attestation_date = now
    convention.attestation_total_jours = total_days
    convention.attestation_signature_code = generate_signature_code()
    convention.attestation_signature_img = signature_img
    convention.attestation_signer_name = signer_name
    convention.attestation_signer_function = signer_function

    link = generate_verification_url(convention, DocumentKind.ATTESTATION)
    convention.attestation_hash = link.hash_display

    append_audit_log(
        db, convention.id, AuditAction.ATTESTATION_SIGNED, convention.ent_rep_email,
        f"Signature de l'attestation par {signer_name} ({signer_function})", ip=ip, date=now, commit=False,
    )
    db.commit()
    db.refresh(convention)
    logger.info("Attestation signée pour la convention %s", convention.id)

    try:
        email_service.send_attestation_signed_email(
            convention.prof_email,
            f"{convention.eleve_prenom} {convention.eleve_nom}",
            link.url,
            generate_qr_image(link.url),
        )
    except DeliveryFailure:
        logger.warning("Attestation %s signée mais enseignant non notifié", convention.id)

    return convention


def get_verification_link(db: Session, convention_id: uuid.UUID, kind: DocumentKind) -> VerificationLink:
    convention = get_convention(db, convention_id)
    if kind == DocumentKind.ATTESTATION and not convention.attestation_signed:
        raise ValueError("L'attestation de stage n'est pas encore signée.")
    return generate_verification_url(convention, kind)


def find_by_signature_code(db: Session, code: str) -> Optional[Tuple[Convention, str]]:
    """
    Retrouve la convention à laquelle appartient un code saisi manuellement.
    Codes acceptés : code de signature (ABCDEFGH-12345) ou empreinte affichée (12 hex).
    Retourne (convention, origine) où origine est une étape, "attestation",
    "certificate_hash" ou "attestation_hash".
    """
    code = (code or "").strip().upper()

    if SIGNATURE_CODE_PATTERN.match(code):
        conditions = [Convention.signatures[step.value]["code"].as_string() == code for step in SignatureStep]
        conditions.append(Convention.attestation_signature_code == code)
        convention = db.execute(select(Convention).where(or_(*conditions))).scalars().first()
        if convention is None:
            return None
        if convention.attestation_signature_code == code:
            return convention, "attestation"
        for step in SignatureStep:
            entry = (convention.signatures or {}).get(step.value) or {}
            if entry.get("code") == code:
                return convention, step.value
        return None

    if HASH_DISPLAY_PATTERN.match(code):
        convention = db.execute(
            select(Convention).where(
                or_(Convention.certificate_hash == code, Convention.attestation_hash == code)
            )
        ).scalars().first()
        if convention is None:
            return None
        return convention, "certificate_hash" if convention.certificate_hash == code else "attestation_hash"

    raise ValidationError("Format de code invalide (attendu : ABCDEFGH-12345 ou empreinte à 12 caractères).")


# ----------------------------------------------------------------
# Suivi enseignant → ordre de mission
# ----------------------------------------------------------------

def assign_tracking_teacher(
    db: Session,
    convention_id: uuid.UUID,
    teacher_email: str,
    school_address: str,
) -> MissionOrder:
    """Affecte l'enseignant de suivi et crée son ordre de mission."""
    convention = get_convention(db, convention_id)
    convention.prof_suivi_email = teacher_email
    db.commit()
    logger.info("Enseignant de suivi %s affecté à la convention %s", teacher_email, convention.id)
    return mission_order_service.create_mission_order(db, convention, teacher_email, school_address)


def list_pending_for(db: Session, email: str) -> List[Convention]:
    """Conventions dont l'étape en cours attend la signature de `email`."""
    field_conditions = [getattr(Convention, f) == email for f in STEP_EMAIL_FIELD.values()]
    candidates = db.execute(
        select(Convention).where(
            or_(*field_conditions),
            Convention.status != ConventionStatus.VALIDATED_HEAD.value,
        )
    ).scalars().all()

    pending = []
    for convention in candidates:
        step = current_step(ConventionStatus(convention.status), convention.est_mineur)
        if step is not None and email_for_step(convention, step) == email:
            pending.append(convention)
    return pending
