"""
Router des conventions de stage.
Création, frise de signature, signature d'une étape, relances, corrections d'email,
attestation de fin de stage et affectation de l'enseignant de suivi.
"""

import uuid
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.convention import SignatureStep
from app.schemas.convention import (
    AttestationCreate,
    AuditLogEntry,
    ConventionCreate,
    ConventionResponse,
    ConventionTimeline,
    EmailCorrection,
    MinorFlagUpdate,
    SignStepRequest,
    TrackingTeacherAssign,
    VerificationLinkResponse,
)
from app.schemas.mission_order import MissionOrderResponse
from app.security import client_ip, get_current_user, rate_limited, validate_origin
from app.services import audit_service, convention_service
from app.services.errors import (
    CodeExpired,
    DeliveryFailure,
    InvalidCode,
    NotFound,
    ReminderCooldown,
    StaleState,
    ValidationError,
)
from app.services.verification_service import DocumentKind

router = APIRouter(
    prefix="/api/v1/conventions",
    tags=["Conventions"],
    dependencies=[Depends(validate_origin)],
)


def _to_http(e: ValueError) -> HTTPException:
    """Traduit une erreur métier en réponse HTTP."""
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ReminderCooldown):
        return HTTPException(status_code=429, detail=str(e))
    if isinstance(e, DeliveryFailure):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=str(e))
    # StaleState et règles du circuit (étape non signable, attestation déjà signée...)
    return HTTPException(status_code=409, detail=str(e))


@router.post("", response_model=ConventionResponse, status_code=201, summary="Créer une convention")
def create_convention(
    data: ConventionCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """
    Crée la convention en brouillon (DRAFT).
    L'élève la soumet ensuite en signant l'étape "student".
    """
    return convention_service.create_convention(db, data, actor_email=user.get("email"), ip=client_ip(request))


@router.get("/pending", response_model=List[ConventionResponse], summary="Conventions en attente de ma signature")
def list_pending(db: Session = Depends(get_db), user: dict = Depends(get_current_user)):
    """Conventions dont l'étape en cours attend la signature de l'utilisateur connecté."""
    email = user.get("email")
    if not email:
        raise HTTPException(status_code=400, detail="Le jeton ne porte pas d'adresse email.")
    return convention_service.list_pending_for(db, email)


@router.get("/{convention_id}", response_model=ConventionResponse, summary="Détail d'une convention")
def get_convention(convention_id: uuid.UUID, db: Session = Depends(get_db), user: dict = Depends(get_current_user)):
    try:
        return convention_service.get_convention(db, convention_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{convention_id}/timeline", response_model=ConventionTimeline, summary="Frise de signature")
def get_timeline(convention_id: uuid.UUID, db: Session = Depends(get_db), user: dict = Depends(get_current_user)):
    """
    Statut de chaque étape (completed / current / pending), recalculé depuis le statut
    de la convention et le statut mineur/majeur de l'élève.
    """
    try:
        convention = convention_service.get_convention(db, convention_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return convention_service.get_timeline(convention)


@router.get("/{convention_id}/audit-logs", response_model=List[AuditLogEntry], summary="Journal d'audit")
def get_audit_logs(convention_id: uuid.UUID, db: Session = Depends(get_db), user: dict = Depends(get_current_user)):
    return audit_service.list_audit_logs(db, convention_id)


@router.post(
    "/{convention_id}/sign/{step}",
    response_model=ConventionResponse,
    summary="Signer une étape de la convention",
    dependencies=[Depends(get_current_user), Depends(rate_limited("otp-verify"))],
)
def sign_step(
    convention_id: uuid.UUID,
    step: SignatureStep,
    data: SignStepRequest,
    request: Request,
    db: Session = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """
    Signe l'étape en cours avec le code OTP reçu par le signataire.

    - Code inconnu ou expiré → 400 {success: false, error}
    - Étape qui n'est pas l'étape en cours → 409
    - Convention modifiée entre-temps (signature concurrente) → 409
    """
    try:
        return convention_service.sign_step(
            db, convention_id, step, data.otp_code,
            actor_ip=client_ip(request), signature_img=data.signature_img,
        )
    except (InvalidCode, CodeExpired) as e:
        return JSONResponse(status_code=400, content={"success": False, "error": str(e)})
    except StaleState as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise _to_http(e)


@router.post("/{convention_id}/reminder", summary="Relancer le signataire en attente")
def send_reminder(
    convention_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """
    Relance par email le signataire de l'étape en cours.
    Au plus une relance toutes les 48 h, jamais pour l'élève ni pour une convention terminée.
    """
    try:
        recipient = convention_service.send_reminder(
            db, convention_id, actor_email=user.get("email"), ip=client_ip(request)
        )
    except ValueError as e:
        raise _to_http(e)
    return {"sent": recipient is not None, "recipient": recipient}


@router.put(
    "/{convention_id}/emails/{step}",
    response_model=ConventionResponse,
    summary="Corriger l'email d'un signataire",
)
def update_email(
    convention_id: uuid.UUID,
    step: SignatureStep,
    data: EmailCorrection,
    request: Request,
    db: Session = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Remplace l'adresse, lève le blocage et renvoie la demande si l'étape est en cours."""
    try:
        return convention_service.update_email(
            db, convention_id, step, data.email, actor_email=user.get("email"), ip=client_ip(request)
        )
    except ValueError as e:
        raise _to_http(e)


@router.post(
    "/{convention_id}/emails/{step}/invalid",
    response_model=ConventionResponse,
    summary="Signaler un email invalide",
)
def mark_invalid_email(
    convention_id: uuid.UUID,
    step: SignatureStep,
    db: Session = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Bloque l'étape jusqu'à correction de l'adresse (rebond signalé par un utilisateur)."""
    try:
        return convention_service.mark_invalid_email_by_id(db, convention_id, step)
    except ValueError as e:
        raise _to_http(e)


@router.put("/{convention_id}/minor", response_model=ConventionResponse, summary="Statut mineur/majeur")
def update_minor_flag(
    convention_id: uuid.UUID,
    data: MinorFlagUpdate,
    db: Session = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Modifiable uniquement tant que la convention est en brouillon."""
    try:
        return convention_service.update_minor_flag(db, convention_id, data.est_mineur)
    except ValueError as e:
        raise _to_http(e)


@router.post(
    "/{convention_id}/attestation",
    response_model=ConventionResponse,
    summary="Signer l'attestation de fin de stage",
)
def validate_attestation(
    convention_id: uuid.UUID,
    data: AttestationCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """
    Signée par l'entreprise une fois la convention validée par le chef d'établissement.
    L'enseignant reçoit le lien de vérification et son QR code.
    """
    try:
        return convention_service.validate_attestation(
            db, convention_id, data.total_days, data.signer_name, data.signer_function,
            signature_img=data.signature_img, ip=client_ip(request),
        )
    except ValueError as e:
        raise _to_http(e)


@router.get(
    "/{convention_id}/verification-link",
    response_model=VerificationLinkResponse,
    summary="Lien de vérification du document",
)
def get_verification_link(
    convention_id: uuid.UUID,
    kind: DocumentKind = DocumentKind.CONVENTION,
    db: Session = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Lien signé imprimé sur le PDF (QR code) ; reste valable quel que soit le statut futur."""
    try:
        link = convention_service.get_verification_link(db, convention_id, kind)
    except ValueError as e:
        raise _to_http(e)
    return VerificationLinkResponse(url=link.url, hash_display=link.hash_display)


@router.post(
    "/{convention_id}/tracking-teacher",
    response_model=MissionOrderResponse,
    status_code=201,
    summary="Affecter l'enseignant de suivi",
)
def assign_tracking_teacher(
    convention_id: uuid.UUID,
    data: TrackingTeacherAssign,
    db: Session = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Crée l'ordre de mission (PENDING) avec la distance établissement → entreprise."""
    try:
        return convention_service.assign_tracking_teacher(db, convention_id, data.teacher_email, data.school_address)
    except ValueError as e:
        raise _to_http(e)
