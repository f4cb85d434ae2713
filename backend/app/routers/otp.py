"""
Router des codes à usage unique (OTP).
Codes de signature (session requise) et codes d'activation de compte (publics).
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.otp import OtpPurpose
from app.schemas.convention import AuditLogEntry
from app.schemas.otp import (
    ActivationSendRequest,
    ActivationVerifyRequest,
    OtpResult,
    OtpSendRequest,
    OtpVerifyRequest,
)
from app.security import client_ip, get_current_user, rate_limited, validate_origin
from app.services import otp_service
from app.services.errors import CodeExpired, DeliveryFailure, InvalidCode, NotFound, ValidationError

router = APIRouter(prefix="/api/v1/otp", tags=["Codes OTP"])


def _code_refused(exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})


@router.post(
    "/send",
    response_model=OtpResult,
    summary="Envoyer un code de signature",
    dependencies=[Depends(validate_origin), Depends(get_current_user), Depends(rate_limited("otp-send"))],
)
def send_signature_code(data: OtpSendRequest, request: Request, db: Session = Depends(get_db)):
    """
    Génère un code à 4 chiffres valable 10 minutes et l'envoie au signataire.
    Le code est lié à la convention : sa validation sera tracée dans le journal d'audit.
    """
    try:
        otp_service.request_code(
            db, data.email, OtpPurpose.SIGNATURE, data.convention_id, ip=client_ip(request)
        )
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except DeliveryFailure as e:
        raise HTTPException(status_code=502, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return OtpResult(success=True)


@router.post(
    "/verify",
    response_model=OtpResult,
    summary="Vérifier un code de signature",
    dependencies=[Depends(get_current_user), Depends(rate_limited("otp-verify"))],
)
def verify_signature_code(data: OtpVerifyRequest, request: Request, db: Session = Depends(get_db)):
    """
    Consomme le code (usage unique, tous les codes correspondants sont supprimés).
    Code inconnu ou expiré → 400 {success: false, error}.
    """
    try:
        entry = otp_service.verify_code(db, data.email, data.code, data.purpose, ip=client_ip(request))
    except (InvalidCode, CodeExpired) as e:
        return _code_refused(e)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return OtpResult(
        success=True,
        audit_log=AuditLogEntry.model_validate(entry) if entry is not None else None,
    )


@router.post(
    "/activation/send",
    response_model=OtpResult,
    summary="Envoyer un code d'activation de compte",
    dependencies=[Depends(rate_limited("otp-activation-send"))],
)
def send_activation_code(data: ActivationSendRequest, request: Request, db: Session = Depends(get_db)):
    """
    Route publique (avant connexion).
    Un échec d'envoi n'est pas bloquant : le code reste valable et l'incident est journalisé.
    """
    otp_service.request_code(db, data.email, OtpPurpose.ACTIVATION, ip=client_ip(request))
    return OtpResult(success=True)


@router.post(
    "/activation/verify",
    response_model=OtpResult,
    summary="Vérifier un code d'activation de compte",
    dependencies=[Depends(rate_limited("otp-activation-verify"))],
)
def verify_activation_code(data: ActivationVerifyRequest, request: Request, db: Session = Depends(get_db)):
    """Route publique. Seuls les codes émis pour l'activation sont acceptés."""
    try:
        otp_service.verify_code(db, data.email, data.code, OtpPurpose.ACTIVATION, ip=client_ip(request))
    except (InvalidCode, CodeExpired) as e:
        return _code_refused(e)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return OtpResult(success=True)
