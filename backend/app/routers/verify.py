"""
Vérification publique de l'authenticité des documents (sans authentification).
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.database import get_db
from app.schemas.verification import SignatureLookupResponse, Signatory, VerificationResponse
from app.services import convention_service, verification_service
from app.services.errors import ValidationError
from app.services.verification_service import VerificationOutcome

router = APIRouter(tags=["Vérification"])


@router.get("/verify", response_model=VerificationResponse, summary="Vérifier un lien de document")
def verify_document(data: Optional[str] = None, sig: Optional[str] = None):
    """
    Lien imprimé (QR code) sur les conventions et attestations.
    La réponse est toujours 200 : l'issue est dans `outcome`.
    Le contenu d'un lien non certifié est renvoyé à part pour être affiché comme suspect.
    """
    result = verification_service.verify_link(data, sig)
    certified = result.outcome == VerificationOutcome.CERTIFIED
    return VerificationResponse(
        outcome=result.outcome,
        certified=certified,
        message=result.message,
        summary=result.summary if certified else None,
        signatories=[Signatory(**s) for s in result.signatories],
        unverified_payload=result.payload if result.outcome == VerificationOutcome.NOT_CERTIFIED else None,
    )


@router.get(
    "/api/v1/signatures/{code}",
    response_model=SignatureLookupResponse,
    summary="Rechercher un code de signature",
)
def lookup_signature_code(code: str, db: Session = Depends(get_db)):
    """Saisie manuelle d'un code de signature (ABCDEFGH-12345) ou de l'empreinte imprimée."""
    try:
        found = convention_service.find_by_signature_code(db, code)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if found is None:
        return SignatureLookupResponse(found=False)

    convention, matched = found
    return SignatureLookupResponse(
        found=True,
        convention_id=str(convention.id),
        matched=matched,
        student=f"{convention.eleve_nom} {convention.eleve_prenom}",
        company=convention.ent_nom,
    )
