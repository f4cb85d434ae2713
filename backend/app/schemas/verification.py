"""
Schémas Pydantic de la page publique de vérification.
"""

from typing import List, Optional

from pydantic import BaseModel

from app.services.verification_service import VerificationOutcome


class Signatory(BaseModel):
    name: Optional[str]
    role: Optional[str]
    signed_at: Optional[str]


class VerificationResponse(BaseModel):
    outcome: VerificationOutcome
    certified: bool
    message: str
    summary: Optional[dict] = None
    signatories: List[Signatory] = []
    unverified_payload: Optional[dict] = None  # Affiché seulement si NOT_CERTIFIED


class SignatureLookupResponse(BaseModel):
    """Recherche manuelle d'un code de signature (ABCDEFGH-12345) ou d'une empreinte."""
    found: bool
    convention_id: Optional[str] = None
    matched: Optional[str] = None  # step, attestation, certificate_hash, attestation_hash
    student: Optional[str] = None
    company: Optional[str] = None
