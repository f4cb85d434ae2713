"""
Schémas Pydantic pour les conventions et leur circuit de signature.
"""

import uuid
import datetime as dt
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, EmailStr, field_validator, model_validator

from app.models.convention import ConventionStatus, SignatureStep


class ConventionCreate(BaseModel):
    """Données saisies par l'élève à la création (statut DRAFT)."""
    student_id: Optional[str] = None

    eleve_nom: str
    eleve_prenom: str
    eleve_email: EmailStr
    eleve_classe: Optional[str] = None
    est_mineur: bool = False

    rep_legal_nom: Optional[str] = None
    rep_legal_prenom: Optional[str] = None
    rep_legal_email: Optional[EmailStr] = None

    ecole_nom: Optional[str] = None
    ecole_chef_nom: Optional[str] = None
    ecole_chef_email: EmailStr
    prof_nom: Optional[str] = None
    prof_email: EmailStr

    ent_nom: str
    ent_adresse: Optional[str] = None
    ent_code_postal: Optional[str] = None
    ent_ville: Optional[str] = None
    ent_rep_nom: Optional[str] = None
    ent_rep_email: EmailStr
    tuteur_nom: Optional[str] = None
    tuteur_email: EmailStr

    stage_date_debut: dt.date
    stage_date_fin: dt.date

    @field_validator("eleve_nom", "eleve_prenom", "ent_nom")
    @classmethod
    def not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Le champ ne peut pas être vide.")
        return v.strip()

    @model_validator(mode="after")
    def check_consistency(self) -> "ConventionCreate":
        if self.stage_date_fin < self.stage_date_debut:
            raise ValueError("La date de fin doit être postérieure à la date de début.")
        if self.est_mineur and not self.rep_legal_email:
            raise ValueError("L'email du représentant légal est obligatoire pour un élève mineur.")
        return self


class SignatureEntry(BaseModel):
    code: str
    at: str
    img: Optional[str] = None


class ConventionResponse(BaseModel):
    id: uuid.UUID
    eleve_nom: str
    eleve_prenom: str
    eleve_email: str
    est_mineur: bool
    ent_nom: str
    stage_date_debut: dt.date
    stage_date_fin: dt.date
    status: ConventionStatus
    signatures: Dict[str, SignatureEntry] = {}
    invalid_emails: List[str] = []
    certificate_hash: Optional[str] = None
    last_reminder_at: Optional[datetime] = None
    attestation_signed: Optional[bool] = False
    attestation_hash: Optional[str] = None
    prof_suivi_email: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class TimelineStep(BaseModel):
    """Étape de la frise de signature (statut recalculé à chaque lecture)."""
    step: SignatureStep
    label: str
    status: str  # completed, current, pending
    party_name: Optional[str]
    email: Optional[str]
    invalid_email: bool
    can_remind: bool


class ConventionTimeline(BaseModel):
    convention_id: uuid.UUID
    status: ConventionStatus
    est_mineur: bool
    steps: List[TimelineStep]


class SignStepRequest(BaseModel):
    """Signature d'une étape : code OTP reçu par email + image de signature optionnelle."""
    otp_code: str
    signature_img: Optional[str] = None

    @field_validator("otp_code")
    @classmethod
    def four_digits(cls, v: str) -> str:
        v = v.strip()
        if len(v) != 4 or not v.isdigit():
            raise ValueError("Le code doit comporter 4 chiffres.")
        return v


class MinorFlagUpdate(BaseModel):
    est_mineur: bool


class EmailCorrection(BaseModel):
    email: EmailStr


class AttestationCreate(BaseModel):
    total_days: float
    signer_name: str
    signer_function: str
    signature_img: Optional[str] = None

    @field_validator("total_days")
    @classmethod
    def positive(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Le nombre de jours ne peut pas être négatif.")
        return v

    @field_validator("signer_name", "signer_function")
    @classmethod
    def not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Le champ ne peut pas être vide.")
        return v.strip()


class TrackingTeacherAssign(BaseModel):
    teacher_email: EmailStr
    school_address: str

    @field_validator("school_address")
    @classmethod
    def not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("L'adresse de l'établissement est obligatoire.")
        return v.strip()


class AuditLogEntry(BaseModel):
    date: datetime
    action: str
    actor_email: Optional[str]
    ip: Optional[str]
    details: Optional[str]

    model_config = {"from_attributes": True}


class VerificationLinkResponse(BaseModel):
    url: str
    hash_display: str
