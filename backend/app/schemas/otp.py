"""
Schémas Pydantic pour l'envoi et la vérification des codes OTP.
"""

import uuid
from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field

from app.models.otp import OtpPurpose
from app.schemas.convention import AuditLogEntry


class OtpSendRequest(BaseModel):
    """Code de signature : contexte authentifié, lié à une convention."""
    email: EmailStr
    convention_id: uuid.UUID


class OtpVerifyRequest(BaseModel):
    email: EmailStr
    code: str = Field(min_length=4, max_length=4)
    purpose: Optional[OtpPurpose] = None


class ActivationSendRequest(BaseModel):
    email: EmailStr
    purpose: Literal["activation"]


class ActivationVerifyRequest(BaseModel):
    email: EmailStr
    code: str = Field(min_length=4, max_length=4)
    purpose: Literal["activation"]


class OtpResult(BaseModel):
    success: bool
    error: Optional[str] = None
    audit_log: Optional[AuditLogEntry] = None
