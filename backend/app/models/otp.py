"""
Modèles SQLAlchemy pour les codes à usage unique et les compteurs de rate limiting.
"""

import enum
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.dialects.postgresql import UUID

from app.database import Base


class OtpPurpose(str, enum.Enum):
    ACTIVATION = "activation"
    SIGNATURE = "signature"
    GENERIC = "generic"


class OtpCode(Base):
    """Code OTP à 4 chiffres : supprimé dès la première tentative de vérification."""
    __tablename__ = "otp_codes"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), nullable=False, index=True)
    code = Column(String(4), nullable=False)
    purpose = Column(String(20), nullable=False, default=OtpPurpose.GENERIC.value)
    convention_id = Column(
        UUID(as_uuid=True), ForeignKey("conventions.id", ondelete="CASCADE"), nullable=True
    )
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class RateLimitCounter(Base):
    """Compteur par (action, IP) sur une fenêtre fixe."""
    __tablename__ = "rate_limits"

    key = Column(String(255), primary_key=True)  # Ex: "ratelimit_otp-send_10_0_0_1"
    count = Column(Integer, nullable=False, default=0)
    window_start = Column(DateTime(timezone=True), nullable=False)
