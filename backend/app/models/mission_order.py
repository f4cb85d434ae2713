"""
Modèles SQLAlchemy pour les ordres de mission (ODM) des enseignants de suivi.
"""

import enum
import uuid

from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from app.database import Base


class MissionOrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    SIGNED = "SIGNED"
    REJECTED = "REJECTED"  # Réservé : aucun flux de refus pour l'instant


class MissionOrder(Base):
    """Autorisation de déplacement d'un enseignant vers le lieu de stage."""
    __tablename__ = "mission_orders"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    convention_id = Column(
        UUID(as_uuid=True), ForeignKey("conventions.id", ondelete="CASCADE"), nullable=False
    )
    teacher_id = Column(String(255), nullable=False)  # Email de l'enseignant de suivi
    student_id = Column(String(255), nullable=True)

    school_address = Column(String(500), nullable=False)
    company_address = Column(String(500), nullable=False)
    distance_km = Column(Float, nullable=False, default=0.0)

    status = Column(String(20), nullable=False, default=MissionOrderStatus.PENDING.value)
    signature_date = Column(DateTime(timezone=True), nullable=True)
    signature_hash = Column(String(40), nullable=True)
    signature_img = Column(Text, nullable=True)
    signer_name = Column(String(200), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())


class MissionOrderBatch(Base):
    """
    Commande de signature groupée, écrite avant les mises à jour par ordre.
    Le job de réconciliation rejoue les lots restés PENDING ou PARTIAL.
    """
    __tablename__ = "mission_order_batches"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_ids = Column(JSON, nullable=False)
    signature_date = Column(DateTime(timezone=True), nullable=False)
    signature_hash = Column(String(40), nullable=False)
    signature_img = Column(Text, nullable=True)
    signer_name = Column(String(200), nullable=True)
    status = Column(String(20), nullable=False, default="PENDING")  # PENDING, APPLIED, PARTIAL
    created_at = Column(DateTime(timezone=True), server_default=func.now())
