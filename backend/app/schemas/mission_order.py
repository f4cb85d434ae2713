"""
Schémas Pydantic pour les ordres de mission et leur signature groupée.
"""

import enum
import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, field_validator

from app.models.mission_order import MissionOrderStatus


class BatchChoice(str, enum.Enum):
    """Choix explicite quand la sélection contient des ODM > limite de distance."""
    EXCLUDE_RISKY = "EXCLUDE_RISKY"
    FORCE_ALL = "FORCE_ALL"


class MissionOrderResponse(BaseModel):
    id: uuid.UUID
    convention_id: uuid.UUID
    teacher_id: str
    student_id: Optional[str]
    school_address: str
    company_address: str
    distance_km: float
    status: MissionOrderStatus
    signature_date: Optional[datetime] = None
    signature_hash: Optional[str] = None
    signer_name: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class MissionOrderSignRequest(BaseModel):
    order_ids: List[uuid.UUID]
    signature_img: str
    signer_name: str
    choice: Optional[BatchChoice] = None

    @field_validator("order_ids")
    @classmethod
    def at_least_one(cls, v: List[uuid.UUID]) -> List[uuid.UUID]:
        if not v:
            raise ValueError("Au moins un ordre de mission doit être sélectionné.")
        return v


class RiskyOrder(BaseModel):
    id: uuid.UUID
    teacher_id: str
    distance_km: float


class MissionOrderSignResult(BaseModel):
    """
    Résultat d'une signature groupée.
    requires_confirmation=True : rien n'a été signé, l'appelant doit rejouer avec un choix.
    """
    requires_confirmation: bool = False
    aborted: bool = False
    risky_orders: List[RiskyOrder] = []
    batch_id: Optional[uuid.UUID] = None
    signed: List[MissionOrderResponse] = []
    failed_ids: List[uuid.UUID] = []


class ReconciliationReport(BaseModel):
    batches_checked: int
    orders_repaired: int
    still_failing: int
