"""
Router des ordres de mission des enseignants de suivi.
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.mission_order import MissionOrderStatus
from app.schemas.mission_order import (
    MissionOrderResponse,
    MissionOrderSignRequest,
    MissionOrderSignResult,
    ReconciliationReport,
)
from app.security import get_current_user, validate_origin
from app.services import mission_order_service
from app.services.errors import NotFound

router = APIRouter(
    prefix="/api/v1/mission-orders",
    tags=["Ordres de mission"],
    dependencies=[Depends(validate_origin), Depends(get_current_user)],
)


@router.get("", response_model=List[MissionOrderResponse], summary="Lister les ordres de mission")
def list_mission_orders(
    teacher_id: Optional[str] = None,
    status: Optional[MissionOrderStatus] = None,
    convention_id: Optional[uuid.UUID] = None,
    db: Session = Depends(get_db),
):
    """Filtres optionnels : enseignant, statut, convention."""
    return mission_order_service.list_mission_orders(db, teacher_id, status, convention_id)


@router.post("/sign", response_model=MissionOrderSignResult, summary="Signer un lot d'ordres de mission")
def sign_mission_orders(data: MissionOrderSignRequest, db: Session = Depends(get_db)):
    """
    Signature groupée par le chef d'établissement.

    - Ordres > 100 km sans choix explicite → 409 avec la liste des ordres à risque, rien n'est signé
    - choice=EXCLUDE_RISKY → seuls les ordres ≤ 100 km sont signés
    - choice=FORCE_ALL → tout est signé
    - Échecs d'écriture partiels → listés dans failed_ids, rejoués par la réconciliation
    """
    try:
        result = mission_order_service.sign_mission_orders(
            db, data.order_ids, data.signature_img, data.signer_name, data.choice
        )
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if result.requires_confirmation:
        return JSONResponse(status_code=409, content=result.model_dump(mode="json"))
    return result


@router.post("/reconcile", response_model=ReconciliationReport, summary="Rejouer les signatures en échec")
def reconcile(db: Session = Depends(get_db)):
    """Réapplique les lots PENDING/PARTIAL (également exécuté par le scheduler)."""
    return mission_order_service.reconcile_batches(db)
