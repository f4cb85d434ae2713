"""
Service des ordres de mission (ODM) des enseignants de suivi.

Signature groupée :
  1. Partition de la sélection : distance <= limite ("sûrs") / > limite ("à risque")
  2. Si des ODM à risque sont présents sans choix explicite → rien n'est signé,
     l'appelant doit choisir EXCLUDE_RISKY (signer le reste) ou FORCE_ALL
  3. EXCLUDE_RISKY sans aucun ODM restant → abandon sans effet
  4. Écriture d'une commande MissionOrderBatch, projection optimiste renvoyée
     immédiatement, puis mises à jour par ordre en parallèle (une session par ordre)
  5. Les échecs partiels sont journalisés et rejoués par reconcile_batches, sans rollback
"""

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.database import SessionLocal
from app.models.convention import Convention
from app.models.mission_order import MissionOrder, MissionOrderBatch, MissionOrderStatus
from app.schemas.mission_order import (
    BatchChoice,
    MissionOrderResponse,
    MissionOrderSignResult,
    ReconciliationReport,
    RiskyOrder,
)
from app.services.errors import NotFound
from app.services.geocoding_service import distance_between_addresses
from app.services.signature_service import generate_mission_order_hash

logger = logging.getLogger(__name__)

MAX_PARALLEL_WRITES = 8


@dataclass
class BatchPlan:
    approved: List[MissionOrder] = field(default_factory=list)
    risky: List[MissionOrder] = field(default_factory=list)
    requires_confirmation: bool = False
    aborted: bool = False


def company_address_of(convention: Convention) -> str:
    return f"{convention.ent_adresse or ''}, {convention.ent_code_postal or ''} {convention.ent_ville or ''}".strip()


def create_mission_order(
    db: Session,
    convention: Convention,
    teacher_email: str,
    school_address: str,
) -> MissionOrder:
    """
    Crée l'ODM PENDING du couple (convention, enseignant), distance calculée une seule fois.
    Idempotent : retourne l'ODM existant si le couple en a déjà un.
    """
    existing = db.execute(
        select(MissionOrder).where(
            MissionOrder.convention_id == convention.id,
            MissionOrder.teacher_id == teacher_email,
        )
    ).scalar()
    if existing:
        return existing

    company_address = company_address_of(convention)
    distance_km = distance_between_addresses(school_address, company_address)

    order = MissionOrder(
        convention_id=convention.id,
        teacher_id=teacher_email,
        student_id=convention.student_id,
        school_address=school_address,
        company_address=company_address,
        distance_km=distance_km,
        status=MissionOrderStatus.PENDING.value,
    )
    db.add(order)
    db.commit()
    db.refresh(order)

    logger.info("ODM créé pour %s (convention %s, %.1f km)", teacher_email, convention.id, distance_km)
    return order


def list_mission_orders(
    db: Session,
    teacher_id: Optional[str] = None,
    status: Optional[MissionOrderStatus] = None,
    convention_id: Optional[uuid.UUID] = None,
) -> List[MissionOrder]:
    stmt = select(MissionOrder).order_by(MissionOrder.created_at)
    if teacher_id:
        stmt = stmt.where(MissionOrder.teacher_id == teacher_id)
    if status:
        stmt = stmt.where(MissionOrder.status == status.value)
    if convention_id:
        stmt = stmt.where(MissionOrder.convention_id == convention_id)
    return db.execute(stmt).scalars().all()


def partition_by_distance(
    orders: Iterable[MissionOrder],
    limit_km: Optional[float] = None,
) -> Tuple[List[MissionOrder], List[MissionOrder]]:
    """(sûrs, à risque) : la limite elle-même est considérée sûre."""
    limit = settings.MISSION_ORDER_DISTANCE_LIMIT_KM if limit_km is None else limit_km
    safe, risky = [], []
    for order in orders:
        (risky if order.distance_km > limit else safe).append(order)
    return safe, risky


def plan_batch(
    orders: Sequence[MissionOrder],
    choice: Optional[BatchChoice] = None,
    limit_km: Optional[float] = None,
) -> BatchPlan:
    """Décide quels ODM seront signés, sans rien écrire."""
    safe, risky = partition_by_distance(orders, limit_km)
    if not risky:
        return BatchPlan(approved=list(orders))
    if choice is None:
        return BatchPlan(risky=risky, requires_confirmation=True)
    if choice == BatchChoice.FORCE_ALL:
        return BatchPlan(approved=list(orders), risky=risky)
    if not safe:
        return BatchPlan(risky=risky, aborted=True)
    return BatchPlan(approved=safe, risky=risky)


def _persist_one(session_factory: Callable[[], Session], order_id: uuid.UUID, values: dict) -> int:
    session = session_factory()
    try:
        result = session.execute(
            update(MissionOrder)
            .where(MissionOrder.id == order_id, MissionOrder.status == MissionOrderStatus.PENDING.value)
            .values(**values)
        )
        session.commit()
        return result.rowcount
    finally:
        session.close()


def persist_signatures(
    session_factory: Callable[[], Session],
    order_ids: Sequence[uuid.UUID],
    values: dict,
) -> List[uuid.UUID]:
    """Écrit la signature de chaque ODM en parallèle. Retourne les ids en échec."""
    if not order_ids:
        return []

    failed: List[uuid.UUID] = []
    with ThreadPoolExecutor(max_workers=min(MAX_PARALLEL_WRITES, len(order_ids))) as pool:
        futures = {pool.submit(_persist_one, session_factory, oid, values): oid for oid in order_ids}
        for future in as_completed(futures):
            order_id = futures[future]
            try:
                future.result()
            except SQLAlchemyError as exc:
                failed.append(order_id)
                logger.error("Échec d'écriture de la signature de l'ODM %s : %s", order_id, exc)
    return failed


def _risky_view(orders: List[MissionOrder]) -> List[RiskyOrder]:
    return [RiskyOrder(id=o.id, teacher_id=o.teacher_id, distance_km=o.distance_km) for o in orders]


def sign_mission_orders(
    db: Session,
    order_ids: Sequence[uuid.UUID],
    signature_img: str,
    signer_name: str,
    choice: Optional[BatchChoice] = None,
    session_factory: Callable[[], Session] = SessionLocal,
    now: Optional[datetime] = None,
) -> MissionOrderSignResult:
    """
    Signature groupée par le chef d'établissement (sans OTP).
    Lève NotFound si un id est inconnu, ValueError si un ODM n'est plus PENDING.
    """
    orders = db.execute(select(MissionOrder).where(MissionOrder.id.in_(order_ids))).scalars().all()

    missing = set(order_ids) - {o.id for o in orders}
    if missing:
        raise NotFound(f"Ordre(s) de mission introuvable(s) : {', '.join(sorted(str(m) for m in missing))}")
    already = [o for o in orders if o.status != MissionOrderStatus.PENDING.value]
    if already:
        raise ValueError(f"{len(already)} ordre(s) de mission déjà traité(s).")

    plan = plan_batch(orders, choice)
    if plan.requires_confirmation:
        return MissionOrderSignResult(requires_confirmation=True, risky_orders=_risky_view(plan.risky))
    if plan.aborted:
        logger.info("Signature ODM abandonnée : tous les ordres sélectionnés dépassent la limite")
        return MissionOrderSignResult(aborted=True, risky_orders=_risky_view(plan.risky))

    now = now or datetime.now(timezone.utc)
    values = {
        "status": MissionOrderStatus.SIGNED.value,
        "signature_date": now,
        "signature_img": signature_img,
        "signature_hash": generate_mission_order_hash(),
        "signer_name": signer_name,
    }

    # Commande durable d'abord : c'est elle que rejoue la réconciliation
    batch = MissionOrderBatch(
        order_ids=[str(o.id) for o in plan.approved],
        signature_date=now,
        signature_hash=values["signature_hash"],
        signature_img=signature_img,
        signer_name=signer_name,
        status="PENDING",
    )
    db.add(batch)
    db.commit()
    db.refresh(batch)

    projection = [
        MissionOrderResponse.model_validate(o).model_copy(
            update={
                "status": MissionOrderStatus.SIGNED,
                "signature_date": now,
                "signature_hash": values["signature_hash"],
                "signer_name": signer_name,
            }
        )
        for o in plan.approved
    ]

    failed = persist_signatures(session_factory, [o.id for o in plan.approved], values)
    batch.status = "PARTIAL" if failed else "APPLIED"
    db.commit()

    logger.info(
        "Lot ODM %s : %d signé(s), %d en échec, %d à risque inclus",
        batch.id, len(projection) - len(failed), len(failed),
        len(plan.risky) if choice == BatchChoice.FORCE_ALL else 0,
    )
    return MissionOrderSignResult(
        batch_id=batch.id,
        signed=projection,
        failed_ids=failed,
        risky_orders=_risky_view(plan.risky),
    )


def reconcile_batches(
    db: Session,
    session_factory: Callable[[], Session] = SessionLocal,
) -> ReconciliationReport:
    """Rejoue les lots dont certaines écritures n'ont pas abouti."""
    batches = db.execute(
        select(MissionOrderBatch).where(MissionOrderBatch.status.in_(["PENDING", "PARTIAL"]))
    ).scalars().all()

    repaired = 0
    still_failing = 0
    for batch in batches:
        ids = [uuid.UUID(i) for i in batch.order_ids]
        pending_ids = db.execute(
            select(MissionOrder.id).where(
                MissionOrder.id.in_(ids),
                MissionOrder.status == MissionOrderStatus.PENDING.value,
            )
        ).scalars().all()

        failed = persist_signatures(
            session_factory,
            pending_ids,
            {
                "status": MissionOrderStatus.SIGNED.value,
                "signature_date": batch.signature_date,
                "signature_img": batch.signature_img,
                "signature_hash": batch.signature_hash,
                "signer_name": batch.signer_name,
            },
        )
        repaired += len(pending_ids) - len(failed)
        still_failing += len(failed)
        batch.status = "PARTIAL" if failed else "APPLIED"

    db.commit()
    if batches:
        logger.info("Réconciliation ODM : %d lot(s), %d réparé(s), %d en échec", len(batches), repaired, still_failing)
    return ReconciliationReport(batches_checked=len(batches), orders_repaired=repaired, still_failing=still_failing)
