"""
Planificateur APScheduler des tâches de maintenance.

- Toutes les heures : purge des codes OTP expirés jamais vérifiés
- Toutes les 15 minutes : réconciliation des lots d'ordres de mission partiellement écrits
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.exc import SQLAlchemyError

from app.database import SessionLocal

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler()


def _purge_expired_codes() -> None:
    """Tâche planifiée. Import local pour éviter les imports circulaires."""
    from app.services.otp_service import purge_expired_codes

    db = SessionLocal()
    try:
        deleted = purge_expired_codes(db)
        if deleted:
            logger.info("Purge OTP : %d code(s) expiré(s) supprimé(s)", deleted)
    except SQLAlchemyError as exc:
        logger.error("Erreur lors de la purge des codes OTP : %s", exc)
    finally:
        db.close()


def _reconcile_mission_orders() -> None:
    from app.services.mission_order_service import reconcile_batches

    db = SessionLocal()
    try:
        report = reconcile_batches(db)
        if report.still_failing:
            logger.warning("Réconciliation ODM : %d écriture(s) toujours en échec", report.still_failing)
    except SQLAlchemyError as exc:
        logger.error("Erreur lors de la réconciliation des ordres de mission : %s", exc)
    finally:
        db.close()


def start_scheduler() -> None:
    """Démarre le planificateur en arrière-plan (appelé au démarrage de l'API)."""
    scheduler.add_job(
        _purge_expired_codes,
        trigger="interval",
        hours=1,
        id="otp_purge",
        replace_existing=True,
    )
    scheduler.add_job(
        _reconcile_mission_orders,
        trigger="interval",
        minutes=15,
        id="mission_order_reconciliation",
        replace_existing=True,
    )
    scheduler.start()
    logger.info("Scheduler démarré : purge OTP (1 h), réconciliation ODM (15 min).")


def stop_scheduler() -> None:
    """Arrête le planificateur proprement (appelé à l'arrêt de l'API)."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler arrêté.")
