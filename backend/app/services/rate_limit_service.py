"""
Rate limiting par (action, IP) sur fenêtre fixe, partagé via la base.

L'incrément est un UPDATE conditionnel (count < max dans la fenêtre courante) :
deux requêtes simultanées ne peuvent pas lire le même compteur puis écrire
chacune count + 1. Si la base est injoignable, on laisse passer (fail open).
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.otp import RateLimitCounter
from app.services.errors import RateLimited

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    max: int
    window: timedelta
    message: str


_WAIT = "Trop de demandes. Veuillez patienter."
_RETRY_15 = "Trop de tentatives. Réessayez dans 15 minutes."

RATE_LIMITS: dict[str, RateLimitPolicy] = {
    "send-email": RateLimitPolicy(10, timedelta(seconds=60), _WAIT),
    "reset-password": RateLimitPolicy(5, timedelta(seconds=60), _WAIT),
    "otp-send": RateLimitPolicy(5, timedelta(seconds=60), _WAIT),
    "otp-verify": RateLimitPolicy(5, timedelta(seconds=900), _RETRY_15),
    "otp-activation-send": RateLimitPolicy(5, timedelta(seconds=60), _WAIT),
    "otp-activation-verify": RateLimitPolicy(5, timedelta(seconds=900), _RETRY_15),
}


def rate_limit_key(action: str, ip: str) -> str:
    return f"ratelimit_{action}_{re.sub(r'[^a-zA-Z0-9]', '_', ip)}"


def _as_utc(value: datetime) -> datetime:
    # SQLite renvoie des datetimes naïfs
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def check_rate_limit(db: Session, action: str, ip: str, now: Optional[datetime] = None) -> bool:
    """
    Compte une tentative et retourne False si la limite est atteinte.
    Lève KeyError pour une action inconnue (erreur de programmation).
    """
    policy = RATE_LIMITS[action]
    now = now or datetime.now(timezone.utc)
    key = rate_limit_key(action, ip)
    window_floor = now - policy.window

    try:
        result = db.execute(
            update(RateLimitCounter)
            .where(
                RateLimitCounter.key == key,
                RateLimitCounter.window_start > window_floor,
                RateLimitCounter.count < policy.max,
            )
            .values(count=RateLimitCounter.count + 1)
        )
        if result.rowcount == 1:
            db.commit()
            return True

        counter = db.get(RateLimitCounter, key)
        if counter is not None and _as_utc(counter.window_start) > window_floor:
            db.rollback()
            logger.warning("Rate limit atteint : %s (%d/%d)", key, counter.count, policy.max)
            return False

        # Nouvelle clé ou fenêtre expirée : on repart à 1
        if counter is None:
            db.add(RateLimitCounter(key=key, count=1, window_start=now))
        else:
            counter.count = 1
            counter.window_start = now
        db.commit()
        return True
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Rate limit indisponible pour %s (fail open) : %s", key, exc)
        return True


def enforce_rate_limit(db: Session, action: str, ip: str, now: Optional[datetime] = None) -> None:
    """Lève RateLimited avec le message de la politique quand la limite est atteinte."""
    if not check_rate_limit(db, action, ip, now):
        raise RateLimited(RATE_LIMITS[action].message)
