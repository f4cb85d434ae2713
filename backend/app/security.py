"""
Dépendances FastAPI de sécurité : origine, session bearer, rate limit.
Elles s'exécutent avant le corps des handlers.
"""

import logging
from typing import Callable
from urllib.parse import urlparse

import jwt
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.services.errors import RateLimited
from app.services.rate_limit_service import RATE_LIMITS, enforce_rate_limit

logger = logging.getLogger(__name__)


def client_ip(request: Request) -> str:
    """Première adresse de X-Forwarded-For, "unknown" si absente."""
    forwarded = request.headers.get("x-forwarded-for")
    if not forwarded:
        return "unknown"
    return forwarded.split(",")[0].strip() or "unknown"


def validate_origin(request: Request) -> None:
    """
    Refuse les requêtes navigateur venant d'une origine étrangère.
    Sans en-tête Origin (appel serveur à serveur), la requête passe.
    """
    origin = request.headers.get("origin")
    if not origin:
        return

    origin_host = urlparse(origin).hostname or ""
    request_host = (request.headers.get("host") or "").split(":")[0]
    if origin_host == request_host or origin_host in settings.ALLOWED_ORIGIN_HOSTS:
        return

    logger.warning("Origine refusée : %s (host %s)", origin, request_host)
    raise HTTPException(status_code=403, detail="Origine non autorisée.")


def get_current_user(request: Request) -> dict:
    """Décode le jeton `Authorization: Bearer <jwt>` et retourne ses claims."""
    header = request.headers.get("authorization") or ""
    if not header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")

    token = header[len("Bearer "):]
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except jwt.PyJWTError as exc:
        logger.info("Jeton refusé : %s", exc)
        raise HTTPException(status_code=401, detail="Unauthorized")


def rate_limited(action: str) -> Callable[..., None]:
    """Fabrique une dépendance qui compte une tentative pour (action, IP) et répond 429 au-delà."""
    if action not in RATE_LIMITS:
        raise KeyError(f"Action de rate limit inconnue : {action}")

    def dependency(request: Request, db: Session = Depends(get_db)) -> None:
        try:
            enforce_rate_limit(db, action, client_ip(request))
        except RateLimited as e:
            raise HTTPException(status_code=429, detail=str(e))

    return dependency
