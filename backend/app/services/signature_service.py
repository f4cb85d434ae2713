"""
Primitive de signature des documents (HMAC-SHA256).

La clé DOCUMENT_SIGNING_SECRET reste côté serveur. La sérialisation JSON est
compacte et conserve l'ordre des clés tel que construit : les charges utiles
doivent donc toujours être assemblées dans le même ordre (voir
verification_service.build_*_payload), et un payload relu depuis un lien garde
l'ordre d'origine.
"""

import hashlib
import hmac
import json
import logging
import secrets
import string
import time
import uuid

from app.config import settings

logger = logging.getLogger(__name__)

DEV_SIGNING_SECRET = "dev-secret-key-do-not-use-in-prod"

SIGNATURE_CODE_LETTERS = 8
SIGNATURE_CODE_DIGITS = 5

_dev_key_warned = False


def get_signing_secret() -> str:
    """
    Retourne la clé HMAC.
    En production une clé absente est une erreur fatale ; ailleurs on bascule
    sur une clé de développement fixe (et on le signale dans les logs).
    """
    global _dev_key_warned
    if settings.DOCUMENT_SIGNING_SECRET:
        return settings.DOCUMENT_SIGNING_SECRET
    if settings.ENV == "production":
        raise RuntimeError("DOCUMENT_SIGNING_SECRET doit être défini en production.")
    if not _dev_key_warned:
        logger.warning("DOCUMENT_SIGNING_SECRET absent : clé de développement utilisée (ENV=%s)", settings.ENV)
        _dev_key_warned = True
    return DEV_SIGNING_SECRET


def canonical_json(payload: dict) -> str:
    """Sérialisation compacte identique à JSON.stringify (UTF-8 brut, pas d'espaces)."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def sign_payload(payload: dict, secret: str | None = None) -> str:
    """Calcule le HMAC-SHA256 hexadécimal du payload."""
    key = (secret or get_signing_secret()).encode("utf-8")
    return hmac.new(key, canonical_json(payload).encode("utf-8"), hashlib.sha256).hexdigest()


def verify_payload(payload: dict, signature: str, secret: str | None = None) -> bool:
    """
    Recalcule la signature et compare en temps constant.
    Ne lève jamais : signature non hexadécimale ou de mauvaise longueur → False.
    """
    expected = bytes.fromhex(sign_payload(payload, secret))
    try:
        received = bytes.fromhex(signature)
    except (TypeError, ValueError):
        return False
    if len(received) != len(expected):
        return False
    return hmac.compare_digest(expected, received)


def generate_signature_code() -> str:
    """Code de signature lisible : 8 lettres majuscules, tiret, 5 chiffres (ex. ABCDEFGH-12345)."""
    letters = "".join(secrets.choice(string.ascii_uppercase) for _ in range(SIGNATURE_CODE_LETTERS))
    digits = "".join(secrets.choice(string.digits) for _ in range(SIGNATURE_CODE_DIGITS))
    return f"{letters}-{digits}"


def generate_mission_order_hash() -> str:
    """
    Identifiant opaque d'une signature d'ordre de mission (ODM-<ms>-<5 car.>).
    Ce n'est pas un HMAC : il n'est jamais revérifié, il sert uniquement de référence.
    """
    return f"ODM-{int(time.time() * 1000)}-{uuid.uuid4().hex[:5]}"
