"""
Liens de vérification publics des conventions et attestations.

Émission :
  1. Projection minimale de la convention (clés courtes, ordre fixe, jamais le statut)
  2. Signature HMAC du JSON compact
  3. URL <APP_BASE_URL>/verify?data=<base64url(JSON)>&sig=<hex>

Vérification :
  - paramètres absents             → MISSING
  - base64/JSON illisible          → CORRUPTED (lien cassé)
  - signature qui ne correspond pas → NOT_CERTIFIED (document altéré ou contrefait)
  - sinon                          → CERTIFIED, résumé reconstruit uniquement depuis le payload
"""

import base64
import binascii
import enum
import io
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional
from urllib.parse import urlencode

import qrcode

from app.config import settings
from app.models.convention import Convention, SignatureStep
from app.services.errors import CorruptedInput, IntegrityFailure
from app.services.signature_service import canonical_json, sign_payload, verify_payload

logger = logging.getLogger(__name__)

HASH_DISPLAY_LENGTH = 12

# Ordre d'affichage des signataires sur la page de vérification
ROLE_LABELS = {
    SignatureStep.STUDENT: "Élève",
    SignatureStep.PARENT: "Représentant Légal",
    SignatureStep.TUTOR: "Tuteur",
    SignatureStep.TEACHER: "Enseignant Référent",
    SignatureStep.COMPANY: "Représentant Entreprise",
    SignatureStep.HEAD: "Chef d'Établissement",
}


class DocumentKind(str, enum.Enum):
    CONVENTION = "convention"
    ATTESTATION = "attestation"


class VerificationOutcome(str, enum.Enum):
    CERTIFIED = "CERTIFIED"
    NOT_CERTIFIED = "NOT_CERTIFIED"
    CORRUPTED = "CORRUPTED"
    MISSING = "MISSING"


@dataclass
class VerificationLink:
    url: str
    signature: str
    hash_display: str


@dataclass
class VerificationResult:
    outcome: VerificationOutcome
    message: str
    summary: Optional[dict] = None
    payload: Optional[dict] = None  # Renvoyé tel quel (non vérifié) si NOT_CERTIFIED
    signatories: list = field(default_factory=list)


def _iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def _party_name(convention: Convention, step: SignatureStep) -> Optional[str]:
    if step == SignatureStep.STUDENT:
        return f"{convention.eleve_nom} {convention.eleve_prenom}"
    if step == SignatureStep.PARENT:
        if convention.rep_legal_nom:
            return f"{convention.rep_legal_nom} {convention.rep_legal_prenom or ''}".strip()
        return ROLE_LABELS[SignatureStep.PARENT]
    if step == SignatureStep.TEACHER:
        return convention.prof_nom
    if step == SignatureStep.COMPANY:
        return convention.ent_rep_nom
    if step == SignatureStep.TUTOR:
        return convention.tuteur_nom
    if step == SignatureStep.HEAD:
        return convention.ecole_chef_nom
    raise ValueError(f"Étape inconnue : {step}")


def build_convention_payload(convention: Convention, signatures: Optional[dict] = None) -> dict:
    """
    Projection signée d'une convention. L'ordre des clés fait partie du format.
    `signatures` permet de signer l'état à venir avant qu'il soit persisté.
    """
    if signatures is None:
        signatures = convention.signatures or {}
    sigs = []
    for step in ROLE_LABELS:
        entry = signatures.get(step.value)
        if entry and entry.get("at"):
            sigs.append({"n": _party_name(convention, step), "r": ROLE_LABELS[step], "d": entry["at"]})

    return {
        "t": "c",
        "id": str(convention.id),
        "s": f"{convention.eleve_nom} {convention.eleve_prenom}",
        "e": convention.ent_nom,
        "d": {"s": _iso(convention.stage_date_debut), "f": _iso(convention.stage_date_fin)},
        "sigs": sigs,
    }


def build_attestation_payload(convention: Convention) -> dict:
    """Projection signée d'une attestation de fin de stage."""
    return {
        "t": "a",
        "id": str(convention.id),
        "s": f"{convention.eleve_nom} {convention.eleve_prenom}",
        "e": convention.ent_nom,
        "d": {"s": _iso(convention.stage_date_debut), "f": _iso(convention.stage_date_fin)},
        "h": convention.attestation_total_jours,
        "sn": convention.attestation_signer_name,
        "sf": convention.attestation_signer_function,
        "sd": _iso(convention.attestation_date),
    }


def encode_payload(payload: dict) -> str:
    """base64url sans padding, comme Buffer.toString('base64url')."""
    raw = canonical_json(payload).encode("utf-8")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def decode_payload(data: str) -> dict:
    """Lève CorruptedInput si la donnée n'est pas un objet JSON encodé en base64url."""
    try:
        raw = base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError, RecursionError) as exc:
        raise CorruptedInput("Données corrompues ou illisibles.") from exc
    if not isinstance(payload, dict):
        raise CorruptedInput("Données corrompues ou illisibles.")
    return payload


def generate_verification_url(
    convention: Convention,
    kind: DocumentKind,
    signatures: Optional[dict] = None,
) -> VerificationLink:
    payload = (
        build_convention_payload(convention, signatures)
        if kind == DocumentKind.CONVENTION
        else build_attestation_payload(convention)
    )
    signature = sign_payload(payload)
    query = urlencode({"data": encode_payload(payload), "sig": signature})
    return VerificationLink(
        url=f"{settings.APP_BASE_URL.rstrip('/')}/verify?{query}",
        signature=signature,
        hash_display=signature[:HASH_DISPLAY_LENGTH].upper(),
    )


def generate_qr_image(url: str) -> bytes:
    """Génère une image PNG du QR code encodant le lien de vérification."""
    qr = qrcode.QRCode(version=None, box_size=10, border=4)
    qr.add_data(url)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def _format_date(value: Optional[str], with_time: bool = False) -> Optional[str]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return str(value)
    return parsed.strftime("%d/%m/%Y %H:%M" if with_time else "%d/%m/%Y")


def build_summary(payload: dict) -> dict:
    """Résumé lisible construit uniquement depuis le payload vérifié."""
    dates = payload.get("d") if isinstance(payload.get("d"), dict) else {}
    summary = {
        "document_id": payload.get("id"),
        "document_type": "Convention de Stage" if payload.get("t") == "c" else "Attestation de Stage",
        "student": payload.get("s"),
        "company": payload.get("e"),
        "period": f"{_format_date(dates.get('s'))} - {_format_date(dates.get('f'))}",
    }
    if payload.get("h") is not None:
        summary["total_days"] = payload["h"]
    if payload.get("sn"):
        summary["signed_by"] = f"{payload['sn']} ({payload['sf']})" if payload.get("sf") else payload["sn"]
    if payload.get("sd"):
        summary["signed_at"] = _format_date(payload["sd"], with_time=True)
    return summary


def ensure_integrity(payload: dict, sig: str) -> None:
    """Lève IntegrityFailure si la signature HMAC ne correspond pas au payload."""
    if not verify_payload(payload, sig):
        raise IntegrityFailure("DOCUMENT NON CERTIFIÉ : la signature numérique de ce document est invalide.")


def verify_link(data: Optional[str], sig: Optional[str]) -> VerificationResult:
    """Classe un lien de vérification. Ne lève jamais."""
    if not data or not sig:
        return VerificationResult(VerificationOutcome.MISSING, "Paramètres manquants ou lien invalide.")

    try:
        payload = decode_payload(data)
    except CorruptedInput as exc:
        logger.info("Lien de vérification illisible : %s", exc)
        return VerificationResult(VerificationOutcome.CORRUPTED, str(exc))

    try:
        ensure_integrity(payload, sig)
    except IntegrityFailure as exc:
        logger.warning("Lien de vérification non certifié (id=%s)", payload.get("id"))
        return VerificationResult(VerificationOutcome.NOT_CERTIFIED, str(exc), payload=payload)

    signatories = [
        {"name": s.get("n"), "role": s.get("r"), "signed_at": _format_date(s.get("d"))}
        for s in payload.get("sigs") or []
        if isinstance(s, dict)
    ]
    return VerificationResult(
        VerificationOutcome.CERTIFIED,
        "CERTIFIÉ CONFORME : signature numérique valide.",
        summary=build_summary(payload),
        payload=payload,
        signatories=signatories,
    )
