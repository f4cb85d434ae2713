"""
Tests unitaires de la primitive de signature HMAC.
"""

import re
from unittest.mock import patch

import pytest

from app.services import signature_service
from app.services.signature_service import (
    DEV_SIGNING_SECRET,
    canonical_json,
    generate_mission_order_hash,
    generate_signature_code,
    get_signing_secret,
    sign_payload,
    verify_payload,
)

SECRET = "cle-de-test"


def test_canonical_json_compact_et_ordre_conserve():
    """Pas d'espaces, ordre des clés tel que construit, accents non échappés."""
    assert canonical_json({"b": 1, "a": "Élève"}) == '{"b":1,"a":"Élève"}'


def test_signature_deterministe():
    payload = {"t": "c", "id": "42", "s": "Dupont Marie"}
    assert sign_payload(payload, SECRET) == sign_payload(dict(payload), SECRET)
    assert len(sign_payload(payload, SECRET)) == 64


def test_signature_depend_de_la_cle():
    payload = {"t": "c", "id": "42"}
    assert sign_payload(payload, SECRET) != sign_payload(payload, "autre-cle")


def test_verify_signature_valide():
    payload = {"t": "a", "id": "42", "h": 20}
    assert verify_payload(payload, sign_payload(payload, SECRET), SECRET) is True


def test_verify_payload_modifie():
    """Un seul champ changé invalide la signature."""
    payload = {"t": "a", "id": "42", "h": 20}
    sig = sign_payload(payload, SECRET)
    assert verify_payload({"t": "a", "id": "42", "h": 21}, sig, SECRET) is False


def test_verify_bit_modifie_dans_la_signature():
    payload = {"t": "c", "id": "42"}
    sig = sign_payload(payload, SECRET)
    flipped = format(int(sig[0], 16) ^ 1, "x") + sig[1:]
    assert verify_payload(payload, flipped, SECRET) is False


@pytest.mark.parametrize("signature", ["", "abc", "zz" * 32, "00" * 31])
def test_verify_ne_leve_jamais(signature):
    """Longueur incorrecte ou non hexadécimal → False, sans exception."""
    assert verify_payload({"t": "c"}, signature, SECRET) is False


def test_cle_absente_en_production_leve():
    with patch.object(signature_service.settings, "DOCUMENT_SIGNING_SECRET", ""), \
         patch.object(signature_service.settings, "ENV", "production"):
        with pytest.raises(RuntimeError):
            get_signing_secret()


def test_cle_absente_en_developpement_bascule_sur_cle_fixe():
    with patch.object(signature_service.settings, "DOCUMENT_SIGNING_SECRET", ""), \
         patch.object(signature_service.settings, "ENV", "development"):
        assert get_signing_secret() == DEV_SIGNING_SECRET


def test_cle_configuree_utilisee():
    with patch.object(signature_service.settings, "DOCUMENT_SIGNING_SECRET", "cle-prod"), \
         patch.object(signature_service.settings, "ENV", "production"):
        assert get_signing_secret() == "cle-prod"


def test_format_code_de_signature():
    for _ in range(50):
        assert re.fullmatch(r"[A-Z]{8}-\d{5}", generate_signature_code())


def test_format_hash_ordre_de_mission():
    assert re.fullmatch(r"ODM-\d{13,}-[0-9a-f]{5}", generate_mission_order_hash())
    assert generate_mission_order_hash() != generate_mission_order_hash()
