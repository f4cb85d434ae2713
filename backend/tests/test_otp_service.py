"""
Tests unitaires du service OTP : génération, envoi, consommation à usage unique.
"""

import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from app.models.otp import OtpPurpose
from app.services.errors import CodeExpired, DeliveryFailure, InvalidCode, NotFound, ValidationError
from app.services.otp_service import generate_otp_code, purge_expired_codes, request_code, verify_code

NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


# --- Helpers ---

def make_db_mock(rows=None, convention=object()):
    db = MagicMock()
    db.get.return_value = convention
    db.execute.return_value.all.return_value = rows or []
    return db


def row(expires_in_minutes: int, convention_id=None, purpose="signature"):
    return SimpleNamespace(
        expires_at=NOW + timedelta(minutes=expires_in_minutes), convention_id=convention_id, purpose=purpose
    )


# --- Génération ---

def test_code_quatre_chiffres_dans_l_intervalle():
    for _ in range(200):
        code = generate_otp_code()
        assert len(code) == 4
        assert 1000 <= int(code) <= 9999


# --- Envoi ---

def test_request_code_signature_expire_apres_10_minutes():
    db = make_db_mock()
    conv_id = uuid.uuid4()
    with patch("app.services.otp_service.email_service.send_signature_otp_email") as send, \
         patch("app.services.otp_service.append_audit_log") as audit:
        record = request_code(db, "eleve@ecole.fr", OtpPurpose.SIGNATURE, conv_id, ip="1.2.3.4", now=NOW)

    assert record.expires_at == NOW + timedelta(minutes=10)
    assert record.purpose == "signature"
    db.add.assert_called_once_with(record)
    send.assert_called_once_with("eleve@ecole.fr", record.code, 10)
    audit.assert_called_once()
    assert audit.call_args.args[2].value == "OTP_SENT"


def test_request_code_signature_sans_convention():
    with pytest.raises(ValidationError):
        request_code(make_db_mock(), "eleve@ecole.fr", OtpPurpose.SIGNATURE, None)


def test_request_code_convention_inconnue():
    with pytest.raises(NotFound):
        request_code(make_db_mock(convention=None), "eleve@ecole.fr", OtpPurpose.SIGNATURE, uuid.uuid4())


def test_echec_envoi_signature_remonte():
    """Un code de signature non délivré est une erreur pour l'appelant."""
    db = make_db_mock()
    with patch(
        "app.services.otp_service.email_service.send_signature_otp_email",
        side_effect=DeliveryFailure("smtp"),
    ), patch("app.services.convention_service.mark_invalid_address"):
        with pytest.raises(DeliveryFailure):
            request_code(db, "eleve@ecole.fr", OtpPurpose.SIGNATURE, uuid.uuid4(), now=NOW)


def test_echec_envoi_activation_non_bloquant():
    """Le code d'activation reste créé et utilisable malgré l'échec d'envoi."""
    db = make_db_mock()
    with patch(
        "app.services.otp_service.email_service.send_activation_otp_email",
        side_effect=DeliveryFailure("smtp"),
    ):
        record = request_code(db, "nouveau@ecole.fr", OtpPurpose.ACTIVATION, now=NOW)

    assert record.purpose == "activation"
    db.commit.assert_called()


def test_echec_envoi_signature_marque_l_adresse_invalide():
    """Adresse refusée : l'étape du destinataire est bloquée jusqu'à correction."""
    convention = SimpleNamespace(id=uuid.uuid4())
    db = make_db_mock(convention=convention)
    with patch(
        "app.services.otp_service.email_service.send_signature_otp_email",
        side_effect=DeliveryFailure("smtp"),
    ), patch("app.services.convention_service.mark_invalid_address") as mark:
        with pytest.raises(DeliveryFailure):
            request_code(db, "tuteur@boulangerie.fr", OtpPurpose.SIGNATURE, convention.id, now=NOW)

    mark.assert_called_once_with(db, convention, "tuteur@boulangerie.fr")


def test_echec_envoi_activation_ne_marque_rien():
    db = make_db_mock()
    with patch(
        "app.services.otp_service.email_service.send_activation_otp_email",
        side_effect=DeliveryFailure("smtp"),
    ), patch("app.services.convention_service.mark_invalid_address") as mark:
        request_code(db, "nouveau@ecole.fr", OtpPurpose.ACTIVATION, now=NOW)
    mark.assert_not_called()


# --- Vérification ---

def test_verify_format_invalide():
    db = make_db_mock()
    with pytest.raises(ValidationError):
        verify_code(db, "a@b.fr", "12a4")
    db.execute.assert_not_called()


def test_verify_aucun_code():
    with pytest.raises(InvalidCode):
        verify_code(make_db_mock(rows=[]), "a@b.fr", "1234", now=NOW)


def test_verify_codes_expires_supprimes_quand_meme():
    """Tous expirés → CodeExpired, et la suppression a bien été validée."""
    db = make_db_mock(rows=[row(-1), row(-30)])
    with pytest.raises(CodeExpired):
        verify_code(db, "a@b.fr", "1234", now=NOW)
    db.commit.assert_called_once()


def test_verify_deux_codes_un_valide_suffit():
    """Deux codes identiques (un expiré, un valide) : succès et les deux sont supprimés."""
    conv_id = uuid.uuid4()
    db = make_db_mock(rows=[row(-5, conv_id), row(5, conv_id)])
    with patch("app.services.otp_service.append_audit_log") as audit:
        audit.return_value = "entree"
        result = verify_code(db, "a@b.fr", "1234", OtpPurpose.SIGNATURE, ip="9.9.9.9", now=NOW)

    assert result == "entree"
    # DELETE du code, puis purge des autres codes du même email
    assert db.execute.call_count == 2
    args = audit.call_args.args
    assert args[1] == conv_id
    assert args[4] == "Code OTP validé avec succès"
    assert audit.call_args.kwargs["ip"] == "9.9.9.9"


def test_verify_code_sans_convention_pas_d_audit():
    db = make_db_mock(rows=[row(5)])
    with patch("app.services.otp_service.append_audit_log") as audit:
        assert verify_code(db, "a@b.fr", "1234", now=NOW) is None
    audit.assert_not_called()


def test_verify_second_appel_echoue():
    """Le premier appel a supprimé les lignes : le second n'en retrouve aucune."""
    db = MagicMock()
    db.execute.return_value.all.side_effect = [[row(5)], []]
    verify_code(db, "a@b.fr", "1234", now=NOW)
    with pytest.raises(InvalidCode):
        verify_code(db, "a@b.fr", "1234", now=NOW)


def test_verify_erreur_journal_non_bloquante():
    from sqlalchemy.exc import SQLAlchemyError

    db = make_db_mock(rows=[row(5, uuid.uuid4())])
    with patch("app.services.otp_service.append_audit_log", side_effect=SQLAlchemyError("down")):
        assert verify_code(db, "a@b.fr", "1234", now=NOW) is None
    db.rollback.assert_called_once()


def test_purge_codes_expires():
    db = MagicMock()
    db.execute.return_value.rowcount = 3
    assert purge_expired_codes(db, now=NOW) == 3
    db.commit.assert_called_once()


def test_verify_limite_a_la_convention_signee():
    """Un code émis pour une autre convention n'est pas retrouvé."""
    conv_id = uuid.uuid4()
    db = make_db_mock(rows=[])
    with pytest.raises(InvalidCode):
        verify_code(db, "prof@ecole.fr", "1234", OtpPurpose.SIGNATURE, convention_id=conv_id, now=NOW)

    params = db.execute.call_args.args[0].compile().params
    assert conv_id in params.values()


def test_verify_audit_sur_la_convention_demandee():
    conv_id = uuid.uuid4()
    db = make_db_mock(rows=[row(5, conv_id)])
    with patch("app.services.otp_service.append_audit_log") as audit:
        verify_code(db, "prof@ecole.fr", "1234", OtpPurpose.SIGNATURE, convention_id=conv_id, now=NOW)
    assert audit.call_args.args[1] == conv_id


def test_verify_succes_purge_les_autres_codes_du_meme_usage():
    """Deux codes d'activation demandés à la suite : valider le second supprime aussi le premier."""
    db = make_db_mock(rows=[row(5, purpose="activation")])
    verify_code(db, "a@b.com", "2222", OtpPurpose.ACTIVATION, now=NOW)

    purge = db.execute.call_args_list[1].args[0]
    params = purge.compile().params
    assert "a@b.com" in params.values()
    assert ["activation"] in params.values()
    # Le code lui-même n'est pas un critère de la purge
    assert "2222" not in params.values()
