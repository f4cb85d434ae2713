"""
Tests sur une vraie base SQLite : les garanties d'accès concurrent reposent sur le SQL
(DELETE ... RETURNING, UPDATE conditionnels), pas seulement sur l'ordre des appels Python.
Chaque appelant a sa propre session, comme deux requêtes HTTP distinctes.
"""

import uuid
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

import app.models  # noqa: F401  enregistre toutes les tables
from app.database import Base
from app.models.convention import Convention, ConventionAuditLog, ConventionStatus, SignatureStep
from app.models.otp import OtpCode, OtpPurpose, RateLimitCounter
from app.services import convention_service, otp_service
from app.services.errors import InvalidCode, StaleState
from app.services.rate_limit_service import check_rate_limit, rate_limit_key


# --- Helpers ---

@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'pfmp.db'}")
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False)
    yield factory
    engine.dispose()


@pytest.fixture
def sessions(session_factory):
    """Deux sessions indépendantes sur la même base."""
    first, second = session_factory(), session_factory()
    yield first, second
    first.close()
    second.close()


def insert_convention(db, status=ConventionStatus.SUBMITTED) -> uuid.UUID:
    convention = Convention(
        id=uuid.uuid4(),
        eleve_nom="Dupont",
        eleve_prenom="Marie",
        eleve_email="marie@eleve.fr",
        est_mineur=False,
        ecole_chef_email="chef@ecole.fr",
        prof_nom="Mme Leroy",
        prof_email="prof@ecole.fr",
        ent_nom="Boulangerie Paul",
        ent_rep_email="patron@boulangerie.fr",
        tuteur_email="tuteur@boulangerie.fr",
        stage_date_debut=date(2026, 5, 4),
        stage_date_fin=date(2026, 5, 29),
        status=status.value,
        signatures={"student": {"code": "ABCDEFGH-12345", "at": "2026-03-01T10:00:00+00:00"}},
        invalid_emails=[],
    )
    db.add(convention)
    db.commit()
    return convention.id


def insert_code(db, email, code, purpose=OtpPurpose.SIGNATURE, convention_id=None, ttl_minutes=10):
    db.add(OtpCode(
        email=email,
        code=code,
        purpose=purpose.value,
        convention_id=convention_id,
        expires_at=datetime.now(timezone.utc) + timedelta(minutes=ttl_minutes),
    ))
    db.commit()


def remaining_codes(db, email):
    return db.execute(select(OtpCode.code).where(OtpCode.email == email)).scalars().all()


def audit_trail(db):
    rows = db.execute(
        select(ConventionAuditLog.convention_id, ConventionAuditLog.action).order_by(ConventionAuditLog.id)
    ).all()
    return [(row.convention_id, row.action) for row in rows]


# --- Codes à usage unique ---

def test_un_seul_appelant_consomme_le_code(sessions):
    first, second = sessions
    insert_code(first, "a@b.com", "4321", OtpPurpose.ACTIVATION)

    otp_service.verify_code(first, "a@b.com", "4321", OtpPurpose.ACTIVATION)
    with pytest.raises(InvalidCode):
        otp_service.verify_code(second, "a@b.com", "4321", OtpPurpose.ACTIVATION)


def test_deux_codes_d_activation_purges_ensemble(sessions):
    first, _ = sessions
    insert_code(first, "a@b.com", "1111", OtpPurpose.ACTIVATION)
    insert_code(first, "a@b.com", "2222", OtpPurpose.ACTIVATION)

    otp_service.verify_code(first, "a@b.com", "2222", OtpPurpose.ACTIVATION)

    assert remaining_codes(first, "a@b.com") == []
    with pytest.raises(InvalidCode):
        otp_service.verify_code(first, "a@b.com", "1111", OtpPurpose.ACTIVATION)


def test_purge_limitee_au_meme_usage(sessions):
    first, _ = sessions
    insert_code(first, "a@b.com", "1111", OtpPurpose.GENERIC)
    insert_code(first, "a@b.com", "2222", OtpPurpose.ACTIVATION)

    otp_service.verify_code(first, "a@b.com", "2222", OtpPurpose.ACTIVATION)

    assert remaining_codes(first, "a@b.com") == ["1111"]


def test_code_d_une_autre_convention_refuse(sessions):
    """Enseignant référent de deux conventions : le code de A ne signe pas B."""
    first, _ = sessions
    conv_a = insert_convention(first)
    conv_b = insert_convention(first)
    insert_code(first, "prof@ecole.fr", "5555", convention_id=conv_a)

    with pytest.raises(InvalidCode):
        convention_service.sign_step(first, conv_b, SignatureStep.TEACHER, "5555")

    first.expire_all()
    assert first.get(Convention, conv_b).status == ConventionStatus.SUBMITTED.value
    assert remaining_codes(first, "prof@ecole.fr") == ["5555"]
    assert audit_trail(first) == []


# --- Signature d'une étape ---

def test_signature_complete_journal_sur_la_bonne_convention(sessions):
    first, _ = sessions
    conv_id = insert_convention(first)

    with patch("app.services.otp_service.email_service.send_signature_otp_email"):
        record = otp_service.request_code(first, "prof@ecole.fr", OtpPurpose.SIGNATURE, conv_id, ip="1.1.1.1")
    with patch("app.services.convention_service.email_service.send_signature_request_email") as notify:
        convention = convention_service.sign_step(
            first, conv_id, SignatureStep.TEACHER, record.code, actor_ip="1.1.1.1"
        )

    assert convention.status == ConventionStatus.VALIDATED_TEACHER.value
    assert len(convention.certificate_hash) == 12
    assert notify.call_args.args[0] == "patron@boulangerie.fr"
    assert audit_trail(first) == [(conv_id, "OTP_SENT"), (conv_id, "OTP_VALIDATED"), (conv_id, "SIGNED")]


def test_signature_concurrente_stale_state(sessions):
    """
    La première session lit la convention en SUBMITTED, la seconde la fait avancer
    avant l'écriture : l'UPDATE conditionnel ne touche aucune ligne.
    """
    first, second = sessions
    conv_id = insert_convention(first)
    insert_code(first, "prof@ecole.fr", "7777", convention_id=conv_id)
    assert first.get(Convention, conv_id).status == ConventionStatus.SUBMITTED.value

    winner = second.get(Convention, conv_id)
    winner.status = ConventionStatus.VALIDATED_TEACHER.value
    second.commit()

    with pytest.raises(StaleState):
        convention_service.sign_step(first, conv_id, SignatureStep.TEACHER, "7777")

    first.expire_all()
    convention = first.get(Convention, conv_id)
    assert convention.status == ConventionStatus.VALIDATED_TEACHER.value
    assert "teacher" not in convention.signatures
    assert (conv_id, "SIGNED") not in audit_trail(first)


# --- Rate limiting ---

def test_compteur_partage_entre_sessions(sessions):
    """Cinq tentatives réparties sur deux sessions remplissent le même compteur."""
    first, second = sessions
    now = datetime.now(timezone.utc)

    results = [check_rate_limit(db, "otp-verify", "10.0.0.1", now=now) for db in (first, second) * 3]

    assert results == [True, True, True, True, True, False]
    first.expire_all()
    assert first.get(RateLimitCounter, rate_limit_key("otp-verify", "10.0.0.1")).count == 5


def test_compteur_par_adresse_ip(sessions):
    first, second = sessions
    now = datetime.now(timezone.utc)
    for _ in range(5):
        check_rate_limit(first, "otp-send", "10.0.0.1", now=now)

    assert check_rate_limit(first, "otp-send", "10.0.0.1", now=now) is False
    assert check_rate_limit(second, "otp-send", "10.0.0.2", now=now) is True
