"""
Tests unitaires du rate limiting par (action, IP).
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import SQLAlchemyError

from app.models.otp import RateLimitCounter
from app.services.errors import RateLimited
from app.services.rate_limit_service import RATE_LIMITS, check_rate_limit, enforce_rate_limit, rate_limit_key

NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def make_db_mock(rowcount=0, counter=None):
    db = MagicMock()
    db.execute.return_value.rowcount = rowcount
    db.get.return_value = counter
    return db


def test_cle_normalisee():
    assert rate_limit_key("otp-send", "192.168.1.10") == "ratelimit_otp-send_192_168_1_10"


def test_table_des_limites():
    assert RATE_LIMITS["send-email"].max == 10
    assert RATE_LIMITS["otp-verify"].window == timedelta(minutes=15)
    assert RATE_LIMITS["otp-activation-send"].window == timedelta(seconds=60)


def test_increment_dans_la_fenetre():
    db = make_db_mock(rowcount=1)
    assert check_rate_limit(db, "otp-send", "1.2.3.4", now=NOW) is True
    db.commit.assert_called_once()
    db.get.assert_not_called()


def test_nouvelle_cle_creee():
    db = make_db_mock(rowcount=0, counter=None)
    assert check_rate_limit(db, "otp-send", "1.2.3.4", now=NOW) is True
    added = db.add.call_args.args[0]
    assert isinstance(added, RateLimitCounter)
    assert added.count == 1
    assert added.window_start == NOW


def test_limite_atteinte():
    """Compteur plein dans la fenêtre courante → refus, sans écriture."""
    counter = RateLimitCounter(key="k", count=5, window_start=NOW - timedelta(seconds=10))
    db = make_db_mock(rowcount=0, counter=counter)
    assert check_rate_limit(db, "otp-send", "1.2.3.4", now=NOW) is False
    db.commit.assert_not_called()
    db.rollback.assert_called_once()


def test_sixieme_verification_refusee_sur_15_minutes():
    counter = RateLimitCounter(key="k", count=5, window_start=NOW - timedelta(minutes=14))
    db = make_db_mock(rowcount=0, counter=counter)
    assert check_rate_limit(db, "otp-verify", "1.2.3.4", now=NOW) is False


def test_fenetre_expiree_reinitialisee():
    counter = RateLimitCounter(key="k", count=5, window_start=NOW - timedelta(minutes=2))
    db = make_db_mock(rowcount=0, counter=counter)
    assert check_rate_limit(db, "otp-send", "1.2.3.4", now=NOW) is True
    assert counter.count == 1
    assert counter.window_start == NOW


def test_base_indisponible_laisse_passer():
    db = MagicMock()
    db.execute.side_effect = SQLAlchemyError("down")
    assert check_rate_limit(db, "otp-send", "1.2.3.4", now=NOW) is True
    db.rollback.assert_called_once()


def test_action_inconnue():
    with pytest.raises(KeyError):
        check_rate_limit(MagicMock(), "inconnue", "1.2.3.4")


def test_enforce_leve_rate_limited_avec_le_message():
    counter = RateLimitCounter(key="k", count=5, window_start=NOW - timedelta(minutes=1))
    db = make_db_mock(rowcount=0, counter=counter)
    with pytest.raises(RateLimited, match="Réessayez dans 15 minutes"):
        enforce_rate_limit(db, "otp-verify", "1.2.3.4", now=NOW)


def test_enforce_sous_la_limite():
    assert enforce_rate_limit(make_db_mock(rowcount=1), "otp-verify", "1.2.3.4", now=NOW) is None
