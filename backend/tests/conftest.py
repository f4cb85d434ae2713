"""
Configuration partagée pour tous les tests.
Override la dépendance get_db pour éviter toute connexion réelle à PostgreSQL.
"""

import jwt
import pytest
from fastapi.testclient import TestClient
from unittest.mock import MagicMock

from app.config import settings
from app.database import get_db
from app.main import app


@pytest.fixture
def mock_db():
    """Session mockée ; l'UPDATE conditionnel du rate limit touche une ligne (limite non atteinte)."""
    db = MagicMock()
    db.execute.return_value.rowcount = 1
    return db


@pytest.fixture
def client(mock_db):
    """Client HTTP de test avec la BDD mockée."""
    app.dependency_overrides[get_db] = lambda: mock_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """En-tête Authorization avec un jeton signé par la clé de l'application."""
    token = jwt.encode({"sub": "user-1", "email": "prof@ecole.fr"}, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return {"Authorization": f"Bearer {token}"}
