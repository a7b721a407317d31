"""
Shared fixtures for the readmission risk service tests.

The patient store runs against in-memory SQLite and the Gemini client is
unconfigured, so recommendations use the fallback list unless a test wires
in an httpx.MockTransport.
"""

import pytest
from fastapi.testclient import TestClient

from readmission_risk.api import app, app_state
from readmission_risk.model import RiskScorer
from readmission_risk.recommendations import GeminiRecommender
from readmission_risk.store import PatientStore


@pytest.fixture
def scorer():
    return RiskScorer()


@pytest.fixture
def store():
    """Fresh in-memory patient store."""
    patient_store = PatientStore("sqlite:///:memory:")
    patient_store.create_tables()
    yield patient_store
    patient_store.close()


@pytest.fixture
def client(store):
    """Test client with an isolated store and a fallback-only recommender."""
    app_state.store = store
    app_state.scorer = RiskScorer()
    app_state.recommender = GeminiRecommender(api_key="")

    yield TestClient(app)

    # Clean up
    app_state.store = None
    app_state.scorer = None
    app_state.recommender = None
    app_state.predictions_performed = 0
