"""Pytest configuration and fixtures."""
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from backend import analysis, claims, server
from backend.products import STRIPE_PRODUCTS

# 1x1 PNG
TEST_IMAGE_B64 = "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
TEST_IMAGE_DATA_URL = f"data:image/png;base64,{TEST_IMAGE_B64}"
TEST_PASSWORD = "TestPass123!"

SAMPLE_ANALYSIS = {
    "perceived_age": 31,
    "confidence": 0.82,
    "visual_age_analysis": "Even skin tone with light expression lines around the eyes.",
    "deficiencies": {
        "skin_tone": "Slight dullness on the cheeks",
        "eyes": "Mild shadows under the eyes",
        "jawline": "Some tension",
        "lips": "Slightly dry",
        "cheeks": "Healthy color",
        "nutrient_flags": ["iron", "omega-3"],
    },
    "recommendations": {
        "diet": {"eliminate": ["added sugar"], "add": ["leafy greens"], "supplements": ["omega-3 1g"]},
    },
    "preview_insights": [
        {"star_rating": 4, "emotional_hook": "Your skin is quietly asking for water",
         "conversion_tease": "See the 3 foods that restore your glow", "category": "skin"},
        {"star_rating": 3, "emotional_hook": "Stress is sitting in your jaw",
         "conversion_tease": "Unlock your evening release ritual", "category": "stress"},
    ],
}


class FrozenClock:
    def __init__(self):
        self.now = datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)

    def aware(self):
        return self.now.replace(tzinfo=timezone.utc)


@pytest.fixture
def mock_db(monkeypatch):
    db = AsyncMongoMockClient()[f"glowguide_test_{uuid.uuid4().hex[:8]}"]
    monkeypatch.setattr(server, "db", db)
    return db


@pytest.fixture
def clock(monkeypatch):
    frozen = FrozenClock()
    monkeypatch.setattr(claims, "utcnow", frozen)
    return frozen


@pytest.fixture
def fake_ai(monkeypatch):
    """Stub out Google Vision and OpenAI; records what the pipeline sent them"""
    calls = {"vision": [], "llm": []}

    def detect_faces(base64_image):
        calls["vision"].append(base64_image)
        return [{"detectionConfidence": 0.97, "joyLikelihood": "LIKELY"}]

    def generate_wellness_insights(face_annotations, base64_image, content_type="image/jpeg"):
        calls["llm"].append((face_annotations, content_type))
        return {**SAMPLE_ANALYSIS, "preview_insights": list(SAMPLE_ANALYSIS["preview_insights"])}

    monkeypatch.setattr(analysis, "GOOGLE_VISION_API_KEY", "test-vision-key")
    monkeypatch.setattr(analysis, "OPENAI_API_KEY", "test-openai-key")
    monkeypatch.setattr(analysis, "detect_faces", detect_faces)
    monkeypatch.setattr(analysis, "generate_wellness_insights", generate_wellness_insights)
    return calls


@pytest.fixture
def client(mock_db, clock):
    return TestClient(server.app)


@pytest.fixture
def price_id():
    return STRIPE_PRODUCTS[0].price_id


def register_user(client, email=None, password=TEST_PASSWORD):
    email = email or f"user_{uuid.uuid4().hex[:8]}@test.com"
    response = client.post("/api/auth/register", json={
        "email": email,
        "password": password,
        "name": "Test User",
    })
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def subscribe(client, headers, price_id=None):
    response = client.post("/api/subscription/checkout", headers=headers, json={
        "price_id": price_id or STRIPE_PRODUCTS[0].price_id,
        "success_url": "https://app.test/?payment_success=true",
        "cancel_url": "https://app.test/",
    })
    assert response.status_code == 200, response.text
    return response.json()


def analyze(client, image_data=TEST_IMAGE_DATA_URL):
    response = client.post("/api/analyze-photo", json={"imageData": image_data})
    assert response.status_code == 200, response.text
    return response.json()
