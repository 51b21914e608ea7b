import base64
import json

from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from opsboard.auth import _decode_jwt, get_current_user, normalized_role_set


def make_mock_token(payload):
    header = base64.urlsafe_b64encode(json.dumps({"alg": "none"}).encode()).rstrip(b"=")
    body = base64.urlsafe_b64encode(json.dumps(payload).encode()).rstrip(b"=")
    return f"{header.decode()}.{body.decode()}."


def _build_test_app():
    app = FastAPI()

    @app.get("/whoami")
    async def whoami(user=Depends(get_current_user)):
        return user

    return app


def test_decode_jwt_dev_mode(monkeypatch):
    monkeypatch.setenv("JWT_VERIFY_SIGNATURE", "false")
    token = make_mock_token({"sub": "user-123", "cognito:groups": ["Client"]})
    decoded = _decode_jwt(token)
    assert decoded.get("sub") == "user-123"


def test_whoami_with_groups(monkeypatch):
    monkeypatch.setenv("JWT_VERIFY_SIGNATURE", "false")
    client = TestClient(_build_test_app())
    token = make_mock_token(
        {
            "sub": "user-123",
            "cognito:username": "tester",
            "email": "test@example.com",
            "name": "Test User",
            "cognito:groups": "Admin,COO",
        }
    )

    response = client.get("/whoami", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    body = response.json()
    assert body["sub"] == "user-123"
    assert body["email"] == "test@example.com"
    assert body["name"] == "Test User"
    assert body["groups"] == ["Admin", "COO"]


def test_missing_authorization_header_is_unauthorized(monkeypatch):
    monkeypatch.setenv("JWT_VERIFY_SIGNATURE", "false")
    client = TestClient(_build_test_app())

    response = client.get("/whoami")
    assert response.status_code == 401


def test_garbage_token_is_unauthorized(monkeypatch):
    monkeypatch.setenv("JWT_VERIFY_SIGNATURE", "false")
    client = TestClient(_build_test_app())

    response = client.get("/whoami", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_token_without_sub_is_unauthorized(monkeypatch):
    monkeypatch.setenv("JWT_VERIFY_SIGNATURE", "false")
    client = TestClient(_build_test_app())
    token = make_mock_token({"email": "nobody@example.com"})

    response = client.get("/whoami", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_signature_verification_requires_issuer_config(monkeypatch):
    monkeypatch.setenv("JWT_VERIFY_SIGNATURE", "true")
    monkeypatch.delenv("COGNITO_ISSUER", raising=False)
    monkeypatch.delenv("COGNITO_AUDIENCE", raising=False)
    client = TestClient(_build_test_app())
    token = make_mock_token({"sub": "user-123"})

    response = client.get("/whoami", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 500


def test_normalized_role_set_ignores_blanks():
    assert normalized_role_set([" Admin ", "", "coo", None]) == {"admin", "coo"}


def test_owner_claim_marks_team_member(monkeypatch):
    monkeypatch.setenv("JWT_VERIFY_SIGNATURE", "false")
    client = TestClient(_build_test_app())
    member = make_mock_token({"sub": "member-1", "custom:owner_id": "owner-1", "cognito:groups": "[Client COO]"})
    owner = make_mock_token({"sub": "owner-1", "custom:owner_id": "owner-1"})

    member_body = client.get("/whoami", headers={"Authorization": f"Bearer {member}"}).json()
    owner_body = client.get("/whoami", headers={"Authorization": f"Bearer {owner}"}).json()

    assert member_body["owner_id"] == "owner-1"
    assert member_body["groups"] == ["Client", "COO"]
    assert owner_body["owner_id"] is None
