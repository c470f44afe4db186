"""HTTP tests for the certificate API."""

import warnings
from contextlib import asynccontextmanager
from unittest.mock import patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import negative_serial_pem
from emailca.api import certificates as certificates_api
from emailca.ca.crypto import SigningError
from emailca.services.certificate_service import CertificateService, SerialCollision
from shared.database import Base, build_engine, build_session_factory, get_db
from shared.security import generate_api_key, hash_api_key


@pytest.fixture(scope="session")
def operator_key() -> str:
    return generate_api_key()


@pytest.fixture(scope="session")
def operator_key_hash(operator_key) -> str:
    return hash_api_key(operator_key)


@pytest.fixture
def client(authority, operator_key_hash):
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    session_factory = build_session_factory(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        yield
        await engine.dispose()

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app = FastAPI(lifespan=lifespan)
    app.include_router(certificates_api.router)
    app.dependency_overrides[get_db] = override_get_db
    certificates_api.set_authority(authority)

    with patch("emailca.api.auth.get_operator_key_hash", return_value=operator_key_hash):
        with TestClient(app) as test_client:
            yield test_client


@pytest.fixture
def auth_headers(operator_key) -> dict[str, str]:
    return {"X-API-Key": operator_key}


def _issue(client, auth_headers, public_key_pem, email="alice@example.com", name="Alice A"):
    response = client.post(
        "/api/certificates/issue",
        json={"public_key": public_key_pem, "email": email, "name": name},
        headers=auth_headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


class TestCAEndpoint:
    def test_get_ca_certificate(self, client, authority):
        response = client.get("/api/certificates/ca")

        assert response.status_code == 200
        assert response.json() == {"certificate": authority.get_ca_certificate_pem()}


class TestIssueEndpoint:
    """Tests for POST /api/certificates/issue."""

    def test_issue_returns_certificate(self, client, auth_headers, user_public_key_pem):
        body = _issue(client, auth_headers, user_public_key_pem)

        assert body["certificate"].startswith("-----BEGIN CERTIFICATE-----")
        assert len(body["serial_number"]) == 32
        assert body["expires_at"]

    def test_issue_accepts_camel_case_key_field(self, client, auth_headers, user_public_key_pem):
        response = client.post(
            "/api/certificates/issue",
            json={"publicKey": user_public_key_pem, "email": "alice@example.com", "name": "Alice A"},
            headers=auth_headers,
        )
        assert response.status_code == 201

    def test_issue_requires_api_key(self, client, user_public_key_pem):
        response = client.post(
            "/api/certificates/issue",
            json={"public_key": user_public_key_pem, "email": "alice@example.com", "name": "A"},
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "Missing API key"

    def test_issue_rejects_wrong_prefix(self, client, user_public_key_pem):
        response = client.post(
            "/api/certificates/issue",
            json={"public_key": user_public_key_pem, "email": "alice@example.com", "name": "A"},
            headers={"X-API-Key": "wrong_something"},
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid API key format"

    def test_issue_rejects_unknown_key(self, client, user_public_key_pem):
        response = client.post(
            "/api/certificates/issue",
            json={"public_key": user_public_key_pem, "email": "alice@example.com", "name": "A"},
            headers={"X-API-Key": generate_api_key()},
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid API key"

    def test_issue_rejects_bad_public_key(self, client, auth_headers):
        response = client.post(
            "/api/certificates/issue",
            json={"public_key": "garbage", "email": "alice@example.com", "name": "Alice A"},
            headers=auth_headers,
        )
        assert response.status_code == 400
        assert "RSA public key" in response.json()["detail"]

    def test_issue_rejects_bad_email(self, client, auth_headers, user_public_key_pem):
        response = client.post(
            "/api/certificates/issue",
            json={"public_key": user_public_key_pem, "email": "nope", "name": "Alice A"},
            headers=auth_headers,
        )
        assert response.status_code == 400

    def test_serial_collision_maps_to_503(self, client, auth_headers, user_public_key_pem):
        with patch.object(
            CertificateService, "issue_certificate", side_effect=SerialCollision("ab")
        ):
            response = client.post(
                "/api/certificates/issue",
                json={"public_key": user_public_key_pem, "email": "a@example.com", "name": "A"},
                headers=auth_headers,
            )
        assert response.status_code == 503

    def test_signing_failure_maps_to_500(self, client, auth_headers, user_public_key_pem):
        with patch.object(
            CertificateService, "issue_certificate", side_effect=SigningError("broken key")
        ):
            response = client.post(
                "/api/certificates/issue",
                json={"public_key": user_public_key_pem, "email": "a@example.com", "name": "A"},
                headers=auth_headers,
            )
        assert response.status_code == 500
        assert "broken key" not in response.text


class TestVerifyEndpoint:
    """Tests for POST /api/certificates/verify."""

    def test_valid_certificate(self, client, auth_headers, user_public_key_pem):
        issued = _issue(client, auth_headers, user_public_key_pem)

        response = client.post(
            "/api/certificates/verify", json={"certificate": issued["certificate"]}
        )

        assert response.status_code == 200
        assert response.json() == {
            "is_valid": True,
            "is_revoked": False,
            "message": "Certificate is valid",
            "revoked_at": None,
            "reason": None,
        }

    def test_malformed_certificate(self, client):
        response = client.post("/api/certificates/verify", json={"certificate": "garbage"})

        assert response.status_code == 200
        body = response.json()
        assert body["is_valid"] is False
        assert body["is_revoked"] is False
        assert body["message"] == "Certificate could not be parsed"

    def test_invalid_certificate_hides_reason(self, client, authority):
        response = client.post(
            "/api/certificates/verify",
            json={"certificate": authority.get_ca_certificate_pem()},
        )

        body = response.json()
        assert body["is_valid"] is False
        assert body["message"] == "Certificate validation failed"
        assert "NOT_A_LEAF" not in response.text

    def test_negative_serial_is_reported_as_unparseable(self, client, user_private_key):
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            response = client.post(
                "/api/certificates/verify",
                json={"certificate": negative_serial_pem(user_private_key)},
            )

        assert response.status_code == 200
        assert response.json()["message"] == "Certificate could not be parsed"

    def test_missing_certificate_field(self, client):
        response = client.post("/api/certificates/verify", json={})
        assert response.status_code == 422

    def test_revoked_certificate(self, client, auth_headers, user_public_key_pem):
        issued = _issue(client, auth_headers, user_public_key_pem)
        client.post(
            "/api/certificates/revoke",
            json={"serial_number": issued["serial_number"], "reason": "key-compromise"},
            headers=auth_headers,
        )

        response = client.post(
            "/api/certificates/verify", json={"certificate": issued["certificate"]}
        )

        body = response.json()
        assert body["is_valid"] is False
        assert body["is_revoked"] is True
        assert body["message"] == "Certificate has been revoked"
        assert body["reason"] == "key-compromise"
        assert body["revoked_at"] is not None


class TestRevokeEndpoint:
    """Tests for POST /api/certificates/revoke and GET /api/certificates/crl."""

    def test_revoke(self, client, auth_headers):
        response = client.post(
            "/api/certificates/revoke",
            json={"serialNumber": "0A:1B", "reason": "superseded"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json() == {
            "message": "Certificate revoked successfully",
            "serial_number": "a1b".rjust(32, "0"),
        }

    def test_revoke_requires_api_key(self, client):
        response = client.post("/api/certificates/revoke", json={"serial_number": "0a1b"})
        assert response.status_code == 401

    def test_duplicate_revoke_conflicts(self, client, auth_headers):
        payload = {"serial_number": "0a1b", "reason": "key-compromise"}
        client.post("/api/certificates/revoke", json=payload, headers=auth_headers)

        response = client.post(
            "/api/certificates/revoke",
            json={"serial_number": "0A1B", "reason": "superseded"},
            headers=auth_headers,
        )

        assert response.status_code == 409
        crl = client.get("/api/certificates/crl").json()
        assert [entry["reason"] for entry in crl] == ["key-compromise"]

    def test_malformed_serial(self, client, auth_headers):
        response = client.post(
            "/api/certificates/revoke", json={"serial_number": "xyz"}, headers=auth_headers
        )
        assert response.status_code == 400

    def test_crl_lists_most_recent_first(self, client, auth_headers):
        for serial in ["01", "02"]:
            client.post(
                "/api/certificates/revoke", json={"serial_number": serial}, headers=auth_headers
            )

        response = client.get("/api/certificates/crl")

        assert response.status_code == 200
        entries = response.json()
        assert [e["serial_number"][-2:] for e in entries] == ["02", "01"]
        assert all(e["reason"] == "unspecified" for e in entries)
        assert all(e["revoked_at"] for e in entries)

    def test_empty_crl(self, client):
        response = client.get("/api/certificates/crl")
        assert response.status_code == 200
        assert response.json() == []
