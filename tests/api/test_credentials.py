"""End-to-end tests for the /v1/credentials routes.

Each test drives the real application through TestClient over an
in-memory container: same services, same error mapping, no network.
"""

from __future__ import annotations

import base64
import hashlib
from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from credential_service.container import ServiceContainer
from credential_service.main import create_app
from tests.conftest import FlakyIndex, FlakyLedger, ManualClock, make_container

ISSUER = "did:example:university"

BODY = {
    "subject_identity": "did:example:alice",
    "issuer_identity": ISSUER,
    "claims": {"degree": "BSc Physics", "gpa": 3.7},
    "expiry_date": "2027-01-01T00:00:00+00:00",
}


def _issue(client: TestClient, **overrides) -> dict:
    resp = client.post("/v1/credentials", json={**BODY, **overrides})
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.fixture
def flaky_ledger() -> FlakyLedger:
    return FlakyLedger()


@pytest.fixture
def flaky_client(clock: ManualClock, flaky_ledger: FlakyLedger) -> Iterator[TestClient]:
    container = make_container(clock, ledger=flaky_ledger)
    with TestClient(create_app(container)) as test_client:
        yield test_client


# ---- issue ----


def test_issue_returns_confirmed_credential(client: TestClient) -> None:
    data = _issue(client)
    assert data["status"] == "confirmed"
    assert data["duplicate"] is False
    assert data["ledger_reference"]["transaction_id"]
    assert data["ledger_reference"]["block_height"] >= 1


def test_issue_replay_returns_same_credential(client: TestClient) -> None:
    first = _issue(client, idempotency_key="order-17")
    resp = client.post("/v1/credentials", json={**BODY, "idempotency_key": "order-17"})
    assert resp.status_code == 200
    assert resp.json()["credential_id"] == first["credential_id"]
    assert resp.json()["duplicate"] is True


def test_issue_with_document_records_digest(client: TestClient) -> None:
    document = b"%PDF-1.7 transcript"
    data = _issue(client, document=base64.b64encode(document).decode())

    details = client.get(f"/v1/credentials/{data['credential_id']}").json()
    assert details["document_digest"] == hashlib.sha256(document).hexdigest()
    assert details["blob_reference"]


def test_issue_rejects_invalid_base64(client: TestClient) -> None:
    resp = client.post("/v1/credentials", json={**BODY, "document": "not base64!"})
    assert resp.status_code == 422


@pytest.mark.parametrize(
    "overrides",
    [
        {"claims": {}},
        {"subject_identity": ""},
        {"expiry_date": "2025-06-01T00:00:00+00:00"},
        {"expiry_date": "2027-01-01T00:00:00"},
    ],
    ids=["empty-claims", "blank-subject", "expired", "naive-expiry"],
)
def test_issue_rejects_invalid_input(client: TestClient, overrides: dict) -> None:
    resp = client.post("/v1/credentials", json={**BODY, **overrides})
    assert resp.status_code == 422


def test_issue_ledger_outage_is_503(
    flaky_client: TestClient, flaky_ledger: FlakyLedger
) -> None:
    flaky_ledger.faults.fail("submit")
    resp = flaky_client.post("/v1/credentials", json=BODY)
    assert resp.status_code == 503


# ---- verify ----


def test_verify_valid_credential(client: TestClient) -> None:
    credential_id = _issue(client)["credential_id"]
    resp = client.get(f"/v1/credentials/{credential_id}/verify")
    assert resp.status_code == 200
    data = resp.json()
    assert data["valid"] is True
    assert data["reason_code"] == "OK"
    assert data["sources"] == {"ledger_match": True, "index_match": True, "blob_reachable": True}


def test_verify_unknown_credential_is_not_an_error(client: TestClient) -> None:
    resp = client.get("/v1/credentials/no-such-credential/verify")
    assert resp.status_code == 200
    assert resp.json()["valid"] is False
    assert resp.json()["reason_code"] == "NOT_FOUND"


def test_verify_ledger_outage_reports_unreachable(
    flaky_client: TestClient, flaky_ledger: FlakyLedger
) -> None:
    credential_id = _issue(flaky_client)["credential_id"]
    flaky_ledger.faults.fail("query")
    resp = flaky_client.get(f"/v1/credentials/{credential_id}/verify")
    assert resp.status_code == 200
    assert resp.json()["reason_code"] == "LEDGER_UNREACHABLE"
    assert resp.json()["valid"] is False


def test_verify_tampered_ledger_reports_mismatch(
    flaky_client: TestClient, flaky_ledger: FlakyLedger
) -> None:
    credential_id = _issue(flaky_client)["credential_id"]
    flaky_ledger.tamper(credential_id, "0" * 64)
    resp = flaky_client.get(f"/v1/credentials/{credential_id}/verify?force_refresh=true")
    assert resp.json()["reason_code"] == "HASH_MISMATCH"
    assert resp.json()["sources"]["ledger_match"] is False


def test_verify_index_outage_is_503(clock: ManualClock) -> None:
    index = FlakyIndex()
    container = make_container(clock, index=index)
    with TestClient(create_app(container)) as client:
        index.faults.fail("find_by_id")
        resp = client.get("/v1/credentials/anything/verify")
    assert resp.status_code == 503


# ---- revoke ----


def test_revoke_then_verify(client: TestClient) -> None:
    credential_id = _issue(client)["credential_id"]
    resp = client.post(
        f"/v1/credentials/{credential_id}/revoke",
        json={"reason": "issued in error", "actor": ISSUER},
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "revoked"
    assert data["reason"] == "issued in error"
    assert data["transaction_id"]

    verdict = client.get(f"/v1/credentials/{credential_id}/verify").json()
    assert verdict["reason_code"] == "REVOKED"


def test_revoke_by_stranger_is_403(client: TestClient) -> None:
    credential_id = _issue(client)["credential_id"]
    resp = client.post(
        f"/v1/credentials/{credential_id}/revoke",
        json={"reason": "mine now", "actor": "did:example:mallory"},
    )
    assert resp.status_code == 403


def test_revoke_twice_is_409(client: TestClient) -> None:
    credential_id = _issue(client)["credential_id"]
    body = {"reason": "issued in error", "actor": ISSUER}
    assert client.post(f"/v1/credentials/{credential_id}/revoke", json=body).status_code == 200
    assert client.post(f"/v1/credentials/{credential_id}/revoke", json=body).status_code == 409


def test_revoke_unknown_is_404(client: TestClient) -> None:
    resp = client.post(
        "/v1/credentials/missing/revoke", json={"reason": "x", "actor": ISSUER}
    )
    assert resp.status_code == 404
    assert resp.json()["detail"] == "credential not found"


def test_revoke_requires_reason(client: TestClient) -> None:
    credential_id = _issue(client)["credential_id"]
    resp = client.post(
        f"/v1/credentials/{credential_id}/revoke", json={"reason": "", "actor": ISSUER}
    )
    assert resp.status_code == 422


def test_revoke_ledger_outage_is_503(
    flaky_client: TestClient, flaky_ledger: FlakyLedger
) -> None:
    credential_id = _issue(flaky_client)["credential_id"]
    flaky_ledger.faults.fail("revoke")
    resp = flaky_client.post(
        f"/v1/credentials/{credential_id}/revoke",
        json={"reason": "issued in error", "actor": ISSUER},
    )
    assert resp.status_code == 503
    details = flaky_client.get(f"/v1/credentials/{credential_id}").json()
    assert details["status"] == "confirmed"


# ---- read ----


def test_get_credential_details(client: TestClient) -> None:
    credential_id = _issue(client)["credential_id"]
    data = client.get(f"/v1/credentials/{credential_id}").json()
    assert data["subject_identity"] == "did:example:alice"
    assert data["claims"] == {"degree": "BSc Physics", "gpa": 3.7}
    assert len(data["canonical_hash"]) == 64
    assert data["revocation"] is None


def test_get_unknown_credential_is_404(client: TestClient) -> None:
    resp = client.get("/v1/credentials/missing")
    assert resp.status_code == 404


def test_list_by_subject_and_status(client: TestClient) -> None:
    kept = _issue(client, claims={"degree": "BSc"})["credential_id"]
    revoked = _issue(client, claims={"degree": "MSc"})["credential_id"]
    _issue(client, subject_identity="did:example:bob")
    client.post(
        f"/v1/credentials/{revoked}/revoke", json={"reason": "error", "actor": ISSUER}
    )

    resp = client.get(
        "/v1/credentials", params={"subject": "did:example:alice", "status": "confirmed"}
    )
    assert resp.status_code == 200
    assert [c["credential_id"] for c in resp.json()] == [kept]


def test_list_without_filter_is_422(client: TestClient) -> None:
    assert client.get("/v1/credentials").status_code == 422


def test_verification_history(client: TestClient, container: ServiceContainer) -> None:
    credential_id = _issue(client)["credential_id"]
    client.get(f"/v1/credentials/{credential_id}/verify", headers={"X-Verifier-Id": "acme"})
    client.get(f"/v1/credentials/{credential_id}/verify", headers={"X-Verifier-Id": "acme"})
    # Logging runs after the response; wait for it on the app's loop.
    client.portal.call(container.service.drain)

    history = client.get(f"/v1/credentials/{credential_id}/verifications").json()
    assert [entry["cached"] for entry in history] == [True, False]
    assert {entry["verifier"] for entry in history} == {"verifier:acme"}

    details = client.get(f"/v1/credentials/{credential_id}").json()
    assert details["verification_count"] == 2


def test_history_of_unknown_credential_is_404(client: TestClient) -> None:
    assert client.get("/v1/credentials/missing/verifications").status_code == 404
