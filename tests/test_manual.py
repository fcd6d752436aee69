"""
Tests for the admin-only manual connect and verify endpoints.
"""

import pytest

from chatseal.config import settings
from chatseal.models import Tenant


CONNECT_URL = "/api/whatsapp/manual/connect"
VERIFY_URL = "/api/whatsapp/manual/verify"
GRANTED = ["whatsapp_business_management", "whatsapp_business_messaging"]


def connect_body(**overrides):
    body = {
        "name": "Delta Foods",
        "wabaId": "WABA-400",
        "phoneNumberId": "PN-400",
        "accessToken": "EAAG-system-user",
    }
    body.update(overrides)
    return body


def healthy_graph(fake_graph, waba_id="WABA-400", phone_id="PN-400", scopes=None, phone_status="CONNECTED"):
    fake_graph.add("GET", "debug_token", json={"data": {"scopes": GRANTED if scopes is None else scopes}})
    fake_graph.add("GET", waba_id, json={"id": waba_id, "name": "Delta Foods"})
    fake_graph.add("GET", phone_id, json={"id": phone_id, "display_phone_number": "+44 20 0000 0400"})
    fake_graph.add(
        "GET",
        f"{waba_id}/phone_numbers",
        json={"data": [{"id": phone_id, "display_phone_number": "+44 20 0000 0400", "status": phone_status}]},
    )


class TestAdminKey:
    """Test the admin key gate on manual endpoints."""

    @pytest.mark.parametrize("url", [CONNECT_URL, VERIFY_URL])
    def test_not_configured(self, client, monkeypatch, url):
        """Test the endpoints are disabled when no admin key is set."""
        monkeypatch.setattr(settings, "ADMIN_API_KEY", "")

        response = client.post(url, json={}, headers={"X-Admin-Key": "anything"})

        assert response.status_code == 501
        assert response.json()["error"] == "ADMIN_API_KEY not configured"
        assert "hint" in response.json()

    @pytest.mark.parametrize("headers", [{}, {"X-Admin-Key": "wrong"}])
    @pytest.mark.parametrize("url", [CONNECT_URL, VERIFY_URL])
    def test_wrong_or_missing_key(self, client, db, url, headers):
        """Test a wrong or missing admin key is forbidden."""
        response = client.post(url, json=connect_body(), headers=headers)

        assert response.status_code == 403
        assert response.json() == {"error": "Forbidden"}
        assert db.query(Tenant).count() == 0


class TestManualConnect:
    """Test manual tenant registration."""

    def test_missing_fields(self, client, admin_headers):
        """Test blank and absent fields are reported as missing."""
        response = client.post(CONNECT_URL, json={"name": "Delta Foods", "accessToken": "   "}, headers=admin_headers)

        assert response.status_code == 400
        data = response.json()
        assert data["required"] == ["name", "wabaId", "phoneNumberId", "accessToken"]
        assert data["missing"] == ["wabaId", "phoneNumberId", "accessToken"]

    def test_connect_with_display_phone(self, client, db, admin_headers, fake_graph):
        """Test a supplied display number is stored without calling upstream."""
        response = client.post(
            CONNECT_URL,
            json=connect_body(phoneNumber="+44 20 0000 0400", isTest=True),
            headers=admin_headers,
        )

        assert response.status_code == 200
        tenant = response.json()["tenant"]
        assert tenant["wabaId"] == "WABA-400"
        assert tenant["phoneNumber"] == "+44 20 0000 0400"
        assert tenant["isTest"] is True
        assert "accessToken" not in tenant
        assert fake_graph.requests == []

    def test_display_phone_fetched_when_omitted(self, client, db, admin_headers, fake_graph):
        """Test the display number is looked up when not supplied."""
        fake_graph.add("GET", "PN-400", json={"id": "PN-400", "display_phone_number": "+44 20 0000 0400"})

        response = client.post(CONNECT_URL, json=connect_body(), headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["tenant"]["phoneNumber"] == "+44 20 0000 0400"
        lookup = fake_graph.calls("GET", "PN-400")[0]
        assert lookup.url.params["fields"] == "display_phone_number"

    def test_display_phone_lookup_failure_is_tolerated(self, client, db, admin_headers, fake_graph):
        """Test a failed display number lookup still registers the tenant."""
        fake_graph.fail("GET", "PN-400", code=100)

        response = client.post(CONNECT_URL, json=connect_body(), headers=admin_headers)

        assert response.status_code == 200
        assert "phoneNumber" not in response.json()["tenant"]
        assert db.query(Tenant).count() == 1

    def test_token_is_sanitized(self, client, db, admin_headers):
        """Test the stored token is trimmed to its first token."""
        response = client.post(
            CONNECT_URL,
            json=connect_body(accessToken="  EAAG-system-user  copied-junk\n", phoneNumber="+44"),
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert db.query(Tenant).one().access_token == "EAAG-system-user"

    def test_same_waba_is_upserted(self, client, db, admin_headers):
        """Test a second connect for the same WABA updates the tenant."""
        first = client.post(CONNECT_URL, json=connect_body(phoneNumber="+44"), headers=admin_headers).json()
        second = client.post(
            CONNECT_URL,
            json=connect_body(name="Delta Foods Ltd", accessToken="EAAG-rotated"),
            headers=admin_headers,
        ).json()

        assert first["tenant"]["id"] == second["tenant"]["id"]
        db.expire_all()
        tenant = db.query(Tenant).one()
        assert tenant.name == "Delta Foods Ltd"
        assert tenant.access_token == "EAAG-rotated"
        # Display number kept when the second call does not supply one
        assert tenant.phone_number == "+44"


class TestManualVerify:
    """Test the credential verification report."""

    def test_missing_fields(self, client, admin_headers):
        """Test verification requires credentials when no tenant is given."""
        response = client.post(VERIFY_URL, json={"wabaId": "WABA-400"}, headers=admin_headers)

        assert response.status_code == 400
        assert response.json()["required"] == ["wabaId", "phoneNumberId", "accessToken"]

    def test_unknown_tenant(self, client, admin_headers):
        """Test verifying an unknown tenant is 404."""
        response = client.post(VERIFY_URL, json={"tenantId": "missing"}, headers=admin_headers)

        assert response.status_code == 404

    def test_all_checks_pass(self, client, admin_headers, fake_graph):
        """Test a healthy setup reports success with no hints."""
        healthy_graph(fake_graph)

        response = client.post(
            VERIFY_URL,
            json={"wabaId": "WABA-400", "phoneNumberId": "PN-400", "accessToken": "EAAG-system-user"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        report = response.json()
        assert report["success"] is True
        assert report["checks"]["missing_scopes"] == []
        assert report["checks"]["waba"]["name"] == "Delta Foods"
        assert report["checks"]["phone_number"]["id"] == "PN-400"
        assert report["checks"]["waba_phone_numbers"][0]["status"] == "CONNECTED"
        assert report["hints"] == []

    def test_verify_does_not_create_tenant(self, client, db, admin_headers, fake_graph):
        """Test verification never stores a tenant."""
        healthy_graph(fake_graph)

        client.post(
            VERIFY_URL,
            json={"wabaId": "WABA-400", "phoneNumberId": "PN-400", "accessToken": "EAAG-system-user"},
            headers=admin_headers,
        )

        assert db.query(Tenant).count() == 0

    def test_stored_tenant_values_used(self, client, admin_headers, fake_graph, tenant):
        """Test a tenant id verifies with the stored credentials."""
        healthy_graph(fake_graph, waba_id=tenant.waba_id, phone_id=tenant.phone_number_id)

        response = client.post(VERIFY_URL, json={"tenantId": tenant.id}, headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["success"] is True
        phone_call = fake_graph.calls("GET", tenant.phone_number_id)[0]
        assert phone_call.headers["Authorization"] == f"Bearer {tenant.access_token}"

    def test_invalid_token_hint(self, client, admin_headers, fake_graph):
        """Test an expired token yields a single token hint."""
        fake_graph.add("GET", "debug_token", json={"data": {"scopes": GRANTED}})
        fake_graph.fail("GET", "WABA-400", code=190, message="Session has expired")
        fake_graph.fail("GET", "PN-400", code=190, message="Session has expired")
        fake_graph.fail("GET", "WABA-400/phone_numbers", code=190, message="Session has expired")

        response = client.post(
            VERIFY_URL,
            json={"wabaId": "WABA-400", "phoneNumberId": "PN-400", "accessToken": "EAAG-old"},
            headers=admin_headers,
        )

        report = response.json()
        assert response.status_code == 200
        assert report["success"] is False
        assert report["checks"]["waba_error"]["code"] == 190
        assert "phone_number_error" in report["checks"]
        assert "waba_phone_numbers_error" in report["checks"]
        assert report["hints"] == ["Access token invalid/expired; generate a fresh token."]

    def test_missing_scope_fails_verification(self, client, admin_headers, fake_graph):
        """Test a missing scope fails verification with a hint."""
        healthy_graph(fake_graph, scopes=["whatsapp_business_management"])

        report = client.post(
            VERIFY_URL,
            json={"wabaId": "WABA-400", "phoneNumberId": "PN-400", "accessToken": "EAAG-system-user"},
            headers=admin_headers,
        ).json()

        assert report["success"] is False
        assert report["checks"]["missing_scopes"] == ["whatsapp_business_messaging"]
        assert len(report["hints"]) == 1

    def test_permission_error_hint(self, client, admin_headers, fake_graph):
        """Test a permission error on the WABA yields an authorization hint."""
        healthy_graph(fake_graph)
        fake_graph.fail("GET", "WABA-400", code=200, message="Permissions error")

        report = client.post(
            VERIFY_URL,
            json={"wabaId": "WABA-400", "phoneNumberId": "PN-400", "accessToken": "EAAG-system-user"},
            headers=admin_headers,
        ).json()

        assert report["success"] is False
        assert "waba" not in report["checks"]
        assert any("not authorized for this WABA" in hint for hint in report["hints"])

    def test_pending_phone_hint(self, client, admin_headers, fake_graph):
        """Test a PENDING number yields a hint without failing verification."""
        healthy_graph(fake_graph, phone_status="PENDING")

        report = client.post(
            VERIFY_URL,
            json={"wabaId": "WABA-400", "phoneNumberId": "PN-400", "accessToken": "EAAG-system-user"},
            headers=admin_headers,
        ).json()

        assert report["success"] is True
        assert any("PENDING" in hint for hint in report["hints"])

    def test_unregistered_phone_hint(self, client, admin_headers, fake_graph):
        """Test an unregistered sender number yields a registration hint."""
        healthy_graph(fake_graph)
        fake_graph.fail("GET", "PN-400", code=133010, message="Account not registered")

        report = client.post(
            VERIFY_URL,
            json={"wabaId": "WABA-400", "phoneNumberId": "PN-400", "accessToken": "EAAG-system-user"},
            headers=admin_headers,
        ).json()

        assert report["success"] is False
        assert report["checks"]["phone_number_error"]["code"] == 133010
        assert any("not registered" in hint for hint in report["hints"])

    def test_rate_limited_hint(self, client, admin_headers, fake_graph):
        """Test a throttled Graph call yields a retry-later hint."""
        healthy_graph(fake_graph)
        fake_graph.fail("GET", "WABA-400", code=80007, message="Rate limit hit")

        report = client.post(
            VERIFY_URL,
            json={"wabaId": "WABA-400", "phoneNumberId": "PN-400", "accessToken": "EAAG-system-user"},
            headers=admin_headers,
        ).json()

        assert report["success"] is False
        assert any("rate limit" in hint for hint in report["hints"])
