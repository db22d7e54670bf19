"""
Tests for admin guest console router.
"""

import secrets
from unittest.mock import patch
from uuid import uuid4

import pytest
from fastapi import HTTPException
from httpx import AsyncClient

from guestwatch.dependencies import require_admin
from guestwatch.models.database import IpSecurityLog
from guestwatch.services.ip_utils import hash_ip
from guestwatch.tests.fakes import ADMIN_TOKEN, TEST_SALT


class TestAdminAuth:
    @pytest.mark.asyncio
    async def test_missing_token(self, client: AsyncClient):
        response = await client.get("/api/admin/guests")
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_wrong_token(self, client: AsyncClient):
        response = await client.get("/api/admin/guests", headers={"X-Admin-Token": "nope"})
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_token_prefix_rejected(self, client: AsyncClient):
        response = await client.get("/api/admin/guests", headers={"X-Admin-Token": ADMIN_TOKEN[:-1]})
        assert response.status_code == 403

    def test_token_compared_in_constant_time(self):
        with patch("guestwatch.dependencies.secrets.compare_digest", wraps=secrets.compare_digest) as compare:
            assert require_admin(ADMIN_TOKEN) == ADMIN_TOKEN
            with pytest.raises(HTTPException):
                require_admin("nope")
        assert compare.call_count == 2


class TestAdminGuestsRouter:
    @pytest.mark.asyncio
    async def test_list_guests_empty(self, client: AsyncClient, admin_headers):
        response = await client.get("/api/admin/guests", headers=admin_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["items"] == []
        assert data["total"] == 0

    @pytest.mark.asyncio
    async def test_list_guests_filtered(self, client: AsyncClient, admin_headers, make_guest):
        await make_guest()
        await make_guest(status="blocked")
        response = await client.get("/api/admin/guests", params={"status": "blocked"}, headers=admin_headers)
        data = response.json()
        assert data["total"] == 1
        assert data["items"][0]["status"] == "blocked"

    @pytest.mark.asyncio
    async def test_list_guests_invalid_status(self, client: AsyncClient, admin_headers):
        response = await client.get("/api/admin/guests", params={"status": "banned"}, headers=admin_headers)
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_get_guest(self, client: AsyncClient, admin_headers, make_guest):
        guest = await make_guest(country="Germany", notes="watch")
        response = await client.get(f"/api/admin/guests/{guest.id}", headers=admin_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["fingerprint"] == guest.fingerprint
        assert data["country"] == "Germany"
        assert data["notes"] == "watch"

    @pytest.mark.asyncio
    async def test_get_guest_not_found(self, client: AsyncClient, admin_headers):
        response = await client.get(f"/api/admin/guests/{uuid4()}", headers=admin_headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_block_unblock(self, client: AsyncClient, admin_headers, make_guest):
        guest = await make_guest()

        blocked = await client.put(
            f"/api/admin/guests/{guest.id}/status",
            json={"status": "blocked", "reason": "spam links"},
            headers=admin_headers,
        )
        assert blocked.status_code == 200
        assert blocked.json()["status"] == "blocked"
        assert blocked.json()["blocked_at"] is not None

        unblocked = await client.put(
            f"/api/admin/guests/{guest.id}/status", json={"status": "active"}, headers=admin_headers
        )
        assert unblocked.json()["status"] == "active"
        assert unblocked.json()["blocked_at"] is None

        history = await client.get(f"/api/admin/guests/{guest.id}/history", headers=admin_headers)
        events = history.json()
        assert [e["to_status"] for e in events] == ["blocked", "active"]
        assert events[0]["reason"] == "spam links"
        assert events[0]["blocked_at"] is not None

    @pytest.mark.asyncio
    async def test_invalid_status(self, client: AsyncClient, admin_headers, make_guest):
        guest = await make_guest()
        response = await client.put(
            f"/api/admin/guests/{guest.id}/status", json={"status": "banned"}, headers=admin_headers
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_update_details_clamps_trust(self, client: AsyncClient, admin_headers, make_guest):
        guest = await make_guest()
        response = await client.patch(
            f"/api/admin/guests/{guest.id}",
            json={"notes": "vouched for", "trust_score": 150},
            headers=admin_headers,
        )
        data = response.json()
        assert data["trust_score"] == 100
        assert data["notes"] == "vouched for"

        response = await client.patch(
            f"/api/admin/guests/{guest.id}", json={"trust_score": -10}, headers=admin_headers
        )
        assert response.json()["trust_score"] == 0

    @pytest.mark.asyncio
    async def test_toggle_flag(self, client: AsyncClient, admin_headers, make_guest):
        guest = await make_guest(flags=["new"])

        added = await client.post(
            f"/api/admin/guests/{guest.id}/flags", json={"flag": "suspicious"}, headers=admin_headers
        )
        assert added.json() == {"flag": "suspicious", "added": True, "flags": ["new", "suspicious"]}

        removed = await client.post(
            f"/api/admin/guests/{guest.id}/flags", json={"flag": "suspicious"}, headers=admin_headers
        )
        assert removed.json()["added"] is False
        assert removed.json()["flags"] == ["new"]

    @pytest.mark.asyncio
    async def test_stats(self, client: AsyncClient, admin_headers, make_guest):
        await make_guest(post_count=4, email="a@mailbox.org")
        await make_guest(status="restricted", post_count=1)
        response = await client.get("/api/admin/guests/stats", headers=admin_headers)
        assert response.json() == {
            "total_guests": 2,
            "active_guests": 1,
            "blocked_guests": 0,
            "restricted_guests": 1,
            "total_guest_posts": 5,
            "guests_with_email": 1,
        }

    @pytest.mark.asyncio
    async def test_security_logs(self, client: AsyncClient, admin_headers, make_guest, db_session):
        guest = await make_guest()
        db_session.add(IpSecurityLog(guest_id=guest.id, ip_hash="b" * 32, country="Local", ip_source="socket"))
        await db_session.commit()

        response = await client.get(f"/api/admin/guests/{guest.id}/security-logs", headers=admin_headers)
        logs = response.json()
        assert len(logs) == 1
        assert logs[0]["ip_source"] == "socket"
        assert logs[0]["action"] == "visit"


class TestAdminNetworkBlocks:
    @pytest.mark.asyncio
    async def test_requires_token(self, client: AsyncClient):
        response = await client.get("/api/admin/guests/blocked-ips")
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_block_list_unblock(self, client: AsyncClient, admin_headers):
        created = await client.post(
            "/api/admin/guests/blocked-ips",
            json={"ip_hash": "e" * 32, "reason": "raid"},
            headers=admin_headers,
        )
        assert created.status_code == 200
        assert created.json()["reason"] == "raid"
        assert created.json()["blocked_by"] == "admin"

        listed = await client.get("/api/admin/guests/blocked-ips", headers=admin_headers)
        assert [e["ip_hash"] for e in listed.json()] == ["e" * 32]

        removed = await client.delete(f"/api/admin/guests/blocked-ips/{'e' * 32}", headers=admin_headers)
        assert removed.status_code == 204
        again = await client.delete(f"/api/admin/guests/blocked-ips/{'e' * 32}", headers=admin_headers)
        assert again.status_code == 404

    @pytest.mark.asyncio
    async def test_rejects_raw_address(self, client: AsyncClient, admin_headers):
        response = await client.post(
            "/api/admin/guests/blocked-ips", json={"ip_hash": "203.0.113.7"}, headers=admin_headers
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_block_guest_network_stops_posting(self, client: AsyncClient, admin_headers, make_guest):
        guest = await make_guest(ip_hash="f" * 32)
        neighbour = await make_guest(ip_hash="f" * 32)

        blocked = await client.post(
            f"/api/admin/guests/{guest.id}/block-network", json={"reason": "spam"}, headers=admin_headers
        )
        assert blocked.status_code == 200
        assert blocked.json()["ip_hash"] == "f" * 32

        response = await client.post(f"/api/guests/{neighbour.id}/posts")
        assert response.status_code == 403

        found = await client.get("/api/admin/guests", params={"search": "f" * 32}, headers=admin_headers)
        assert found.json()["total"] == 2

    @pytest.mark.asyncio
    async def test_block_guest_network_without_ip(self, client: AsyncClient, admin_headers, make_guest):
        guest = await make_guest()
        response = await client.post(
            f"/api/admin/guests/{guest.id}/block-network", json={}, headers=admin_headers
        )
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_request_from_blocked_network_cannot_post(
        self, client: AsyncClient, admin_headers, make_guest
    ):
        guest = await make_guest()
        # The test transport reports the peer as 127.0.0.1
        await client.post(
            "/api/admin/guests/blocked-ips",
            json={"ip_hash": hash_ip("127.0.0.1", TEST_SALT)},
            headers=admin_headers,
        )
        response = await client.post(f"/api/guests/{guest.id}/posts")
        assert response.status_code == 403
        assert "network" in response.json()["detail"]
