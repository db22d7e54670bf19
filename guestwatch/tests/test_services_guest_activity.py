"""Tests for guest post accounting."""

from uuid import uuid4

import pytest

from guestwatch.services.guest_activity import (
    GuestActivityService,
    GuestBlockedError,
    NetworkBlockedError,
)
from guestwatch.services.identity_resolver import requires_email
from guestwatch.services.ip_blocklist import IpBlocklistService
from guestwatch.services.moderation import GuestNotFoundError


class TestGuestActivityService:
    @pytest.fixture
    def service(self, db_session):
        return GuestActivityService(db_session)

    @pytest.mark.asyncio
    async def test_record_post_increments(self, service, make_guest):
        guest = await make_guest()
        guest = await service.record_post(guest.id)
        assert guest.post_count == 1

    @pytest.mark.asyncio
    async def test_gate_after_second_post(self, service, make_guest):
        guest = await make_guest()
        guest = await service.record_post(guest.id)
        assert not requires_email(guest.post_count, guest.email_verified)
        guest = await service.record_post(guest.id)
        assert requires_email(guest.post_count, guest.email_verified)

    @pytest.mark.asyncio
    async def test_blocked_guest_refused(self, service, make_guest):
        guest = await make_guest(status="blocked", post_count=1)
        with pytest.raises(GuestBlockedError):
            await service.record_post(guest.id)

    @pytest.mark.asyncio
    async def test_guest_on_blocked_network_refused(self, service, make_guest, db_session):
        guest = await make_guest(ip_hash="a" * 32, post_count=1)
        await IpBlocklistService(db_session).block("a" * 32, reason="spam wave")

        with pytest.raises(NetworkBlockedError):
            await service.record_post(guest.id)
        await db_session.refresh(guest)
        assert guest.post_count == 1

    @pytest.mark.asyncio
    async def test_request_from_blocked_network_refused(self, service, make_guest, db_session):
        guest = await make_guest(ip_hash="a" * 32)
        await IpBlocklistService(db_session).block("b" * 32)

        with pytest.raises(GuestBlockedError):
            await service.record_post(guest.id, request_ip_hash="b" * 32)

    @pytest.mark.asyncio
    async def test_unblocked_network_may_post_again(self, service, make_guest, db_session):
        guest = await make_guest(ip_hash="a" * 32)
        blocklist = IpBlocklistService(db_session)
        await blocklist.block("a" * 32)
        await blocklist.unblock("a" * 32)

        guest = await service.record_post(guest.id)
        assert guest.post_count == 1

    @pytest.mark.asyncio
    async def test_restricted_guest_may_post(self, service, make_guest):
        guest = await make_guest(status="restricted")
        guest = await service.record_post(guest.id)
        assert guest.post_count == 1

    @pytest.mark.asyncio
    async def test_retract_post(self, service, make_guest):
        guest = await make_guest(post_count=2)
        guest = await service.retract_post(guest.id)
        assert guest.post_count == 1

    @pytest.mark.asyncio
    async def test_retract_never_negative(self, service, make_guest):
        guest = await make_guest(post_count=0)
        guest = await service.retract_post(guest.id)
        assert guest.post_count == 0

    @pytest.mark.asyncio
    async def test_unknown_guest(self, service):
        with pytest.raises(GuestNotFoundError):
            await service.record_post(uuid4())
