"""Tests for email verification."""

import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import httpx
import pytest

from guestwatch.services.email_verification import (
    CodeDeliveryError,
    DeliveryNotConfiguredError,
    EmailVerificationService,
    InvalidVerificationCode,
    TooManyAttempts,
    VerificationCodeExpired,
    VerificationCodeMissing,
    VerificationRateLimited,
    WebhookCodeSender,
    generate_code,
    hash_code,
)
from guestwatch.services.moderation import GuestNotFoundError
from guestwatch.tests.fakes import RecordingCodeSender

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestCodes:
    def test_six_digits(self):
        for _ in range(20):
            code = generate_code()
            assert len(code) == 6
            assert code.isdigit()

    def test_hash_is_sha256(self):
        assert hash_code("123456") == hashlib.sha256(b"123456").hexdigest()


class TestEmailVerificationService:
    @pytest.fixture
    def sender(self):
        return RecordingCodeSender()

    @pytest.fixture
    def service(self, db_session, sender):
        return EmailVerificationService(db_session, sender)

    @pytest.mark.asyncio
    async def test_request_code(self, service, sender, make_guest):
        guest = await make_guest()
        updated = await service.request_code(guest.id, "visitor@mailbox.org", now=NOW)

        assert sender.sent[0][:2] == (guest.id, "visitor@mailbox.org")
        assert updated.email == "visitor@mailbox.org"
        assert updated.verification_code_hash == hash_code(sender.last_code)
        assert updated.verification_attempts == 0

    @pytest.mark.asyncio
    async def test_unknown_guest(self, service):
        with pytest.raises(GuestNotFoundError):
            await service.request_code(uuid4(), "visitor@mailbox.org", now=NOW)

    @pytest.mark.asyncio
    async def test_rate_limited_within_two_minutes(self, service, make_guest):
        guest = await make_guest()
        await service.request_code(guest.id, "visitor@mailbox.org", now=NOW)

        with pytest.raises(VerificationRateLimited) as exc_info:
            await service.request_code(guest.id, "visitor@mailbox.org", now=NOW + timedelta(seconds=30))
        assert 0 < exc_info.value.retry_after <= 91

    @pytest.mark.asyncio
    async def test_resend_after_two_minutes(self, service, sender, make_guest):
        guest = await make_guest()
        await service.request_code(guest.id, "visitor@mailbox.org", now=NOW)
        await service.request_code(guest.id, "visitor@mailbox.org", now=NOW + timedelta(minutes=2, seconds=1))
        assert len(sender.sent) == 2

    @pytest.mark.asyncio
    async def test_delivery_failure_saves_nothing(self, db_session, make_guest):
        sender = RecordingCodeSender()
        sender.send = AsyncMock(side_effect=CodeDeliveryError("mailer down"))
        service = EmailVerificationService(db_session, sender)
        guest = await make_guest()

        with pytest.raises(CodeDeliveryError):
            await service.request_code(guest.id, "visitor@mailbox.org", now=NOW)

        refreshed = await service._get_guest(guest.id)
        assert refreshed.verification_code_hash is None
        assert refreshed.email_sent_at is None

    @pytest.mark.asyncio
    async def test_verify_success(self, service, sender, make_guest):
        guest = await make_guest(trust_score=50, flags=["new", "spam"])
        await service.request_code(guest.id, "visitor@mailbox.org", now=NOW)

        verified = await service.verify_code(guest.id, sender.last_code, now=NOW + timedelta(minutes=1))

        assert verified.email_verified is True
        assert verified.trust_score == 75
        assert verified.flags == ["spam", "verified"]
        assert verified.verification_code_hash is None
        assert verified.verification_expires_at is None

    @pytest.mark.asyncio
    async def test_verify_trust_capped(self, service, sender, make_guest):
        guest = await make_guest(trust_score=90)
        await service.request_code(guest.id, "visitor@mailbox.org", now=NOW)
        verified = await service.verify_code(guest.id, sender.last_code, now=NOW)
        assert verified.trust_score == 100

    @pytest.mark.asyncio
    async def test_verify_without_code(self, service, make_guest):
        guest = await make_guest()
        with pytest.raises(VerificationCodeMissing):
            await service.verify_code(guest.id, "123456", now=NOW)

    @pytest.mark.asyncio
    async def test_verify_expired(self, service, sender, make_guest):
        guest = await make_guest()
        await service.request_code(guest.id, "visitor@mailbox.org", now=NOW)
        with pytest.raises(VerificationCodeExpired):
            await service.verify_code(guest.id, sender.last_code, now=NOW + timedelta(minutes=11))

    @pytest.mark.asyncio
    async def test_wrong_code_counts_attempts(self, service, sender, make_guest):
        guest = await make_guest()
        await service.request_code(guest.id, "visitor@mailbox.org", now=NOW)
        wrong = "000000" if sender.last_code != "000000" else "111111"

        for expected_left in [4, 3, 2, 1, 0]:
            with pytest.raises(InvalidVerificationCode) as exc_info:
                await service.verify_code(guest.id, wrong, now=NOW)
            assert exc_info.value.attempts_left == expected_left

        with pytest.raises(TooManyAttempts):
            await service.verify_code(guest.id, sender.last_code, now=NOW)

    @pytest.mark.asyncio
    async def test_new_code_resets_attempts(self, service, sender, make_guest):
        guest = await make_guest()
        await service.request_code(guest.id, "visitor@mailbox.org", now=NOW)
        wrong = "000000" if sender.last_code != "000000" else "111111"
        with pytest.raises(InvalidVerificationCode):
            await service.verify_code(guest.id, wrong, now=NOW)

        later = NOW + timedelta(minutes=3)
        refreshed = await service.request_code(guest.id, "visitor@mailbox.org", now=later)
        assert refreshed.verification_attempts == 0


class TestWebhookCodeSender:
    @pytest.mark.asyncio
    async def test_not_configured(self):
        with pytest.raises(DeliveryNotConfiguredError):
            await WebhookCodeSender(url="").send(uuid4(), "visitor@mailbox.org", "123456")

    @pytest.mark.asyncio
    @patch("httpx.AsyncClient.post", new_callable=AsyncMock)
    async def test_signed_payload(self, mock_post):
        mock_response = MagicMock()
        mock_response.raise_for_status = MagicMock()
        mock_post.return_value = mock_response
        guest_id = uuid4()

        sender = WebhookCodeSender(url="http://mailer.test/hook", secret="s3cret")
        await sender.send(guest_id, "visitor@mailbox.org", "123456")

        args, kwargs = mock_post.call_args
        assert args[0] == "http://mailer.test/hook"
        body = kwargs["content"]
        payload = json.loads(body)
        assert payload["guest_id"] == str(guest_id)
        assert payload["code"] == "123456"
        assert payload["expires_in_minutes"] == 10
        expected = hmac.new(b"s3cret", body.encode(), hashlib.sha256).hexdigest()
        assert kwargs["headers"]["X-Webhook-Signature"] == f"sha256={expected}"

    @pytest.mark.asyncio
    @patch("httpx.AsyncClient.post", new_callable=AsyncMock)
    async def test_unsigned_without_secret(self, mock_post):
        mock_post.return_value = MagicMock()
        await WebhookCodeSender(url="http://mailer.test/hook").send(uuid4(), "visitor@mailbox.org", "123456")
        assert "X-Webhook-Signature" not in mock_post.call_args.kwargs["headers"]

    @pytest.mark.asyncio
    @patch("httpx.AsyncClient.post", new_callable=AsyncMock)
    async def test_delivery_error(self, mock_post):
        mock_post.side_effect = httpx.ConnectError("refused")
        with pytest.raises(CodeDeliveryError):
            await WebhookCodeSender(url="http://mailer.test/hook").send(uuid4(), "visitor@mailbox.org", "123456")
