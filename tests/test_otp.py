"""
Tests for OTP challenge issuance and verification.
"""
from datetime import timedelta

import pytest

from signauth.exceptions import InvalidTransition, TooManyRequests
from signauth.models import SignatureRequest, SignatureStatus, VerificationOutcome
from signauth.otp import OtpChallengeManager, mask_email


@pytest.fixture
def manager(store, settings, clock):
    return OtpChallengeManager(store, settings, clock)


@pytest.fixture
def open_request(store, clock):
    async def _create(**overrides):
        data = dict(
            id="req-otp",
            token_hash="b" * 64,
            document_type="contract",
            document_title="Contract",
            document_url="https://files.example.com/c.pdf",
            signer_name="Maria Rossi",
            signer_email="maria.rossi@example.com",
            requester_id="user-1",
            expires_at=clock() + timedelta(days=14),
            created_at=clock(),
        )
        data.update(overrides)
        return await store.create_request(SignatureRequest(**data))
    return _create


class TestMaskEmail:

    def test_masks_local_part(self):
        assert mask_email("john@example.com") == "j***@example.com"

    def test_single_char_local_part(self):
        assert mask_email("j@example.com") == "j***@example.com"

    def test_invalid_email(self):
        assert mask_email("not-an-email") == "***"
        assert mask_email(None) == "***"


class TestIssue:

    @pytest.mark.asyncio
    async def test_issue_creates_hashed_challenge(self, manager, store, open_request, clock, settings):
        request = await open_request()

        issued = await manager.issue(request)

        assert len(issued.code) == 6 and issued.code.isdigit()
        assert issued.masked_email_hint == "m***@example.com"
        assert issued.expires_in_seconds == 600
        challenge = await store.get_active_challenge(request.id)
        assert challenge.id == issued.challenge.id
        assert challenge.code_hash != issued.code
        assert challenge.expires_at == clock() + timedelta(seconds=settings.otp_ttl_seconds)

    @pytest.mark.asyncio
    async def test_issue_increments_request_counters(self, manager, store, open_request, clock):
        request = await open_request()
        await manager.issue(request)

        stored = await store.get_request(request.id)
        assert stored.otp_issue_count == 1
        assert stored.last_otp_issued_at == clock()

    @pytest.mark.asyncio
    async def test_resend_within_cooldown_rejected(self, manager, store, open_request, clock):
        request = await open_request()
        await manager.issue(request)
        clock.advance(seconds=20)

        with pytest.raises(TooManyRequests) as exc_info:
            await manager.issue(await store.get_request(request.id))

        assert exc_info.value.reason == "cooldown"
        assert exc_info.value.retry_after == 40

    @pytest.mark.asyncio
    async def test_resend_supersedes_previous_challenge(self, manager, store, open_request, clock):
        request = await open_request()
        first = await manager.issue(request)
        clock.advance(seconds=61)

        second = await manager.issue(await store.get_request(request.id))

        challenges = await store.list_challenges(request.id)
        assert [c.id for c in challenges] == [first.challenge.id, second.challenge.id]
        assert challenges[0].superseded_at == clock()
        assert (await store.get_active_challenge(request.id)).id == second.challenge.id

    @pytest.mark.asyncio
    async def test_old_code_invalid_after_resend(self, manager, store, open_request, clock):
        request = await open_request()
        first = await manager.issue(request)
        clock.advance(seconds=61)
        second = await manager.issue(await store.get_request(request.id))

        if first.code != second.code:
            result = await manager.verify(request.id, first.code)
            assert result.outcome == VerificationOutcome.WRONG_CODE

    @pytest.mark.asyncio
    async def test_issue_cap_per_request(self, manager, store, open_request, clock, settings):
        request = await open_request()
        for _ in range(settings.otp_max_issues_per_request):
            await manager.issue(await store.get_request(request.id))
            clock.advance(seconds=61)

        with pytest.raises(TooManyRequests) as exc_info:
            await manager.issue(await store.get_request(request.id))

        assert exc_info.value.reason == "issue_limit"

    @pytest.mark.asyncio
    async def test_stale_snapshot_cannot_double_issue(self, manager, store, open_request):
        """Two callers racing with the same snapshot: one challenge, one rejection."""
        request = await open_request()

        await manager.issue(request)
        with pytest.raises(TooManyRequests):
            await manager.issue(request)

        assert len(await store.list_challenges(request.id)) == 1

    @pytest.mark.asyncio
    async def test_terminal_request_rejected(self, manager, open_request):
        request = await open_request(status=SignatureStatus.DECLINED)
        with pytest.raises(InvalidTransition):
            await manager.issue(request)


class TestVerify:

    @pytest.mark.asyncio
    async def test_correct_code_succeeds(self, manager, store, open_request, clock):
        request = await open_request()
        issued = await manager.issue(request)

        result = await manager.verify(request.id, issued.code)

        assert result.succeeded
        assert result.challenge.consumed_at == clock()
        assert await store.get_active_challenge(request.id) is None

    @pytest.mark.asyncio
    async def test_single_use(self, manager, open_request):
        request = await open_request()
        issued = await manager.issue(request)

        assert (await manager.verify(request.id, issued.code)).succeeded
        again = await manager.verify(request.id, issued.code)

        assert again.outcome == VerificationOutcome.NO_ACTIVE_CHALLENGE
        assert again.challenge.id == issued.challenge.id
        assert again.challenge.consumed_at is not None

    @pytest.mark.asyncio
    async def test_no_challenge(self, manager, open_request):
        request = await open_request()
        result = await manager.verify(request.id, "123456")
        assert result.outcome == VerificationOutcome.NO_ACTIVE_CHALLENGE
        assert result.challenge is None

    @pytest.mark.asyncio
    async def test_wrong_code_counts_attempt(self, manager, store, open_request):
        request = await open_request()
        issued = await manager.issue(request)
        wrong = "000000" if issued.code != "000000" else "111111"

        result = await manager.verify(request.id, wrong)

        assert result.outcome == VerificationOutcome.WRONG_CODE
        assert result.attempts_remaining == 4
        assert (await store.get_active_challenge(request.id)).attempt_count == 1

    @pytest.mark.asyncio
    async def test_expired_challenge_does_not_count_attempt(self, manager, store, open_request, clock):
        request = await open_request()
        issued = await manager.issue(request)
        clock.advance(minutes=10)

        result = await manager.verify(request.id, issued.code)

        assert result.outcome == VerificationOutcome.EXPIRED
        assert (await store.get_active_challenge(request.id)).attempt_count == 0

    @pytest.mark.asyncio
    async def test_lockout_after_max_attempts_even_with_correct_code(self, manager, open_request, settings):
        request = await open_request()
        issued = await manager.issue(request)
        wrong = "000000" if issued.code != "000000" else "111111"

        outcomes = [
            (await manager.verify(request.id, wrong)).outcome
            for _ in range(settings.otp_max_attempts)
        ]
        final = await manager.verify(request.id, issued.code)

        assert outcomes == [VerificationOutcome.WRONG_CODE] * settings.otp_max_attempts
        assert final.outcome == VerificationOutcome.LOCKED_OUT

    @pytest.mark.asyncio
    async def test_resend_resets_attempts(self, manager, store, open_request, clock, settings):
        request = await open_request()
        issued = await manager.issue(request)
        wrong = "000000" if issued.code != "000000" else "111111"
        for _ in range(settings.otp_max_attempts):
            await manager.verify(request.id, wrong)

        clock.advance(seconds=61)
        fresh = await manager.issue(await store.get_request(request.id))

        assert (await manager.verify(request.id, fresh.code)).succeeded
