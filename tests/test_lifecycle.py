"""
Tests for the lifecycle state machine.
"""
from datetime import timedelta

import pytest

from signauth.exceptions import InvalidTransition
from signauth.models import SignatureRequest, SignatureStatus, TERMINAL_STATUSES
from signauth.services.lifecycle import (
    CANCEL,
    DECLINE,
    EXPIRE,
    REQUEST_OTP,
    SIGN,
    TRANSITIONS,
    LifecycleStateMachine,
)


def _request(clock, status=SignatureStatus.PENDING, expires_in=timedelta(days=14)) -> SignatureRequest:
    return SignatureRequest(
        id="req-1",
        token_hash="a" * 64,
        document_type="contract",
        document_title="Contract",
        document_url="https://files.example.com/c.pdf",
        signer_name="Maria Rossi",
        signer_email="maria@example.com",
        requester_id="user-1",
        status=status,
        expires_at=clock() + expires_in,
        created_at=clock(),
    )


@pytest.fixture
def lifecycle(store, clock):
    return LifecycleStateMachine(store, clock)


class TestTransitionTable:
    """The table only lets open requests move."""

    def test_every_transition_starts_from_open_states(self):
        for transition in TRANSITIONS.values():
            assert transition.sources == {SignatureStatus.PENDING, SignatureStatus.OTP_ISSUED}

    def test_targets(self):
        assert REQUEST_OTP.target == SignatureStatus.OTP_ISSUED
        assert SIGN.target == SignatureStatus.SIGNED
        assert DECLINE.target == SignatureStatus.DECLINED
        assert EXPIRE.target == SignatureStatus.EXPIRED
        assert CANCEL.target == SignatureStatus.CANCELLED

    @pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    @pytest.mark.parametrize("transition", [REQUEST_OTP, SIGN, DECLINE, EXPIRE, CANCEL], ids=lambda t: t.name)
    def test_terminal_states_reject_everything(self, lifecycle, clock, status, transition):
        request = _request(clock, status=status)
        with pytest.raises(InvalidTransition) as exc_info:
            lifecycle.check(request, transition)
        assert exc_info.value.current_status == status

    def test_sign_guard_rejects_past_deadline(self, lifecycle, clock):
        request = _request(clock, expires_in=timedelta(seconds=-1))
        with pytest.raises(InvalidTransition):
            lifecycle.check(request, SIGN)

    def test_expire_guard_requires_deadline_reached(self, lifecycle, clock):
        request = _request(clock)
        with pytest.raises(InvalidTransition):
            lifecycle.check(request, EXPIRE)

    def test_deadline_boundary_counts_as_expired(self, lifecycle, clock):
        request = _request(clock, expires_in=timedelta(0))
        lifecycle.check(request, EXPIRE)
        with pytest.raises(InvalidTransition):
            lifecycle.check(request, SIGN)

    def test_cancel_has_no_deadline_guard(self, lifecycle, clock):
        request = _request(clock, expires_in=timedelta(seconds=-1))
        lifecycle.check(request, CANCEL)


class TestApply:
    """Transitions are conditional writes against the store."""

    @pytest.mark.asyncio
    async def test_sign_sets_status_and_timestamp(self, lifecycle, store, clock):
        request = await store.create_request(_request(clock))

        signed = await lifecycle.sign(request, clock())

        assert signed.status == SignatureStatus.SIGNED
        assert signed.signed_at == clock()
        assert signed.updated_at == clock()
        assert (await store.get_request(request.id)).status == SignatureStatus.SIGNED

    @pytest.mark.asyncio
    async def test_otp_issued_can_reissue(self, lifecycle, store, clock):
        request = await store.create_request(_request(clock, status=SignatureStatus.OTP_ISSUED))
        updated = await lifecycle.mark_otp_issued(request)
        assert updated.status == SignatureStatus.OTP_ISSUED

    @pytest.mark.asyncio
    async def test_decline_stores_reason_verbatim(self, lifecycle, store, clock):
        request = await store.create_request(_request(clock))
        declined = await lifecycle.decline(request, "cliente non disponibile")
        assert declined.status == SignatureStatus.DECLINED
        assert declined.decline_reason == "cliente non disponibile"

    @pytest.mark.asyncio
    async def test_stale_copy_loses_race(self, lifecycle, store, clock):
        """Two callers holding the same open snapshot: only one wins."""
        request = await store.create_request(_request(clock))

        await lifecycle.sign(request, clock())
        with pytest.raises(InvalidTransition) as exc_info:
            await lifecycle.sign(request, clock())

        assert exc_info.value.current_status == SignatureStatus.SIGNED

    @pytest.mark.asyncio
    async def test_cancel_cannot_overwrite_sign(self, lifecycle, store, clock):
        request = await store.create_request(_request(clock))

        await lifecycle.sign(request, clock())
        with pytest.raises(InvalidTransition) as exc_info:
            await lifecycle.cancel(request)

        assert exc_info.value.current_status == SignatureStatus.SIGNED
        stored = await store.get_request(request.id)
        assert stored.status == SignatureStatus.SIGNED
        assert stored.cancelled_at is None


class TestEvaluateExpiry:

    @pytest.mark.asyncio
    async def test_overdue_request_expires_once(self, lifecycle, store, clock):
        request = await store.create_request(_request(clock, expires_in=timedelta(hours=1)))
        clock.advance(hours=2)

        first, transitioned = await lifecycle.evaluate_expiry(request)
        second, transitioned_again = await lifecycle.evaluate_expiry(request)

        assert transitioned is True
        assert first.status == SignatureStatus.EXPIRED
        assert first.expired_at == clock()
        assert transitioned_again is False
        assert second.status == SignatureStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_open_request_untouched(self, lifecycle, store, clock):
        request = await store.create_request(_request(clock))
        current, transitioned = await lifecycle.evaluate_expiry(request)
        assert transitioned is False
        assert current.status == SignatureStatus.PENDING

    @pytest.mark.asyncio
    async def test_terminal_request_never_expires(self, lifecycle, store, clock):
        request = await store.create_request(
            _request(clock, status=SignatureStatus.SIGNED, expires_in=timedelta(hours=1))
        )
        clock.advance(days=1)
        current, transitioned = await lifecycle.evaluate_expiry(request)
        assert transitioned is False
        assert current.status == SignatureStatus.SIGNED
