"""Tests for src.core.dispatcher — primary/fallback delivery and audit."""

import pytest
from datetime import datetime, timezone
from unittest.mock import patch

from src.core.dispatcher import Dispatcher
from src.core.errors import DeliveryError, StoreError
from src.core.payloads import build_payload
from src.data.models import (
    NO_RECIPIENT_ADDRESS,
    AttemptOutcome,
    DispatchChannel,
    Reminder,
)
from src.ports.push_gateway_port import SendFailure, SendResult


def _reminder():
    return Reminder(
        id="r-1",
        owner_id="emp-1",
        title="Call client",
        note="Loan docs",
        trigger_at=datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc),
        context={"propertyId": "p-1"},
    )


@pytest.fixture
def setup(memory_store, memory_directory, make_gateway, clock):
    def _setup(addresses=("tok-1",), behaviour=None, fallback=None, timeout=1.0,
               delay=0.0):
        for address in reversed(addresses):
            memory_directory.register_address("emp-1", address)
            clock.advance(seconds=1)
        gateway = make_gateway(behaviour=behaviour, delay=delay)
        dispatcher = Dispatcher(
            memory_directory, gateway, store=memory_store,
            fallback_gateway=fallback, timeout=timeout, clock=clock,
        )
        return dispatcher, gateway

    return _setup


class TestDispatch:
    @pytest.mark.asyncio
    async def test_primary_success_single_attempt(self, setup, memory_store):
        dispatcher, gateway = setup()
        outcome = await dispatcher.dispatch(_reminder())

        assert outcome.success
        assert outcome.delivered_addresses == ["tok-1"]
        assert len(outcome.attempts) == 1
        assert outcome.attempts[0].channel is DispatchChannel.PRIMARY
        assert outcome.attempts[0].outcome is AttemptOutcome.SENT
        assert memory_store.list_attempts("r-1") == outcome.attempts

        address, payload = gateway.sent[0]
        assert address == "tok-1"
        assert payload["data"]["type"] == "reminder"
        assert payload["data"]["propertyId"] == "p-1"

    @pytest.mark.asyncio
    async def test_primary_fails_fallback_succeeds(self, setup, make_gateway):
        fallback = make_gateway()
        dispatcher, primary = setup(
            behaviour={"tok-1": DeliveryError("connection reset")}, fallback=fallback,
        )
        outcome = await dispatcher.dispatch(_reminder())

        assert outcome.success
        assert [a.channel for a in outcome.attempts] == [
            DispatchChannel.PRIMARY, DispatchChannel.FALLBACK,
        ]
        assert [a.outcome for a in outcome.attempts] == [
            AttemptOutcome.FAILED, AttemptOutcome.SENT,
        ]
        assert "connection reset" in outcome.attempts[0].error_detail
        assert len(primary.sent) == 1
        assert len(fallback.sent) == 1

    @pytest.mark.asyncio
    async def test_fallback_without_second_gateway_sends_data_only(self, setup):
        dispatcher, gateway = setup(behaviour={"tok-1": SendResult.failed(
            SendFailure.REJECTED, "HTTP 400: bad payload",
        )})
        outcome = await dispatcher.dispatch(_reminder())

        assert len(gateway.sent) == 2
        first, second = gateway.sent[0][1], gateway.sent[1][1]
        assert first["notification"] is not None
        assert second["notification"] is None
        assert second["data"]["title"] == "Call client"
        assert not outcome.success
        assert outcome.attempts[0].error_detail == "rejected: HTTP 400: bad payload"

    @pytest.mark.asyncio
    async def test_timeout_triggers_fallback(self, setup, make_gateway):
        fallback = make_gateway()
        dispatcher, _ = setup(delay=0.5, timeout=0.05, fallback=fallback)
        outcome = await dispatcher.dispatch(_reminder())

        assert outcome.success
        assert outcome.attempts[0].outcome is AttemptOutcome.TIMEOUT
        assert outcome.attempts[1].outcome is AttemptOutcome.SENT

    @pytest.mark.asyncio
    async def test_every_address_tried(self, setup):
        dispatcher, gateway = setup(addresses=("tok-new", "tok-old"))
        outcome = await dispatcher.dispatch(_reminder())

        assert [a for a, _ in gateway.sent] == ["tok-new", "tok-old"]
        assert outcome.delivered_addresses == ["tok-new", "tok-old"]

    @pytest.mark.asyncio
    async def test_success_if_any_address_succeeds(self, setup):
        dead = SendResult.failed(SendFailure.UNREACHABLE, "")
        dispatcher, _ = setup(addresses=("tok-a", "tok-b"), behaviour={"tok-a": dead})
        outcome = await dispatcher.dispatch(_reminder())

        assert outcome.success
        assert outcome.delivered_addresses == ["tok-b"]
        assert len(outcome.attempts) == 3

    @pytest.mark.asyncio
    async def test_no_addresses_records_single_attempt(self, memory_store,
                                                       memory_directory, make_gateway,
                                                       clock):
        gateway = make_gateway()
        dispatcher = Dispatcher(memory_directory, gateway, store=memory_store, clock=clock)
        outcome = await dispatcher.dispatch(_reminder())

        assert outcome.no_recipient
        assert gateway.sent == []
        [attempt] = memory_store.list_attempts("r-1")
        assert attempt.address is None
        assert attempt.outcome is AttemptOutcome.FAILED
        assert attempt.error_detail == NO_RECIPIENT_ADDRESS

    @pytest.mark.asyncio
    async def test_dead_address_unregistered(self, setup, memory_directory):
        invalid = SendResult.failed(SendFailure.INVALID_ADDRESS, "HTTP 404")
        dispatcher, _ = setup(addresses=("tok-dead", "tok-ok"), behaviour={"tok-dead": invalid})
        await dispatcher.dispatch(_reminder())

        assert memory_directory.resolve_addresses("emp-1") == ["tok-ok"]

    @pytest.mark.asyncio
    async def test_address_kept_when_only_one_path_says_invalid(self, setup,
                                                                memory_directory,
                                                                make_gateway):
        invalid = SendResult.failed(SendFailure.INVALID_ADDRESS, "HTTP 404")
        fallback = make_gateway(behaviour={"tok-1": DeliveryError("down")})
        dispatcher, _ = setup(behaviour={"tok-1": invalid}, fallback=fallback)
        await dispatcher.dispatch(_reminder())

        assert memory_directory.resolve_addresses("emp-1") == ["tok-1"]

    @pytest.mark.asyncio
    async def test_cleanup_failure_does_not_stop_delivery(self, setup, memory_directory):
        invalid = SendResult.failed(SendFailure.INVALID_ADDRESS, "HTTP 404")
        dispatcher, gateway = setup(
            addresses=("tok-dead", "tok-ok"), behaviour={"tok-dead": invalid},
        )
        with patch.object(
            memory_directory, "unregister_address", side_effect=StoreError("locked"),
        ):
            outcome = await dispatcher.dispatch(_reminder())

        assert outcome.success
        assert outcome.delivered_addresses == ["tok-ok"]
        assert [address for address, _ in gateway.sent] == ["tok-dead", "tok-dead", "tok-ok"]


class TestNotify:
    @pytest.mark.asyncio
    async def test_notify_not_audited(self, setup, memory_store):
        dispatcher, gateway = setup()
        payload = build_payload("chat", "Anita", "hello")
        outcome = await dispatcher.notify("emp-1", payload)

        assert outcome.success
        assert outcome.reminder_id is None
        assert gateway.sent[0][1] is payload
        assert memory_store.list_attempts("r-1") == []

    @pytest.mark.asyncio
    async def test_notify_uses_fallback(self, setup, make_gateway):
        fallback = make_gateway()
        dispatcher, _ = setup(
            behaviour={"tok-1": RuntimeError("boom")}, fallback=fallback,
        )
        outcome = await dispatcher.notify("emp-1", build_payload("alert", "t", "b"))
        assert outcome.success
        assert len(fallback.sent) == 1
