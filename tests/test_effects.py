"""Tests for built-in handlers, the effect ledger and notifiers."""

import json
from pathlib import Path

import httpx
import pytest
from pytest_httpx import HTTPXMock

from outbox.effects import (
    BuiltinHandlers,
    EffectsDb,
    LoggingNotifier,
    WebhookNotifier,
    build_notifier,
)
from outbox.events import (
    Dispatcher,
    EventKind,
    EventStore,
    HandlerRegistry,
    OutboxWorker,
    PermanentHandlerError,
    RetryableHandlerError,
)
from outbox.events.models import Event

WEBHOOK = "https://hooks.example.com/outbox"


@pytest.fixture
async def effects(db_path: Path) -> EffectsDb:
    db = EffectsDb(db_path)
    await db.ensure_conn()
    yield db
    await db.close()


def _event(name: str, payload: dict, event_id: int = 1, item_id: str = "7") -> Event:
    return Event(
        id=event_id,
        tenant_id="1",
        item_type="pursuit",
        item_id=item_id,
        event_name=name,
        payload=payload,
        created_at=1.0,
    )


class TestEffectsDb:
    """Natural-key artifacts and the ledger."""

    @pytest.mark.asyncio
    async def test_proposal_v1_created_once(self, effects: EffectsDb) -> None:
        assert await effects.ensure_proposal_v1("1", "7", event_id=10)
        assert not await effects.ensure_proposal_v1("1", "7", event_id=10)
        assert await effects.ensure_proposal_v1("2", "7", event_id=11)
        assert await effects.count_proposals("1", "7") == 1

    @pytest.mark.asyncio
    async def test_ledger(self, effects: EffectsDb) -> None:
        assert not await effects.effect_done("k")
        assert await effects.record_effect("k", 1)
        assert not await effects.record_effect("k", 2)
        assert await effects.effect_done("k")


class TestBuiltinHandlers:
    """Each handler tolerates redelivery."""

    @pytest.mark.asyncio
    async def test_registers_every_kind(self, effects: EffectsDb) -> None:
        registry = HandlerRegistry()
        BuiltinHandlers(effects, LoggingNotifier()).register(registry)
        for kind in EventKind:
            assert kind.value in registry

    @pytest.mark.asyncio
    async def test_candidate_promoted_is_idempotent(self, effects: EffectsDb) -> None:
        handlers = BuiltinHandlers(effects, LoggingNotifier())
        event = _event("candidate.promoted", {"pursuit_id": 42})
        await handlers.on_candidate_promoted(event)
        await handlers.on_candidate_promoted(event)
        assert await effects.count_proposals("1", "42") == 1

    @pytest.mark.asyncio
    async def test_missing_required_key_is_permanent(self, effects: EffectsDb) -> None:
        handlers = BuiltinHandlers(effects, LoggingNotifier())
        with pytest.raises(PermanentHandlerError, match="pursuit_id"):
            await handlers.on_candidate_promoted(_event("candidate.promoted", {}))
        with pytest.raises(PermanentHandlerError, match="proposal_id"):
            await handlers.on_pursuit_submit(_event("pursuit.submit", {"proposal_id": ""}))

    @pytest.mark.asyncio
    async def test_notification_sent_once_per_effect(self, effects: EffectsDb) -> None:
        notifier = LoggingNotifier()
        handlers = BuiltinHandlers(effects, notifier)
        await handlers.on_proposal_sent(_event("proposal.sent", {"proposal_id": 3}, event_id=1))
        # redelivery of the same event and a duplicate event for the same proposal
        await handlers.on_proposal_sent(_event("proposal.sent", {"proposal_id": 3}, event_id=1))
        await handlers.on_proposal_sent(_event("proposal.sent", {"proposal_id": 3}, event_id=2))
        await handlers.on_proposal_sent(_event("proposal.sent", {"proposal_id": 4}, event_id=3))
        assert notifier.sent == [
            ("proposal.sent", "1", "Proposal 3 sent for pursuit 7"),
            ("proposal.sent", "1", "Proposal 4 sent for pursuit 7"),
        ]

    @pytest.mark.asyncio
    async def test_won_and_lost_subjects(self, effects: EffectsDb) -> None:
        notifier = LoggingNotifier()
        handlers = BuiltinHandlers(effects, notifier)
        await handlers.on_pursuit_won(_event("pursuit.won", {"proposal_id": 3}, item_id="7"))
        await handlers.on_pursuit_lost(_event("pursuit.lost", {"reason": "price"}, item_id="8"))
        await handlers.on_pursuit_lost(_event("pursuit.lost", {}, item_id="9"))
        assert [s[2] for s in notifier.sent] == [
            "Pursuit 7 won",
            "Pursuit 8 lost: price",
            "Pursuit 9 lost",
        ]

    @pytest.mark.asyncio
    async def test_failed_send_is_not_recorded(self, effects: EffectsDb) -> None:
        class Failing:
            calls = 0

            async def send(self, kind, tenant_id, subject, data) -> None:
                Failing.calls += 1
                if Failing.calls == 1:
                    raise RetryableHandlerError("HTTP 503")

        handlers = BuiltinHandlers(effects, Failing())
        event = _event("pursuit.won", {})
        with pytest.raises(RetryableHandlerError):
            await handlers.on_pursuit_won(event)
        await handlers.on_pursuit_won(event)
        await handlers.on_pursuit_won(event)
        assert Failing.calls == 2

    @pytest.mark.asyncio
    async def test_worker_dead_letters_malformed_event(
        self, store: EventStore, effects: EffectsDb, clock
    ) -> None:
        registry = HandlerRegistry()
        BuiltinHandlers(effects, LoggingNotifier()).register(registry)
        worker = OutboxWorker(store, Dispatcher(registry), "w1", clock=clock)
        bad = await store.append("1", "candidate", "5", "candidate.promoted", {}, now=clock())
        good = await store.append(
            "1", "candidate", "6", "candidate.promoted", {"pursuit_id": 8}, now=clock()
        )
        assert await worker.run_once() == 2

        bad_event = await store.get(bad)
        good_event = await store.get(good)
        assert bad_event is not None and bad_event.dead_letter_at is not None
        assert good_event is not None and good_event.processed_at is not None
        assert await effects.count_proposals("1", "8") == 1


class TestWebhookNotifier:
    """HTTP status mapping."""

    @pytest.mark.asyncio
    async def test_posts_json(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=WEBHOOK, method="POST", status_code=204)
        await WebhookNotifier(WEBHOOK).send("pursuit.won", "1", "Pursuit 7 won", {"pursuit_id": "7"})

        request = httpx_mock.get_request()
        assert request is not None
        assert json.loads(request.content) == {
            "kind": "pursuit.won",
            "tenant_id": "1",
            "subject": "Pursuit 7 won",
            "data": {"pursuit_id": "7"},
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_retryable_status(self, httpx_mock: HTTPXMock, status: int) -> None:
        httpx_mock.add_response(url=WEBHOOK, method="POST", status_code=status)
        with pytest.raises(RetryableHandlerError):
            await WebhookNotifier(WEBHOOK).send("pursuit.won", "1", "s", {})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 404, 422])
    async def test_permanent_status(self, httpx_mock: HTTPXMock, status: int) -> None:
        httpx_mock.add_response(url=WEBHOOK, method="POST", status_code=status)
        with pytest.raises(PermanentHandlerError):
            await WebhookNotifier(WEBHOOK).send("pursuit.won", "1", "s", {})

    @pytest.mark.asyncio
    async def test_network_error_is_retryable(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_exception(httpx.ConnectError("connection refused"))
        with pytest.raises(RetryableHandlerError, match="connection refused"):
            await WebhookNotifier(WEBHOOK).send("pursuit.won", "1", "s", {})

    def test_build_notifier(self) -> None:
        assert isinstance(build_notifier({}), LoggingNotifier)
        assert isinstance(build_notifier({"webhook_url": None}), LoggingNotifier)
        assert isinstance(build_notifier({"webhook_url": WEBHOOK, "timeout": 3}), WebhookNotifier)
