"""Built-in idempotent handlers for the known event kinds.

Every handler can run more than once for the same event. Artifacts are
guarded by a natural key (proposal version 1 per pursuit); notifications
are guarded by the effect ledger, recorded after a successful send.
"""

import logging
from typing import Any

from outbox.effects.notifier import Notifier
from outbox.effects.store import EffectsDb
from outbox.events.dispatcher import HandlerRegistry, PermanentHandlerError
from outbox.events.kinds import EventKind
from outbox.events.models import Event

logger = logging.getLogger(__name__)


def _require(event: Event, key: str) -> Any:
    value = event.payload.get(key)
    if value is None or value == "":
        raise PermanentHandlerError(
            f"{event.event_name} event {event.id} payload is missing {key!r}"
        )
    return value


class BuiltinHandlers:
    """Side effects for EventKind members."""

    def __init__(self, db: EffectsDb, notifier: Notifier) -> None:
        self._db = db
        self._notifier = notifier

    def register(self, registry: HandlerRegistry) -> None:
        registry.register(EventKind.CANDIDATE_PROMOTED.value, self.on_candidate_promoted, "candidate_promoted")
        registry.register(EventKind.PURSUIT_SUBMIT.value, self.on_pursuit_submit, "pursuit_submit")
        registry.register(EventKind.PROPOSAL_SENT.value, self.on_proposal_sent, "proposal_sent")
        registry.register(EventKind.PURSUIT_WON.value, self.on_pursuit_won, "pursuit_won")
        registry.register(EventKind.PURSUIT_LOST.value, self.on_pursuit_lost, "pursuit_lost")

    async def _notify_once(
        self, event: Event, natural_key: str, subject: str, data: dict[str, Any]
    ) -> None:
        effect_key = f"{event.event_name}:{event.tenant_id}:{event.item_id}:{natural_key}"
        if await self._db.effect_done(effect_key):
            logger.info("outbox handler: %s already delivered, skipping", effect_key)
            return
        await self._notifier.send(event.event_name, event.tenant_id, subject, data)
        await self._db.record_effect(effect_key, event.id)

    async def on_candidate_promoted(self, event: Event) -> None:
        pursuit_id = str(_require(event, "pursuit_id"))
        created = await self._db.ensure_proposal_v1(event.tenant_id, pursuit_id, event.id)
        logger.info(
            "outbox handler: candidate promoted, proposal v1 for pursuit %s %s",
            pursuit_id,
            "created" if created else "already existed",
        )

    async def on_pursuit_submit(self, event: Event) -> None:
        proposal_id = _require(event, "proposal_id")
        await self._notify_once(
            event,
            f"proposal:{proposal_id}",
            f"Proposal {proposal_id} submitted for pursuit {event.item_id}",
            {"pursuit_id": event.item_id, "proposal_id": proposal_id, "channel": "email"},
        )

    async def on_proposal_sent(self, event: Event) -> None:
        proposal_id = _require(event, "proposal_id")
        await self._notify_once(
            event,
            f"proposal:{proposal_id}",
            f"Proposal {proposal_id} sent for pursuit {event.item_id}",
            {"pursuit_id": event.item_id, "proposal_id": proposal_id},
        )

    async def on_pursuit_won(self, event: Event) -> None:
        proposal_id = event.payload.get("proposal_id")
        await self._notify_once(
            event,
            "won",
            f"Pursuit {event.item_id} won",
            {"pursuit_id": event.item_id, "proposal_id": proposal_id},
        )

    async def on_pursuit_lost(self, event: Event) -> None:
        reason = event.payload.get("reason")
        await self._notify_once(
            event,
            "lost",
            f"Pursuit {event.item_id} lost" + (f": {reason}" if reason else ""),
            {"pursuit_id": event.item_id, "reason": reason},
        )
