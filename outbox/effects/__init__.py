"""Built-in side effects for known event kinds."""

from outbox.effects.handlers import BuiltinHandlers
from outbox.effects.notifier import LoggingNotifier, Notifier, WebhookNotifier, build_notifier
from outbox.effects.store import EffectsDb

__all__ = [
    "BuiltinHandlers",
    "EffectsDb",
    "LoggingNotifier",
    "Notifier",
    "WebhookNotifier",
    "build_notifier",
]
