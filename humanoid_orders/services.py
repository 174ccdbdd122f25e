from humanoid_orders.collaborators import LoggingFulfillmentTrigger, LoggingNotifier
from humanoid_orders.config import settings
from humanoid_orders.database import SessionLocal
from humanoid_orders.orders import OrderService
from humanoid_orders.providers import build_registry
from humanoid_orders.ratelimit import RateLimiter
from humanoid_orders.reconciler import WebhookReconciler
from humanoid_orders.state_machine import OrderStateMachine


class Services:
    """Everything a request handler needs, wired against one session factory."""

    def __init__(self, session_factory=SessionLocal, providers=None, fulfillment=None, notifier=None):
        self.session_factory = session_factory
        self.providers = providers if providers is not None else build_registry()
        self.machine = OrderStateMachine(
            session_factory,
            fulfillment or LoggingFulfillmentTrigger(),
            notifier or LoggingNotifier(),
        )
        self.orders = OrderService(session_factory, self.machine, self.providers)
        self.reconciler = WebhookReconciler(session_factory, self.machine, self.providers)
        self.checkout_limiter = RateLimiter(
            session_factory, "checkout", settings.CHECKOUT_RATE_LIMIT, settings.CHECKOUT_RATE_WINDOW_SECONDS
        )
        self.webhook_limiter = RateLimiter(
            session_factory, "webhook", settings.WEBHOOK_RATE_LIMIT, settings.WEBHOOK_RATE_WINDOW_SECONDS
        )

    def run_maintenance(self, now=None) -> dict:
        """Re-drive stuck effects and drop expired dedup and rate-limit rows.

        Meant to be called periodically (cron hitting ``POST /admin/maintenance``).
        """
        return {
            "effects_redriven": self.machine.dispatch_pending(),
            "webhook_events_purged": self.reconciler.purge_webhook_events(now),
            # Counters of every scope share the table.
            "rate_limit_counters_purged": self.checkout_limiter.purge_expired(now),
        }


_services = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = Services()
    return _services
