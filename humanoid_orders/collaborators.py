from abc import ABC, abstractmethod

import structlog

logger = structlog.get_logger(component="collaborators")


class FulfillmentTrigger(ABC):
    """Starts fulfillment for a paid order. Must tolerate repeated calls."""

    @abstractmethod
    def start(self, order_id: str) -> None:
        pass


class Notifier(ABC):
    """Sends a customer notification. Must tolerate repeated calls."""

    @abstractmethod
    def send(self, order_id: str, template_kind: str) -> None:
        pass


class LoggingFulfillmentTrigger(FulfillmentTrigger):
    def start(self, order_id: str) -> None:
        logger.info("fulfillment_triggered", order_id=order_id)


class LoggingNotifier(Notifier):
    def send(self, order_id: str, template_kind: str) -> None:
        logger.info("notification_queued", order_id=order_id, template=template_kind)
