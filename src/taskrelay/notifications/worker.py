"""
Notification worker: store, processor and bounded consumer wired together.

The worker may start before the broker is reachable. When the initial
connect budget runs out it logs a warning and keeps connecting in the
background, so the rest of the process (such as the inbox) stays usable.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from taskrelay.broker.config import BrokerConfig
from taskrelay.broker.connection import Connector
from taskrelay.broker.consumer import BoundedConsumer
from taskrelay.exceptions import BrokerUnavailableError
from taskrelay.notifications.processor import NotificationProcessor
from taskrelay.notifications.store import NotificationStore
from taskrelay.observability import Tracer

logger = logging.getLogger(__name__)


class NotificationWorker:
    """
    Runs the notification consumer group.

    Args:
        store: Where notifications are written
        config: Broker configuration (queue, prefetch, redelivery policy)
        connector: Transport factory, for tests
        tracer: Optional tracer handed to the consumer

    Example:
        >>> worker = NotificationWorker(store, BrokerConfig())
        >>> await worker.start()
        >>> ...
        >>> await worker.stop()
    """

    def __init__(
        self,
        store: NotificationStore,
        config: BrokerConfig | None = None,
        *,
        connector: Connector | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        self._config = config or BrokerConfig()
        self._processor = NotificationProcessor(store)
        self._consumer = BoundedConsumer(
            self._processor.process,
            self._config,
            connector=connector,
            tracer=tracer,
        )
        self._background: asyncio.Task[None] | None = None

    @property
    def processor(self) -> NotificationProcessor:
        return self._processor

    @property
    def consumer(self) -> BoundedConsumer:
        return self._consumer

    @property
    def is_degraded(self) -> bool:
        """True while the worker is still trying to reach the broker."""
        return self._background is not None and not self._background.done()

    async def start(self, *, degraded_ok: bool = True, max_attempts: int | None = None) -> None:
        """
        Start consuming.

        Raises:
            BrokerUnavailableError: If the connect budget is exhausted and
                `degraded_ok` is False
        """
        try:
            await self._consumer.start(max_attempts)
        except BrokerUnavailableError as e:
            if not degraded_ok:
                raise
            logger.warning(
                f"RabbitMQ not ready yet, consuming will start once it is: {e}",
                extra={"queue": self._config.queue_name, "attempts": e.attempts},
            )
            self._background = asyncio.create_task(
                self._connect_in_background(), name="taskrelay-notification-connect"
            )
            return
        logger.info(
            "Notification worker consuming",
            extra={"queue": self._config.queue_name},
        )

    async def _connect_in_background(self) -> None:
        await self._consumer.start(forever=True)
        logger.info(
            "Notification worker connected and consuming",
            extra={"queue": self._config.queue_name},
        )

    async def stop(self, timeout: float | None = None) -> None:
        if self._background is not None:
            self._background.cancel()
            try:
                await self._background
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(
                    f"Background connect ended with an error: {e}",
                    extra={"error": str(e), "error_type": type(e).__name__},
                )
            self._background = None
        await self._consumer.stop(timeout)

    async def __aenter__(self) -> NotificationWorker:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()


__all__ = ["NotificationWorker"]
