"""Supervised broker connection shared by the publisher and the consumer.

`BrokerConnection` owns one robust aio-pika connection and one channel and
drives them through an explicit state machine:

    DISCONNECTED -> CONNECTING -> TOPOLOGY_READY -> ACTIVE
    ACTIVE -> CONNECTING          transport error or broker-initiated close
    any -> CLOSED                 close()

Components never keep raw channel handles. They call `acquire()`, which
returns the channel only in ACTIVE, waits for a recovery that is already
in progress, or runs a bounded `connect()`. Topology hooks registered by
the owning component run in TOPOLOGY_READY after every connect and every
transparent reconnect, so exchanges, queues and bindings are re-asserted
before traffic resumes. If re-asserting fails after a transparent
reconnect, the transport is dropped and a background task owned by the
connection reconnects without limit until it succeeds or `close()` runs.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractRobustConnection

from taskrelay.broker.config import BrokerConfig
from taskrelay.exceptions import BrokerError, BrokerUnavailableError, TopologyError

logger = logging.getLogger(__name__)

TopologyHook = Callable[[AbstractChannel], Awaitable[None]]
Connector = Callable[..., Awaitable[AbstractRobustConnection]]


class ConnectionState(Enum):
    """States of the reconnect protocol."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    TOPOLOGY_READY = "topology_ready"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class ConnectionStats:
    """Counters for one supervised connection.

    Attributes:
        connect_attempts: Transport connects attempted by `connect()`.
        connect_failures: Attempts that failed, topology failures included.
        topology_failures: Attempts or recoveries whose topology hooks failed.
        reconnections: Transparent recoveries by the robust transport.
        connected_at: When the state last became ACTIVE.
        disconnected_at: When an ACTIVE connection was last lost.
    """

    connect_attempts: int = 0
    connect_failures: int = 0
    topology_failures: int = 0
    reconnections: int = 0
    connected_at: datetime | None = None
    disconnected_at: datetime | None = None


class BrokerConnection:
    """
    One robust connection and channel, with topology re-asserted on recovery.

    Args:
        config: Broker configuration (URL, connect budget, heartbeat)
        name: Label used in logs ('publisher', 'consumer')
        connector: Coroutine opening the transport. Defaults to
            `aio_pika.connect_robust`; tests pass an in-memory broker.

    Example:
        >>> connection = BrokerConnection(BrokerConfig(), name="publisher")
        >>> connection.add_topology_hook(declare_exchange)
        >>> channel = await connection.acquire()
    """

    def __init__(
        self,
        config: BrokerConfig | None = None,
        *,
        name: str = "broker",
        connector: Connector | None = None,
    ) -> None:
        self._config = config or BrokerConfig()
        self._name = name
        self._connector = connector
        self._state = ConnectionState.DISCONNECTED
        self._lock = asyncio.Lock()
        self._active = asyncio.Event()
        self._hooks: list[TopologyHook] = []
        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractChannel | None = None
        self._closed = False
        self._stats = ConnectionStats()
        self._supervisor: asyncio.Task[None] | None = None
        self._exhausted = 0
        self._last_error: BaseException | None = None

    @property
    def config(self) -> BrokerConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is ConnectionState.ACTIVE and self._channel is not None

    @property
    def stats(self) -> ConnectionStats:
        return self._stats

    @property
    def is_supervising(self) -> bool:
        """True while the background reconnect loop is running."""
        return self._supervisor is not None and not self._supervisor.done()

    def add_topology_hook(self, hook: TopologyHook) -> None:
        """Register a coroutine run against the channel on every (re)connect."""
        self._hooks.append(hook)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug(
            f"{self._name} connection {self._state.value} -> {state.value}",
            extra={"connection": self._name, "from": self._state.value, "to": state.value},
        )
        self._state = state
        if state is ConnectionState.ACTIVE:
            self._active.set()
        else:
            self._active.clear()

    async def __aenter__(self) -> BrokerConnection:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def connect(
        self,
        max_attempts: int | None = None,
        *,
        forever: bool = False,
    ) -> AbstractChannel:
        """
        Connect, run topology hooks and return the ACTIVE channel.

        Args:
            max_attempts: Connect budget; defaults to `config.connect_attempts`
            forever: Ignore the budget and keep retrying

        Returns:
            The active channel

        A bounded call that waited for the lock while another call used up
        its budget fails at once instead of starting a budget of its own.

        Raises:
            BrokerUnavailableError: If the budget is exhausted
            BrokerError: If the connection was closed while connecting
        """
        budget = max_attempts if max_attempts is not None else self._config.connect_attempts
        exhausted = self._exhausted

        async with self._lock:
            if self.is_active:
                return self._channel  # type: ignore[return-value]
            if not forever and self._exhausted != exhausted:
                raise BrokerUnavailableError(0, self._last_error)

            # A robust transport that never recovered is replaced, not reused
            await self._discard()

            attempt = 0
            last_error: BaseException | None = None
            while forever or attempt < budget:
                if self._closed:
                    raise BrokerError(f"{self._name} connection is closed")
                attempt += 1
                self._stats.connect_attempts += 1
                self._set_state(ConnectionState.CONNECTING)
                try:
                    channel = await self._open()
                except asyncio.CancelledError:
                    await self._discard()
                    self._set_state(ConnectionState.DISCONNECTED)
                    raise
                except Exception as e:
                    last_error = self._last_error = e
                    self._stats.connect_failures += 1
                    if isinstance(e, TopologyError):
                        self._stats.topology_failures += 1
                    await self._discard()
                    self._set_state(ConnectionState.DISCONNECTED)
                    logger.warning(
                        f"{self._name} connect attempt {attempt} failed: {e}",
                        extra={
                            "connection": self._name,
                            "attempt": attempt,
                            "max_attempts": None if forever else budget,
                            "rabbitmq_url": self._config.sanitized_url,
                            "error": str(e),
                            "error_type": type(e).__name__,
                        },
                    )
                    if forever or attempt < budget:
                        await asyncio.sleep(self._config.connect_delay)
                    continue

                if self._closed:
                    await self._discard()
                    raise BrokerError(f"{self._name} connection is closed")
                return channel

            logger.error(
                f"{self._name} gave up connecting after {attempt} attempts",
                extra={
                    "connection": self._name,
                    "attempts": attempt,
                    "rabbitmq_url": self._config.sanitized_url,
                    "error": str(last_error),
                },
            )
            self._exhausted += 1
            raise BrokerUnavailableError(attempt, last_error)

    async def _open(self) -> AbstractChannel:
        connector = self._connector or aio_pika.connect_robust
        connection = await connector(
            self._config.rabbitmq_url,
            heartbeat=self._config.heartbeat,
            reconnect_interval=self._config.connect_delay,
        )
        self._connection = connection
        connection.close_callbacks.add(self._on_connection_close)
        connection.reconnect_callbacks.add(self._on_reconnect)

        channel = await connection.channel(publisher_confirms=self._config.publisher_confirms)
        self._channel = channel
        self._set_state(ConnectionState.TOPOLOGY_READY)
        await self._run_hooks(channel)

        self._stats.connected_at = datetime.now(UTC)
        self._set_state(ConnectionState.ACTIVE)
        logger.info(
            f"{self._name} connected to RabbitMQ and asserted topology",
            extra={
                "connection": self._name,
                "rabbitmq_url": self._config.sanitized_url,
                "exchange": self._config.exchange_name,
            },
        )
        return channel

    async def _run_hooks(self, channel: AbstractChannel) -> None:
        for hook in self._hooks:
            await hook(channel)

    async def acquire(self) -> AbstractChannel:
        """
        Return the ACTIVE channel, waiting for or driving recovery.

        A recovery already running in the robust transport is awaited for at
        most one connect budget (`connect_attempts * connect_delay`); after
        that the transport is dropped and a fresh bounded connect runs.
        While the background reconnect loop is running, callers wait for it
        for at most one budget and then fail.

        Raises:
            BrokerUnavailableError: If the broker stays unreachable
            BrokerError: If the connection is closed
        """
        if self.is_active:
            return self._channel  # type: ignore[return-value]
        if self._closed:
            raise BrokerError(f"{self._name} connection is closed")

        if self.is_supervising:
            budget = self._config.connect_attempts * self._config.connect_delay
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._active.wait(), timeout=budget)
            if self.is_active:
                return self._channel  # type: ignore[return-value]
            raise BrokerUnavailableError(0, self._last_error)

        recovering = (
            self._connection is not None
            and self._state is ConnectionState.CONNECTING
            and not self._lock.locked()
        )
        if recovering:
            budget = self._config.connect_attempts * self._config.connect_delay
            try:
                await asyncio.wait_for(self._active.wait(), timeout=budget)
            except TimeoutError:
                logger.warning(
                    f"{self._name} transport did not recover within {budget:.1f}s",
                    extra={"connection": self._name, "timeout": budget},
                )
            else:
                if self.is_active:
                    return self._channel  # type: ignore[return-value]

        return await self.connect()

    async def mark_lost(
        self,
        channel: AbstractChannel | None = None,
        error: BaseException | None = None,
    ) -> None:
        """
        Report a transport failure seen by a caller.

        The connection is dropped and the next `acquire()` reconnects. A
        report about a channel that is no longer current is ignored.
        """
        if self._closed:
            return
        if channel is not None and channel is not self._channel:
            return
        if self._lock.locked():
            # A connect or recovery is already replacing the channel
            return

        self._stats.disconnected_at = datetime.now(UTC)
        logger.warning(
            f"{self._name} connection marked lost: {error}",
            extra={
                "connection": self._name,
                "error": str(error),
                "error_type": type(error).__name__ if error else None,
            },
        )
        await self._discard()
        self._set_state(ConnectionState.DISCONNECTED)

    async def close(self) -> None:
        """Close channel and connection. The instance cannot be reused."""
        if self._closed:
            return
        self._closed = True
        supervisor, self._supervisor = self._supervisor, None
        if supervisor is not None and not supervisor.done():
            supervisor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await supervisor
        self._set_state(ConnectionState.CLOSED)
        await self._discard()
        logger.info(f"{self._name} connection closed", extra={"connection": self._name})

    async def _discard(self) -> None:
        connection, channel = self._connection, self._channel
        self._connection = None
        self._channel = None
        if channel is not None:
            with contextlib.suppress(Exception):
                await channel.close()
        if connection is not None:
            with contextlib.suppress(Exception):
                await connection.close()

    def _on_connection_close(
        self,
        connection: AbstractRobustConnection | None,
        exception: BaseException | None,
    ) -> None:
        # Callbacks of replaced or deliberately closed transports are ignored
        if connection is not self._connection or self._closed:
            return

        self._stats.disconnected_at = datetime.now(UTC)
        self._set_state(ConnectionState.CONNECTING)
        logger.warning(
            f"{self._name} connection lost, waiting for transport recovery: {exception}",
            extra={
                "connection": self._name,
                "error": str(exception),
                "error_type": type(exception).__name__ if exception else None,
                "reconnections": self._stats.reconnections,
            },
        )

    async def _on_reconnect(self, connection: AbstractRobustConnection) -> None:
        async with self._lock:
            if connection is not self._connection or self._closed:
                return

            self._stats.reconnections += 1
            try:
                channel = self._channel
                if channel is None or channel.is_closed:
                    channel = await connection.channel(
                        publisher_confirms=self._config.publisher_confirms
                    )
                    self._channel = channel
                self._set_state(ConnectionState.TOPOLOGY_READY)
                await self._run_hooks(channel)
            except Exception as e:
                self._stats.topology_failures += 1
                logger.error(
                    f"{self._name} failed to restore topology after reconnection: {e}",
                    exc_info=True,
                    extra={
                        "connection": self._name,
                        "reconnections": self._stats.reconnections,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                # The transport is gone with its own recovery; reconnect from scratch
                await self._discard()
                self._set_state(ConnectionState.CONNECTING)
                self._start_supervisor()
                return

            self._stats.connected_at = datetime.now(UTC)
            self._set_state(ConnectionState.ACTIVE)
            logger.info(
                f"{self._name} connection restored, topology re-asserted",
                extra={
                    "connection": self._name,
                    "reconnections": self._stats.reconnections,
                },
            )

    def _start_supervisor(self) -> None:
        if self._closed or self.is_supervising:
            return
        self._supervisor = asyncio.create_task(
            self._reconnect_forever(), name=f"taskrelay-{self._name}-reconnect"
        )

    async def _reconnect_forever(self) -> None:
        logger.warning(
            f"{self._name} reconnecting in the background until the broker is back",
            extra={"connection": self._name, "connect_delay": self._config.connect_delay},
        )
        try:
            await self.connect(forever=True)
        except BrokerError as e:
            # Only raised once the connection has been closed
            logger.debug(
                f"{self._name} background reconnect stopped: {e}",
                extra={"connection": self._name},
            )


__all__ = [
    "BrokerConnection",
    "ConnectionState",
    "ConnectionStats",
    "TopologyHook",
]
