"""Store-backed message bus implementing agent-to-agent delivery.

Each agent owns a mailbox: a sorted set in the shared store scored by
priority and age. Subscribed agents get an independent processing loop that
handles one message at a time.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from .errors import QueueFullError, RequestTimeoutError
from .models import AgentMessage, CommunicationStats, MessagePriority, MessageType, utcnow
from .store import SharedStore
from .ticker import Ticker

logger = logging.getLogger(__name__)

MessageHandler = Callable[[AgentMessage], Awaitable[None]]

MAX_QUEUE_SIZE = 1000
PRIORITY_WEIGHT = 1_000_000
POLL_INTERVAL = 0.1
DEADLOCK_CHECK_INTERVAL = 5.0
REQUEST_TIMEOUT = 30.0
RESPONSE_TTL = 300


def queue_key(agent_id: str) -> str:
    return f"message:queue:{agent_id}"


def response_key(correlation_id: str) -> str:
    return f"message:response:{correlation_id}"


def new_message_id(prefix: str = "msg") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class MessageBus:
    """Async message hub enabling agent-to-agent communication over a shared store."""

    def __init__(
        self,
        store: SharedStore,
        *,
        max_queue_size: int = MAX_QUEUE_SIZE,
        priority_weight: float = PRIORITY_WEIGHT,
        poll_interval: float = POLL_INTERVAL,
        deadlock_check_interval: float = DEADLOCK_CHECK_INTERVAL,
        request_timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        self._store = store
        self.max_queue_size = max_queue_size
        self.priority_weight = priority_weight
        self.poll_interval = poll_interval
        self.request_timeout = request_timeout
        self._subscribers: Dict[str, MessageHandler] = {}
        self._processing_locks: Dict[str, bool] = {}
        self._loops: Dict[str, asyncio.Task[None]] = {}
        self._stats: Dict[str, CommunicationStats] = {}
        self._epoch = utcnow()
        self._deadlock_ticker = Ticker("deadlock-check", deadlock_check_interval, self.check_deadlocks)

    async def start(self) -> None:
        self._deadlock_ticker.start()
        logger.info("Message bus started")

    async def stop(self) -> None:
        """Stop the deadlock sweep and every processing loop."""
        await self._deadlock_ticker.stop()
        self._subscribers.clear()
        loops = list(self._loops.values())
        self._loops.clear()
        for loop in loops:
            loop.cancel()
        await asyncio.gather(*loops, return_exceptions=True)
        self._processing_locks.clear()
        logger.info("Message bus stopped")

    def score(self, priority: MessagePriority, timestamp: datetime) -> float:
        """Higher priority dominates; within a priority, older messages score higher."""
        age = (timestamp - self._epoch).total_seconds()
        return self.priority_weight * int(priority) - age

    async def publish(self, message: AgentMessage) -> None:
        """Enqueue a message for its receiver, or broadcast it when no receiver is set."""
        if not message.receiver_id:
            await self.broadcast(message)
            return

        key = queue_key(message.receiver_id)
        size = await self._store.zcard(key)
        if size >= self.max_queue_size:
            logger.warning(
                "Message queue full for agent %s, dropping message %s", message.receiver_id, message.id
            )
            raise QueueFullError(message.receiver_id, size)

        score = self.score(message.priority, message.timestamp)
        await self._store.zadd(key, score, message.model_dump_json())
        if message.ttl:
            await self._store.expire(key, message.ttl)

        self._update_stats(message.sender_id, sent=True)
        logger.debug("Published message %s to agent %s", message.id, message.receiver_id)

    async def broadcast(self, message: AgentMessage) -> None:
        """Fan a copy of the message out to every subscriber except the sender."""
        recipients = [agent_id for agent_id in list(self._subscribers) if agent_id != message.sender_id]
        for agent_id in recipients:
            copy = message.model_copy(
                update={"id": f"{message.id}-broadcast-{agent_id}", "receiver_id": agent_id}
            )
            await self.publish(copy)
        logger.debug("Broadcast message %s to %d agents", message.id, len(recipients))

    async def subscribe(self, agent_id: str, handler: MessageHandler) -> None:
        """Register a handler and start the agent's processing loop."""
        self._subscribers[agent_id] = handler
        self._processing_locks.setdefault(agent_id, False)
        loop = self._loops.get(agent_id)
        if loop is None or loop.done():
            self._loops[agent_id] = asyncio.create_task(
                self._process_loop(agent_id), name=f"mailbox:{agent_id}"
            )
        logger.info("Agent %s subscribed to message queue", agent_id)

    async def unsubscribe(self, agent_id: str) -> None:
        """Stop checking the agent's mailbox; an in-flight handler runs to completion.

        The running loop keeps its lock until that handler returns and then
        exits on its own. Subscribing again before that reuses the loop, so an
        agent never has two handlers running at once.
        """
        self._subscribers.pop(agent_id, None)
        logger.info("Agent %s unsubscribed from message queue", agent_id)

    def is_subscribed(self, agent_id: str) -> bool:
        return agent_id in self._subscribers

    def subscribers(self) -> List[str]:
        return list(self._subscribers)

    async def get_messages(self, agent_id: str) -> List[AgentMessage]:
        raw_messages = await self._store.zrange(queue_key(agent_id), 0, -1, desc=True)
        messages: List[AgentMessage] = []
        for raw in raw_messages:
            try:
                messages.append(AgentMessage.model_validate_json(raw))
            except ValidationError:
                logger.warning("Skipping unreadable message in queue of %s", agent_id)
        return messages

    async def queue_size(self, agent_id: str) -> int:
        return await self._store.zcard(queue_key(agent_id))

    async def ack(self, agent_id: str, message_id: str) -> bool:
        """Remove a message from the agent's mailbox."""
        key = queue_key(agent_id)
        for raw in await self._store.zrange(key, 0, -1):
            try:
                parsed = AgentMessage.model_validate_json(raw)
            except ValidationError:
                logger.warning("Failed to parse message for ack in queue of %s", agent_id)
                continue
            if parsed.id == message_id:
                await self._store.zrem(key, raw)
                logger.debug("Acknowledged message %s", message_id)
                return True
        return False

    async def clear_queue(self, agent_id: str) -> None:
        await self._store.delete(queue_key(agent_id))
        logger.info("Cleared message queue for agent %s", agent_id)

    async def request(
        self,
        target_id: str,
        payload: Dict[str, Any],
        sender_id: str,
        timeout: Optional[float] = None,
    ) -> AgentMessage:
        """Publish a REQUEST and wait for the correlated RESPONSE."""
        if timeout is None:
            timeout = self.request_timeout
        correlation_id = new_message_id("req")
        message = AgentMessage(
            id=correlation_id,
            type=MessageType.REQUEST,
            priority=MessagePriority.HIGH,
            sender_id=sender_id,
            receiver_id=target_id,
            payload=payload,
            correlation_id=correlation_id,
        )
        await self.publish(message)
        return await self._wait_for_response(correlation_id, timeout)

    async def respond(
        self,
        original: AgentMessage,
        payload: Dict[str, Any],
        sender_id: str,
    ) -> AgentMessage:
        """Answer a request: fill its correlation slot and notify a subscribed requester."""
        response = AgentMessage(
            id=new_message_id("resp"),
            type=MessageType.RESPONSE,
            priority=MessagePriority.HIGH,
            sender_id=sender_id,
            receiver_id=original.sender_id,
            payload=payload,
            correlation_id=original.correlation_id,
        )
        if original.correlation_id:
            await self._store.set(
                response_key(original.correlation_id), response.model_dump_json(), RESPONSE_TTL
            )
        if self.is_subscribed(original.sender_id):
            await self.publish(response)
        return response

    def get_stats(self, agent_id: str) -> Optional[CommunicationStats]:
        return self._stats.get(agent_id)

    async def check_deadlocks(self) -> List[str]:
        """Log agents whose processing lock is held; the lock is left untouched."""
        locked = [agent_id for agent_id, held in self._processing_locks.items() if held]
        for agent_id in locked:
            logger.warning("Potential deadlock detected for agent %s", agent_id)
        return locked

    async def _process_loop(self, agent_id: str) -> None:
        try:
            while agent_id in self._subscribers:
                if self._processing_locks.get(agent_id):
                    await asyncio.sleep(self.poll_interval)
                    continue

                self._processing_locks[agent_id] = True
                try:
                    await self._process_next(agent_id)
                except asyncio.CancelledError:
                    raise
                except Exception:  # noqa: BLE001
                    logger.exception("Error in processing loop for %s", agent_id)
                finally:
                    if agent_id in self._processing_locks:
                        self._processing_locks[agent_id] = False

                await asyncio.sleep(self.poll_interval)
        finally:
            if self._loops.get(agent_id) is asyncio.current_task():
                del self._loops[agent_id]
                self._processing_locks.pop(agent_id, None)

    async def _process_next(self, agent_id: str) -> None:
        key = queue_key(agent_id)
        head = await self._store.zrange(key, 0, 0, desc=True)
        if not head:
            return
        raw = head[0]
        handler = self._subscribers.get(agent_id)
        if handler is None:
            return

        try:
            message = AgentMessage.model_validate_json(raw)
        except ValidationError:
            logger.warning("Dropping unreadable message from queue of %s", agent_id)
            await self._store.zrem(key, raw)
            return

        try:
            await handler(message)
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            logger.exception("Error processing message %s for %s", message.id, agent_id)
        await self._store.zrem(key, raw)
        self._update_stats(agent_id, sent=False)
        logger.debug("Acknowledged message %s", message.id)

    async def _wait_for_response(self, correlation_id: str, timeout: float) -> AgentMessage:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        key = response_key(correlation_id)
        while True:
            raw = await self._store.get(key)
            if raw is not None:
                await self._store.delete(key)
                return AgentMessage.model_validate_json(raw)
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise RequestTimeoutError(correlation_id, timeout)
            await asyncio.sleep(min(self.poll_interval, remaining))

    def _update_stats(self, agent_id: str, *, sent: bool) -> None:
        stats = self._stats.setdefault(agent_id, CommunicationStats())
        if sent:
            stats.messages_sent += 1
        else:
            stats.messages_received += 1
        stats.last_message_at = utcnow()
