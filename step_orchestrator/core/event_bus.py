"""
Event Bus - Lifecycle event delivery for the task store

This module implements the pub-sub bus the TaskStore publishes task and
project lifecycle events on. Agents subscribe through their
NotificationPropagator.

Features:
- Subscription by event type or wildcard ("*")
- Priority-based handler ordering
- Per-subscription filter functions
- Event history and replay
- Dead letter queue for failed handlers

Delivery is synchronous on the publishing thread. Handler failures are
logged and parked in the dead letter queue, except invariant violations,
which are re-raised to the publisher.

Usage:
    bus = EventBus()

    def on_task_completed(event: TaskEvent):
        print(f"Task {event.task.id} completed")

    bus.subscribe(
        event_type=TaskEventType.TASK_COMPLETED,
        handler=on_task_completed,
        subscriber_name="worker-1"
    )
"""

import threading
import traceback
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Any, Dict, List, Union

from step_orchestrator.models.enums import TaskEventType
from step_orchestrator.models.events import TaskEvent, ProjectEvent
from step_orchestrator.utils.exceptions import InvariantViolation
from step_orchestrator.utils.logger import get_logger

logger = get_logger(__name__)

Event = Union[TaskEvent, ProjectEvent]
EventHandler = Callable[[Event], Any]

WILDCARD = "*"


def _event_key(event_type: Union[str, TaskEventType]) -> str:
    return event_type.value if isinstance(event_type, TaskEventType) else str(event_type)


@dataclass
class EventSubscription:
    """Represents a subscription to an event type."""
    subscription_id: str
    event_type: str
    handler: EventHandler
    filter_func: Optional[Callable[[Event], bool]] = None
    priority: int = 5  # 1=highest, 10=lowest
    max_retries: int = 0
    active: bool = True
    subscriber_name: str = "unknown"
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())


@dataclass
class EventRecord:
    """Record of an event that was published."""
    event: Event
    published_at: str
    handlers_notified: List[str]
    handlers_succeeded: List[str]
    handlers_failed: List[str]
    processing_time_ms: int


class EventBus:
    """
    Pub-sub bus for task store lifecycle events.
    """

    def __init__(self, enable_history: bool = True, history_max_size: int = 1000):
        """
        Initialize the event bus.

        Args:
            enable_history: Whether to keep event history
            history_max_size: Maximum number of events to keep in history
        """
        self._lock = threading.Lock()
        self.subscriptions: Dict[str, List[EventSubscription]] = defaultdict(list)
        self.wildcard_subscriptions: List[EventSubscription] = []

        self.enable_history = enable_history
        self.history_max_size = history_max_size
        self.event_history: deque = deque(maxlen=history_max_size or None)

        self.dead_letter_queue: List[tuple] = []

        self.stats = {
            "events_published": 0,
            "events_delivered": 0,
            "events_failed": 0,
            "handlers_executed": 0,
            "handlers_failed": 0
        }

        logger.debug("Event Bus initialized")

    def subscribe(
        self,
        event_type: Union[str, TaskEventType],
        handler: EventHandler,
        subscriber_name: str = "unknown",
        filter_func: Optional[Callable[[Event], bool]] = None,
        priority: int = 5,
        max_retries: int = 0
    ) -> str:
        """
        Subscribe to an event type.

        Args:
            event_type: Type of event to subscribe to (or "*" for all events)
            handler: Function to call when event occurs
            subscriber_name: Name of the subscriber (for logging)
            filter_func: Optional filter function (return True to receive event)
            priority: Handler priority (1=highest, 10=lowest)
            max_retries: Retry attempts for a failing handler before dead-lettering

        Returns:
            subscription_id: Unique subscription ID (for unsubscribing)
        """
        key = _event_key(event_type)
        subscription = EventSubscription(
            subscription_id=str(uuid.uuid4()),
            event_type=key,
            handler=handler,
            filter_func=filter_func,
            priority=priority,
            max_retries=max_retries,
            subscriber_name=subscriber_name
        )

        with self._lock:
            if key == WILDCARD:
                self.wildcard_subscriptions.append(subscription)
                self.wildcard_subscriptions.sort(key=lambda s: s.priority)
            else:
                self.subscriptions[key].append(subscription)
                self.subscriptions[key].sort(key=lambda s: s.priority)

        logger.debug(f"Subscription added: {subscriber_name} -> {key}")
        return subscription.subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """
        Unsubscribe from events.

        Args:
            subscription_id: ID returned from subscribe()

        Returns:
            True if subscription was found and removed
        """
        with self._lock:
            for i, sub in enumerate(self.wildcard_subscriptions):
                if sub.subscription_id == subscription_id:
                    self.wildcard_subscriptions.pop(i)
                    logger.debug(f"Wildcard subscription removed: {sub.subscriber_name}")
                    return True

            for event_type, subs in self.subscriptions.items():
                for i, sub in enumerate(subs):
                    if sub.subscription_id == subscription_id:
                        subs.pop(i)
                        logger.debug(f"Subscription removed: {sub.subscriber_name} -> {event_type}")
                        return True

        return False

    def publish(self, event: Event) -> None:
        """
        Publish an event to all matching subscribers.

        Raises:
            InvariantViolation: re-raised from a handler after the remaining
                handlers have been notified
        """
        start_time = datetime.now()
        key = _event_key(event.event_type)

        logger.debug(f"[BUS] {key} published by {event.source}: {event.describe()}")

        with self._lock:
            self.stats["events_published"] += 1
            candidates = sorted(
                self.subscriptions.get(key, []) + self.wildcard_subscriptions,
                key=lambda s: s.priority
            )

        handlers_notified = []
        handlers_succeeded = []
        handlers_failed = []
        violation: Optional[InvariantViolation] = None

        for subscription in candidates:
            if not subscription.active:
                continue

            if subscription.filter_func and not subscription.filter_func(event):
                continue

            handlers_notified.append(subscription.subscriber_name)

            try:
                self._execute_handler(event, subscription)
                handlers_succeeded.append(subscription.subscriber_name)
            except InvariantViolation as e:
                handlers_failed.append(subscription.subscriber_name)
                self._count("handlers_failed")
                logger.error(
                    f"[BUS] Invariant violated in {subscription.subscriber_name} for {key}: {e}"
                )
                if violation is None:
                    violation = e
            except Exception as e:
                handlers_failed.append(subscription.subscriber_name)
                self._count("handlers_failed")
                logger.error(f"[BUS] Handler {subscription.subscriber_name} failed for {key}: {e}")
                logger.debug(traceback.format_exc())
                with self._lock:
                    self.dead_letter_queue.append((event, subscription.subscriber_name, str(e)))
                logger.warning(f"[BUS] Event added to dead letter queue: {key}")

        with self._lock:
            if handlers_succeeded:
                self.stats["events_delivered"] += 1
            if handlers_failed:
                self.stats["events_failed"] += 1

            if self.enable_history:
                processing_time_ms = int((datetime.now() - start_time).total_seconds() * 1000)
                self.event_history.append(EventRecord(
                    event=event,
                    published_at=start_time.isoformat(),
                    handlers_notified=handlers_notified,
                    handlers_succeeded=handlers_succeeded,
                    handlers_failed=handlers_failed,
                    processing_time_ms=processing_time_ms
                ))

        if violation is not None:
            raise violation

    def _execute_handler(self, event: Event, subscription: EventSubscription):
        """Execute a single handler, retrying up to ``max_retries`` times."""
        attempt = 0
        while True:
            try:
                subscription.handler(event)
                self._count("handlers_executed")
                return
            except InvariantViolation:
                raise
            except Exception as e:
                if attempt >= subscription.max_retries:
                    raise
                attempt += 1
                logger.info(
                    f"[BUS] Retrying handler {subscription.subscriber_name} "
                    f"(attempt {attempt}/{subscription.max_retries}) after: {e}"
                )

    def _count(self, stat: str) -> None:
        with self._lock:
            self.stats[stat] += 1

    def get_subscriptions(self, event_type: Optional[Union[str, TaskEventType]] = None) -> List[EventSubscription]:
        """
        Get all subscriptions, optionally filtered by event type.
        """
        with self._lock:
            if event_type:
                return list(self.subscriptions.get(_event_key(event_type), []))
            all_subs = []
            for subs in self.subscriptions.values():
                all_subs.extend(subs)
            all_subs.extend(self.wildcard_subscriptions)
            return all_subs

    def get_event_history(
        self,
        event_type: Optional[Union[str, TaskEventType]] = None,
        limit: int = 100
    ) -> List[EventRecord]:
        """
        Get event history, most recent first.

        Args:
            event_type: Optional event type to filter by
            limit: Maximum number of records to return
        """
        if not self.enable_history:
            return []

        with self._lock:
            history = list(self.event_history)[::-1]

        if event_type:
            key = _event_key(event_type)
            history = [r for r in history if _event_key(r.event.event_type) == key]

        return history[:limit]

    def get_statistics(self) -> Dict[str, Any]:
        """Get event bus statistics."""
        with self._lock:
            return {
                **self.stats,
                "active_subscriptions": sum(len(subs) for subs in self.subscriptions.values()),
                "wildcard_subscriptions": len(self.wildcard_subscriptions),
                "event_types_registered": len(self.subscriptions),
                "dead_letter_queue_size": len(self.dead_letter_queue),
                "history_size": len(self.event_history)
            }

    def clear_dead_letter_queue(self):
        """Clear the dead letter queue."""
        with self._lock:
            cleared = len(self.dead_letter_queue)
            self.dead_letter_queue.clear()
        logger.info(f"Dead letter queue cleared ({cleared} events)")

    def replay_event(self, event_id: str) -> bool:
        """
        Replay a specific event from history.

        Args:
            event_id: ID of event to replay

        Returns:
            True if the event was found and re-published
        """
        with self._lock:
            records = list(self.event_history)

        for record in records:
            if record.event.event_id == event_id:
                logger.info(f"Replaying event: {event_id}")
                self.publish(record.event)
                return True

        logger.warning(f"Event {event_id} not found in history")
        return False
