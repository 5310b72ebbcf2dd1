"""Best-effort "events changed, re-query" broadcast to subscribed listeners."""
import itertools
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

EVENTS_UPDATED_CHANNEL = 'events-updated'
MAX_BUFFERED_SIGNALS = 100


@dataclass(frozen=True)
class ChangeSignal:
    """Notification that the event set changed. Carries only a count."""
    change_count: int
    channel: str = EVENTS_UPDATED_CHANNEL

    def to_payload(self) -> Dict[str, int]:
        return {'changeCount': self.change_count}


class Subscription:
    """
    Handle returned by ChangeNotifier.subscribe.

    With a listener, signals are delivered by calling it. Without one,
    signals are buffered and read with next_signal. The buffer holds at
    most max_buffered signals; when full, the oldest is dropped.
    """

    def __init__(
        self,
        subscription_id: int,
        listener: Optional[Callable[[ChangeSignal], None]] = None,
        max_buffered: int = MAX_BUFFERED_SIGNALS,
    ):
        self.subscription_id = subscription_id
        self.listener = listener
        self._buffer: "queue.Queue[ChangeSignal]" = queue.Queue(maxsize=max_buffered)

    def deliver(self, signal: ChangeSignal) -> None:
        if self.listener is not None:
            self.listener(signal)
            return

        while True:
            try:
                self._buffer.put_nowait(signal)
                return
            except queue.Full:
                try:
                    dropped = self._buffer.get_nowait()
                except queue.Empty:
                    continue
                logger.debug(
                    f"Subscription {self.subscription_id} buffer full, dropped "
                    f"changeCount={dropped.change_count}"
                )

    def next_signal(self, timeout: Optional[float] = None) -> Optional[ChangeSignal]:
        """Return the next buffered signal, or None if none arrives in time."""
        try:
            return self._buffer.get(timeout=timeout)
        except queue.Empty:
            return None


class ChangeNotifier:
    """Fans change signals out to every currently subscribed listener."""

    def __init__(self, channel: str = EVENTS_UPDATED_CHANNEL, max_buffered: int = MAX_BUFFERED_SIGNALS):
        self.channel = channel
        self.max_buffered = max_buffered
        self._subscriptions: Dict[int, Subscription] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def subscribe(self, listener: Optional[Callable[[ChangeSignal], None]] = None) -> Subscription:
        """
        Register a listener.

        Args:
            listener: Callable receiving each ChangeSignal, or None to buffer

        Returns:
            Subscription handle for unsubscribe
        """
        with self._lock:
            subscription = Subscription(next(self._ids), listener, self.max_buffered)
            self._subscriptions[subscription.subscription_id] = subscription
        logger.debug(f"Listener {subscription.subscription_id} subscribed to {self.channel}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a listener. Unknown or already removed handles are ignored."""
        with self._lock:
            removed = self._subscriptions.pop(subscription.subscription_id, None)
        if removed is not None:
            logger.debug(f"Listener {subscription.subscription_id} unsubscribed from {self.channel}")

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, change_count: int) -> int:
        """
        Deliver a change signal to every listener subscribed right now.

        A listener that raises is logged and skipped; the rest still
        receive the signal.

        Args:
            change_count: Number of records merged

        Returns:
            Number of listeners the signal was delivered to
        """
        signal = ChangeSignal(change_count=change_count, channel=self.channel)
        with self._lock:
            recipients = list(self._subscriptions.values())

        delivered = 0
        for subscription in recipients:
            try:
                subscription.deliver(signal)
                delivered += 1
            except Exception as e:
                logger.warning(
                    f"Listener {subscription.subscription_id} failed on {self.channel}: {e}"
                )
                continue

        logger.info(
            f"Published {self.channel} (changeCount={change_count}) "
            f"to {delivered}/{len(recipients)} listeners"
        )
        return delivered
