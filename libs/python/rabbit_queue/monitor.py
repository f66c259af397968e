"""
Dead channel detection and cache eviction.

The monitor subscribes to each cached channel's termination signal and
evicts the channel together with its assertion memo when the signal fires.
An optional poller thread notices channels the broker closed while nobody
was using them.
"""

import logging
import threading
from typing import Callable, Optional

from libs.python.rabbit_queue.channel import QueueChannel, Subscription
from libs.python.rabbit_queue.channel_cache import ChannelCache

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0


class DeadChannelMonitor:
    """
    Evicts channels from a ChannelCache when they terminate.
    """

    def __init__(
        self,
        channels: ChannelCache,
        on_dead: Optional[Callable[[str], None]] = None,
        poll_interval: Optional[float] = DEFAULT_POLL_INTERVAL,
    ) -> None:
        """
        Args:
            channels: Cache to evict dead channels from
            on_dead: Called with the queue name after a dead channel is evicted
            poll_interval: Seconds between liveness checks in the poller
                thread. None disables the thread.
        """
        self.channels = channels
        self._on_dead = on_dead
        self._poll_interval = poll_interval
        self._lock = threading.Lock()
        self._watched: dict[str, tuple[QueueChannel, Subscription]] = {}
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def watch(self, queue_name: str, channel: QueueChannel) -> Subscription:
        """
        Subscribe to channel's termination and register it for polling.

        Any previous subscription for queue_name is cancelled.
        """
        self.unwatch(queue_name)
        subscription = channel.on_termination(
            lambda: self._handle_termination(queue_name, channel)
        )
        with self._lock:
            if subscription.active:
                self._watched[queue_name] = (channel, subscription)
        if self._poll_interval is not None:
            self.start()
        return subscription

    def unwatch(self, queue_name: str) -> bool:
        """Cancel the termination subscription for queue_name."""
        with self._lock:
            entry = self._watched.pop(queue_name, None)
        if entry is None:
            return False
        entry[1].cancel()
        return True

    def watched(self) -> list[str]:
        with self._lock:
            return list(self._watched)

    def _handle_termination(self, queue_name: str, channel: QueueChannel) -> None:
        with self._lock:
            entry = self._watched.get(queue_name)
            if entry is not None and entry[0] is channel:
                del self._watched[queue_name]
        if not self.channels.evict(queue_name, channel):
            return
        logger.warning("RabbitMQ channel for queue %s died, evicted from cache", queue_name)
        if self._on_dead is not None:
            self._on_dead(queue_name)

    def check(self) -> int:
        """
        Terminate every watched channel that is no longer open.

        Returns:
            Number of dead channels found
        """
        with self._lock:
            watched = [channel for channel, _ in self._watched.values()]
        dead = [channel for channel in watched if not channel.is_open]
        for channel in dead:
            channel.terminate()
        return len(dead)

    def start(self) -> None:
        """Start the poller thread if it is not already running."""
        if self._poll_interval is None:
            return
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop_event,),
                name="rmq-dead-channel-monitor",
                daemon=True,
            )
            self._thread.start()
        logger.debug("Dead channel monitor started")

    def stop(self) -> None:
        """Stop the poller thread and wait for it to exit."""
        with self._lock:
            self._stop_event.set()
            thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self._poll_interval)
            logger.debug("Dead channel monitor stopped")

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self._poll_interval):
            try:
                self.check()
            except Exception:
                logger.exception("Error checking RabbitMQ channels")
