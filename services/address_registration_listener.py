"""
Address Registration Listener
Background thread that owns one notification subscription and dispatches each
notification to the action bound to its channel.
"""

import logging
import threading
import time
from typing import Callable, Dict, Mapping, Optional

from config import Config
from services.notification_channel import ChannelConnectionError, Notification, NotificationChannel

logger = logging.getLogger(__name__)

# Invoked with (payload, timestamp in seconds)
TriggerAction = Callable[[str, int], None]


class AddressRegistrationListener:
    """
    Dispatches channel notifications to bound actions until stopped.

    - A notification on a channel without an action is logged and dropped.
    - An action that raises is logged; the loop keeps running.
    - A dropped connection, or any other subscription error, is reopened with
      bounded exponential backoff.
    - graceful_stop() waits for the in-flight dispatch; nothing is dispatched after it returns.
    """

    def __init__(self,
                 channel: NotificationChannel,
                 actions: Mapping[str, TriggerAction],
                 poll_timeout: Optional[float] = None,
                 reconnect_initial_delay: Optional[float] = None,
                 reconnect_max_delay: Optional[float] = None,
                 name: str = "address-registration-listener"):
        if not actions:
            raise ValueError("At least one channel action is required")
        self._channel = channel
        self._actions: Dict[str, TriggerAction] = dict(actions)
        self._poll_timeout = poll_timeout if poll_timeout is not None else Config.LISTENER_POLL_TIMEOUT
        self._initial_delay = (
            reconnect_initial_delay if reconnect_initial_delay is not None
            else Config.LISTENER_RECONNECT_INITIAL_DELAY
        )
        self._max_delay = reconnect_max_delay if reconnect_max_delay is not None else Config.LISTENER_RECONNECT_MAX_DELAY
        self._name = name

        self._stop_event = threading.Event()
        self._dispatch_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

        self.dispatch_count = 0
        self.failure_count = 0
        self.reconnect_count = 0

    @property
    def channels(self):
        return tuple(self._actions)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start the listening thread"""
        if self.is_running:
            raise RuntimeError(f"Listener '{self._name}' is already running")
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()
        logger.info(f"🚀 LISTENER: '{self._name}' started for channels {', '.join(self._actions)}")

    def graceful_stop(self, timeout: Optional[float] = None) -> bool:
        """
        Stop listening and wait for the in-flight dispatch to finish.

        Returns False when the wait exceeded timeout. Either way no dispatch
        starts after this returns.
        """
        timeout = timeout if timeout is not None else Config.LISTENER_STOP_TIMEOUT
        deadline = time.monotonic() + timeout
        self._stop_event.set()

        if threading.current_thread() is self._thread:
            # Called from inside an action; the loop exits once that action returns
            return True

        if not self._dispatch_lock.acquire(timeout=timeout):
            logger.warning(f"⚠️ LISTENER: '{self._name}' dispatch still running after {timeout}s")
            return False
        self._dispatch_lock.release()

        if self._thread is not None:
            self._thread.join(max(0.0, deadline - time.monotonic()))
            if self._thread.is_alive():
                logger.warning(f"⚠️ LISTENER: '{self._name}' thread did not exit within {timeout}s")
                return False

        logger.info(
            f"✅ LISTENER: '{self._name}' stopped "
            f"(dispatched={self.dispatch_count}, failed={self.failure_count}, reconnects={self.reconnect_count})"
        )
        return True

    def _run(self):
        connected = False
        delay = self._initial_delay
        try:
            while not self._stop_event.is_set():
                try:
                    if not connected:
                        self._connect()
                        if self.reconnect_count:
                            logger.warning(
                                f"⚠️ LISTENER: '{self._name}' reconnected; address registrations "
                                f"announced during the outage may have been missed"
                            )
                        connected = True
                        delay = self._initial_delay
                    notifications = self._channel.poll(self._poll_timeout)
                except ChannelConnectionError as e:
                    logger.error(
                        f"❌ LISTENER: '{self._name}' connection lost ({e}); "
                        f"retrying in {delay:.1f}s, registrations may be missed until then"
                    )
                except Exception as e:
                    logger.exception(
                        f"❌ LISTENER: '{self._name}' subscription failed unexpectedly ({e}); "
                        f"retrying in {delay:.1f}s, registrations may be missed until then"
                    )
                else:
                    for notification in notifications:
                        with self._dispatch_lock:
                            if self._stop_event.is_set():
                                break
                            self._dispatch(notification)
                    continue

                connected = False
                if self._back_off(delay):
                    break
                delay = min(delay * 2, self._max_delay)
        finally:
            self._channel.close()
            logger.debug(f"LISTENER: '{self._name}' loop exited")

    def _back_off(self, delay: float) -> bool:
        """Drop the connection and wait before reconnecting; True when stopped meanwhile"""
        self.reconnect_count += 1
        try:
            self._channel.close()
        except Exception as e:
            logger.warning(f"⚠️ LISTENER: '{self._name}' error closing channel: {e}")
        return self._stop_event.wait(delay)

    def _connect(self):
        self._channel.open()
        self._channel.listen(self._actions)

    def _dispatch(self, notification: Notification):
        action = self._actions.get(notification.channel)
        if action is None:
            logger.warning(
                f"⚠️ LISTENER: No action bound to channel '{notification.channel}', "
                f"dropping payload {notification.payload!r}"
            )
            return
        try:
            action(notification.payload, int(notification.received_at))
            self.dispatch_count += 1
        except Exception:
            self.failure_count += 1
            logger.exception(
                f"❌ LISTENER: Action for channel '{notification.channel}' failed "
                f"(payload={notification.payload!r}, pid={notification.pid})"
            )
