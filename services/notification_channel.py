"""
PostgreSQL Notification Channel
LISTEN/NOTIFY subscription wrapped behind a small poll-based interface
"""

import logging
import select
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

import psycopg2
from psycopg2 import sql

from database import create_listen_connection

logger = logging.getLogger(__name__)


class ChannelConnectionError(Exception):
    """The subscription connection is gone or unusable"""

    pass


@dataclass(frozen=True)
class Notification:
    channel: str
    payload: str
    received_at: float
    pid: Optional[int] = None


class NotificationChannel(ABC):
    """Named pub/sub channels delivering string payloads"""

    @abstractmethod
    def open(self) -> None:
        """(Re)establish the subscription connection"""

    @abstractmethod
    def listen(self, channels: Iterable[str]) -> None:
        ...

    @abstractmethod
    def poll(self, timeout: float) -> List[Notification]:
        """Wait up to timeout seconds; raise ChannelConnectionError if the connection dropped"""

    @abstractmethod
    def close(self) -> None:
        ...


class PostgresNotificationChannel(NotificationChannel):
    """NotificationChannel on a dedicated psycopg2 connection"""

    def __init__(self, connection_factory: Callable = create_listen_connection):
        self._connection_factory = connection_factory
        self._conn = None

    def open(self) -> None:
        self.close()
        try:
            self._conn = self._connection_factory()
        except psycopg2.Error as e:
            raise ChannelConnectionError(f"Could not open notification connection: {e}") from e

    def listen(self, channels: Iterable[str]) -> None:
        conn = self._require_connection()
        try:
            with conn.cursor() as cursor:
                for channel in channels:
                    cursor.execute(sql.SQL("LISTEN {}").format(sql.Identifier(channel)))
                    logger.info(f"NOTIFICATION_CHANNEL: Listening on '{channel}'")
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            raise ChannelConnectionError(f"LISTEN failed: {e}") from e

    def poll(self, timeout: float) -> List[Notification]:
        conn = self._require_connection()
        try:
            readable, _, _ = select.select([conn], [], [], timeout)
            if not readable:
                return []
            conn.poll()
        except (psycopg2.OperationalError, psycopg2.InterfaceError, OSError, ValueError) as e:
            raise ChannelConnectionError(f"Notification connection lost: {e}") from e

        received_at = time.time()
        notifications = []
        while conn.notifies:
            notify = conn.notifies.pop(0)
            notifications.append(Notification(notify.channel, notify.payload, received_at, notify.pid))
        return notifications

    def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None or conn.closed:
            return
        try:
            conn.close()
        except psycopg2.Error as e:
            logger.warning(f"NOTIFICATION_CHANNEL: Error closing connection: {e}")

    def _require_connection(self):
        if self._conn is None or self._conn.closed:
            raise ChannelConnectionError("Notification connection is not open")
        return self._conn
