"""
Database Watcher
Installs the pay-in address trigger on the investor table and routes the
resulting notifications to the bitcoin and ether actions.
"""

import logging
from typing import Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine

from models import Currency
from services.address_registration_listener import AddressRegistrationListener, TriggerAction
from services.notification_channel import NotificationChannel, PostgresNotificationChannel

logger = logging.getLogger(__name__)

NOTIFY_FUNCTION_NAME = "notify_new_payin_address"

# Both channels are notified on every qualifying update, even if only one address changed
CREATE_NOTIFY_FUNCTION_SQL = f"""
CREATE OR REPLACE FUNCTION {NOTIFY_FUNCTION_NAME}()
RETURNS TRIGGER AS $$
BEGIN
  PERFORM pg_notify(CAST('{Currency.BITCOIN.value}' AS TEXT), NEW.pay_in_bitcoin_address);
  PERFORM pg_notify(CAST('{Currency.ETHER.value}' AS TEXT), NEW.pay_in_ether_address);
  RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""

DROP_TRIGGER_SQL = f"DROP TRIGGER IF EXISTS {NOTIFY_FUNCTION_NAME} ON investor;"

CREATE_TRIGGER_SQL = f"""
CREATE TRIGGER {NOTIFY_FUNCTION_NAME}
  AFTER UPDATE OF pay_in_ether_address, pay_in_bitcoin_address ON investor
  FOR EACH ROW
  EXECUTE PROCEDURE {NOTIFY_FUNCTION_NAME}();
"""


class DatabaseWatcher:
    """Trigger setup plus the listener for newly assigned pay-in addresses"""

    def __init__(self,
                 engine: Engine,
                 new_bitcoin_address: TriggerAction,
                 new_ether_address: TriggerAction,
                 channel: Optional[NotificationChannel] = None,
                 **listener_options):
        self._engine = engine
        actions = {
            Currency.BITCOIN.value: new_bitcoin_address,
            Currency.ETHER.value: new_ether_address,
        }
        self._listener = AddressRegistrationListener(
            channel or PostgresNotificationChannel(),
            actions,
            name="payin-address-listener",
            **listener_options,
        )

    @property
    def listener(self) -> AddressRegistrationListener:
        return self._listener

    def start(self):
        """Install the trigger and start listening"""
        self.set_up_trigger()
        self._listener.start()

    def stop(self, timeout: Optional[float] = None) -> bool:
        return self._listener.graceful_stop(timeout)

    def set_up_trigger(self):
        """Create or replace the notify function and (re)create the trigger. Safe to repeat."""
        # Single transaction: concurrent updates always see a trigger
        with self._engine.begin() as connection:
            connection.execute(text(CREATE_NOTIFY_FUNCTION_SQL))
            connection.execute(text(DROP_TRIGGER_SQL))
            connection.execute(text(CREATE_TRIGGER_SQL))
        logger.info(f"✅ DATABASE_WATCHER: Trigger '{NOTIFY_FUNCTION_NAME}' installed on investor")
