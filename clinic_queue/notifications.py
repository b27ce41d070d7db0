import logging
from typing import Optional, Protocol

from twilio.rest import Client

from .config import Settings
from .ordering import tracking_reference


logger = logging.getLogger(__name__)


class NotificationSender(Protocol):
    def send(self, phone: str, sequence_number: int, name: str) -> bool:
        ...


class NullNotifier:
    """Sender used when outbound messages are switched off."""

    def send(self, phone: str, sequence_number: int, name: str) -> bool:
        logger.debug("Notification skipped for token %s", sequence_number)
        return False


class WhatsAppNotifier:
    """Sends the token number and tracking link over WhatsApp through Twilio."""

    def __init__(self, settings: Settings, client: Optional[Client] = None) -> None:
        self.settings = settings
        self.enabled = settings.send_whatsapp_on_register
        if client is None and settings.twilio_configured:
            client = Client(settings.twilio_account_sid, settings.twilio_auth_token)
        self.client = client

    def format_recipient(self, phone: str) -> str:
        if phone.startswith("+"):
            return f"whatsapp:{phone}"
        return f"whatsapp:{self.settings.whatsapp_country_code}{phone}"

    def build_message(self, sequence_number: int, name: str) -> str:
        link = tracking_reference(sequence_number, self.settings.hospital_base_url)
        return (
            f"Hello {name}! Your token number is {sequence_number}. "
            f"Track your queue status here: {link}. Thank you!"
        )

    def send(self, phone: str, sequence_number: int, name: str) -> bool:
        if not self.enabled or self.client is None:
            logger.info(
                "WhatsApp message skipped (enabled: %s, Twilio configured: %s)",
                self.enabled,
                self.client is not None,
            )
            return False

        recipient = self.format_recipient(phone)
        try:
            message = self.client.messages.create(
                from_=f"whatsapp:{self.settings.twilio_phone_number}",
                to=recipient,
                body=self.build_message(sequence_number, name),
            )
        except Exception as exc:
            logger.error("Failed to send WhatsApp message to %s: %s", recipient, exc)
            return False

        logger.info("WhatsApp message sent to %s (SID: %s)", recipient, message.sid)
        return True


def build_notifier(settings: Settings) -> NotificationSender:
    if not settings.send_whatsapp_on_register:
        return NullNotifier()
    return WhatsAppNotifier(settings)
