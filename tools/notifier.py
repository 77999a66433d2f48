import logging
import os

from twilio.base.exceptions import TwilioException
from twilio.rest import Client as TwilioClient

logger = logging.getLogger(__name__)

TWILIO_SID = os.getenv("TWILIO_SID", "")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN", "")
TWILIO_FROM = os.getenv("TWILIO_FROM", "")  # sender number, e.g. "+8801700000000"

twilio_client = (
    TwilioClient(TWILIO_SID, TWILIO_AUTH_TOKEN)
    if TWILIO_SID and TWILIO_AUTH_TOKEN and TWILIO_FROM
    else None
)


def send_notification(user_id: str, message: str, channel: str = "console", phone: str | None = None,
                      event: str | None = None) -> dict:
    """
    Deliver one notification.

    - console: log line (dev, ops summaries)
    - sms: real SMS when Twilio is configured and a phone number is known,
      otherwise logged as a simulated SMS

    `phone` is a full E.164 number, e.g. "+8801711000000".
    """
    result = {"user_id": user_id, "message": message, "channel": channel, "event": event, "published": False}
    if channel == "sms":
        target_phone = phone or os.getenv("DEFAULT_SMS_PHONE", "")
        if twilio_client and target_phone:
            try:
                twilio_client.messages.create(to=target_phone, from_=TWILIO_FROM, body=message)
                logger.info("[SMS][Twilio] To %s (%s): %s", user_id, target_phone, message)
                result["published"] = True
                return result
            except TwilioException as e:
                logger.error("[SMS][Twilio FAILED] To %s (%s): %s (error=%s)", user_id, target_phone, message, e)
        logger.info("[SMS][FALLBACK] To %s (%s): %s", user_id, target_phone or "-", message)
        return result

    logger.info("[NOTIFY] To %s (%s/%s): %s", user_id, channel, event or "-", message)
    return result
