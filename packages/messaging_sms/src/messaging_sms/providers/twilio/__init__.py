from messaging_sms.providers.twilio.client import TwilioProvider

__all__ = ["TwilioProvider"]
