from messaging_sms.providers.nexmo.client import NexmoProvider

__all__ = ["NexmoProvider"]
