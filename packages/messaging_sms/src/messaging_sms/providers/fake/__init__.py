from messaging_sms.providers.fake.client import FakeServiceProvider

__all__ = ["FakeServiceProvider"]
