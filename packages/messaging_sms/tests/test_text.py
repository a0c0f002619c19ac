"""
Tests for message text helpers.
"""

from messaging_sms.service.text import (
    format_inbound_body,
    message_components,
    normalize_phone,
    strip_control_chars,
)


class TestMessageComponents:
    """Tests for splitting composed text into body and media."""

    def test_plain_text(self):
        """Test text without a media marker."""
        assert message_components("Hello there") == ("Hello there", None)

    def test_media_marker(self):
        """Test the media marker is removed and returned as URL."""
        body, media_url = message_components("Look at this [https://example.org/flyer.png]")

        assert body == "Look at this"
        assert media_url == "https://example.org/flyer.png"

    def test_marker_only(self):
        """Test a message that is only an attachment."""
        assert message_components("[https://example.org/a.gif]") == ("", "https://example.org/a.gif")


class TestFormatInboundBody:
    """Tests for inbound body normalization."""

    def test_control_characters_stripped(self):
        """Test NUL and other controls are removed but line breaks kept."""
        assert strip_control_chars("a\x00b\x07c\n\td\r") == "abc\n\td\r"

    def test_media_notice_appended(self):
        """Test attachments produce the fixed notice after a blank line."""
        assert format_inbound_body("hi", 2) == (
            "hi\n\nSpoke Message:\n\n"
            "This message contained 2 multimedia attachment(s) which Spoke does not display."
        )

    def test_media_notice_without_text(self):
        """Test an attachment-only message is just the notice."""
        assert format_inbound_body("", 1).startswith("Spoke Message:")

    def test_no_media(self):
        """Test a plain body is unchanged."""
        assert format_inbound_body("See you there", 0) == "See you there"


class TestNormalizePhone:
    """Tests for E.164 normalization."""

    def test_ten_digits(self):
        """Test US 10-digit numbers get the country code."""
        assert normalize_phone("(555) 555-0100") == "+15555550100"

    def test_already_e164(self):
        """Test E.164 numbers are kept."""
        assert normalize_phone("+15555550100") == "+15555550100"

    def test_eleven_digits(self):
        """Test 11-digit numbers without plus."""
        assert normalize_phone("15555550100") == "+15555550100"

    def test_empty(self):
        """Test empty input stays empty."""
        assert normalize_phone("") == ""
