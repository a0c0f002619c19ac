"""
Message text helpers

Outbound: split a composed message into body and media URL.
Inbound: clean provider text before it is stored.
"""

import re

# A media attachment is written inline as "[http...]"
MEDIA_MARKER_RE = re.compile(r"\[\s*(http[^\]\s]*)\s*\]")

# C0 controls and DEL, except tab, newline and carriage return
CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

MEDIA_NOTICE = (
    "Spoke Message:\n\n"
    "This message contained {count} multimedia attachment(s) which Spoke does not display."
)


def message_components(text: str) -> tuple[str, str | None]:
    """
    Split composed text into (body, media_url).

    The first "[http...]" marker becomes the media URL and is removed
    from the body.
    """
    match = MEDIA_MARKER_RE.search(text or "")
    if not match:
        return (text or "").strip(), None
    body = (text[: match.start()] + text[match.end():]).strip()
    return body, match.group(1)


def strip_control_chars(text: str) -> str:
    return CONTROL_CHARS_RE.sub("", text or "")


def format_inbound_body(body: str, num_media: int) -> str:
    """
    Clean an inbound body and note attachments that cannot be shown.

    Media is never stored in the body; when the message had attachments a
    fixed notice with the count is appended.
    """
    text = strip_control_chars(body)
    if num_media and num_media > 0:
        padding = "" if text == "" else "\n\n"
        text = f"{text}{padding}{MEDIA_NOTICE.format(count=num_media)}"
    return text


def normalize_phone(number: str, default_country_code: str = "1") -> str:
    """
    Format a phone number as E.164.

    10-digit numbers get the default country code; anything that does not
    look like a phone number is returned stripped but otherwise unchanged.
    """
    raw = (number or "").strip()
    digits = re.sub(r"\D", "", raw)
    if not digits:
        return raw
    if raw.startswith("+"):
        return f"+{digits}"
    if len(digits) == 10:
        return f"+{default_country_code}{digits}"
    if len(digits) == 11 and digits.startswith(default_country_code):
        return f"+{digits}"
    return f"+{digits}"
