"""Object identifier handling.

Identifiers are lowercase UUID v4 strings. Anything arriving from outside is
reduced to the UUID character set before lookup, so a path segment can never
name anything but a file directly inside the content store.
"""

import re
from uuid import uuid4

from storage_server.errors import ValidationError

_DISALLOWED = re.compile(r"[^0-9a-fA-F-]")
_UUID_V4 = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$"
)


def sanitize_object_id(raw: str | None) -> str:
    """Strip foreign characters and validate the UUID v4 shape.

    Raises:
        ValidationError: Nothing is left after stripping, or the result is
            not a UUID v4.
    """
    cleaned = _DISALLOWED.sub("", raw or "").lower()
    if not cleaned:
        raise ValidationError("You can't just use that on the whole server!")
    if not _UUID_V4.match(cleaned):
        raise ValidationError("Invalid UUID")
    return cleaned


def new_object_id() -> str:
    return str(uuid4())
