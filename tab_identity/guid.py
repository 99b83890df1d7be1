from __future__ import annotations

import uuid


def generate() -> str:
    """Return a random version-4 UUID string (e.g. ``"1b4e28ba-2fa1-41d2-883f-0016d3cca427"``)."""
    return str(uuid.uuid4())
