"""Fingerprints: semi-unique strings describing what a tab has loaded.

Content pages report `[href, referrer, history.length]` as compact JSON from
their content script. Privileged pages (chrome://, extension pages, ...) run no
content script, so their URL is hashed instead.
"""

from __future__ import annotations

import hashlib
import json
import logging
import urllib.parse
from typing import Any, Protocol

from .errors import HostError

_LOGGER = logging.getLogger("tab_identity.fingerprint")

PRIVILEGED_SCHEMES = frozenset(
    {
        "about",
        "chrome",
        "chrome-extension",
        "chrome-search",
        "chrome-untrusted",
        "devtools",
        "edge",
        "moz-extension",
        "view-source",
    }
)


class FingerprintProvider(Protocol):
    async def fingerprint(self, volatile_id: int) -> str | None: ...


def content_fingerprint(href: str, referrer: str, history_length: int) -> str:
    """Same string as `JSON.stringify([location.href, document.referrer, history.length])`."""
    return json.dumps([href, referrer, int(history_length)], separators=(",", ":"), ensure_ascii=False)


def is_privileged_url(url: str | None) -> bool:
    scheme = urllib.parse.urlparse(url or "").scheme.lower()
    return scheme in PRIVILEGED_SCHEMES


def url_fingerprint(url: str) -> str:
    return "sha256:" + hashlib.sha256((url or "").encode("utf-8")).hexdigest()


async def resolve_fingerprint(tab: Any, provider: FingerprintProvider) -> str:
    """Fingerprint for a host tab (`tab.volatile_id`, `tab.url`).

    Falls back to the URL hash when the content context does not answer.
    """
    url = getattr(tab, "url", "") or ""
    if is_privileged_url(url):
        return url_fingerprint(url)
    try:
        fp = await provider.fingerprint(tab.volatile_id)
    except HostError as exc:
        _LOGGER.info("fingerprint unavailable volatile_id=%s error=%s", tab.volatile_id, exc)
        fp = None
    if isinstance(fp, str) and fp:
        return fp
    return url_fingerprint(url)
