from __future__ import annotations

import asyncio
from dataclasses import dataclass


@dataclass
class _Tab:
    volatile_id: int
    url: str


class _Provider:
    def __init__(self, answer=None, error: Exception | None = None) -> None:  # noqa: ANN001
        self.answer = answer
        self.error = error
        self.calls: list[int] = []

    async def fingerprint(self, volatile_id: int):  # noqa: ANN201
        self.calls.append(volatile_id)
        if self.error is not None:
            raise self.error
        return self.answer


def test_content_fingerprint_matches_content_script_format() -> None:
    from tab_identity.fingerprint import content_fingerprint

    assert content_fingerprint("https://a.test/x?q=1", "", 2) == '["https://a.test/x?q=1","",2]'
    assert content_fingerprint("https://b.test/", "https://a.test/", 5) == '["https://b.test/","https://a.test/",5]'


def test_privileged_urls_are_detected() -> None:
    from tab_identity.fingerprint import is_privileged_url

    assert is_privileged_url("chrome://settings/")
    assert is_privileged_url("chrome-extension://abc/options.html")
    assert is_privileged_url("about:blank")
    assert not is_privileged_url("https://example.test/")
    assert not is_privileged_url("")


def test_privileged_tab_is_hashed_without_asking_provider() -> None:
    from tab_identity.fingerprint import resolve_fingerprint, url_fingerprint

    provider = _Provider(answer="never")
    fp = asyncio.run(resolve_fingerprint(_Tab(3, "chrome://newtab/"), provider))
    assert fp == url_fingerprint("chrome://newtab/")
    assert fp.startswith("sha256:")
    assert provider.calls == []


def test_content_tab_uses_provider_and_falls_back_to_url_hash() -> None:
    from tab_identity.errors import HostError
    from tab_identity.fingerprint import resolve_fingerprint, url_fingerprint

    tab = _Tab(4, "https://example.test/")
    assert asyncio.run(resolve_fingerprint(tab, _Provider(answer='["x","",1]'))) == '["x","",1]'
    assert asyncio.run(resolve_fingerprint(tab, _Provider(answer=None))) == url_fingerprint(tab.url)
    failing = _Provider(error=HostError("no content script"))
    assert asyncio.run(resolve_fingerprint(tab, failing)) == url_fingerprint(tab.url)
    assert failing.calls == [4]
