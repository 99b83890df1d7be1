from __future__ import annotations

from pathlib import Path

import pytest


def test_config_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    from tab_identity.config import RegistryConfig

    for name in (
        "TAB_IDENTITY_DATA_DIR",
        "TAB_IDENTITY_STORAGE_KEY",
        "TAB_IDENTITY_REMOVAL_GRACE",
        "TAB_IDENTITY_HOST",
        "TAB_IDENTITY_PORT",
        "TAB_IDENTITY_EXTENSION_ID",
        "TAB_IDENTITY_TRACE",
    ):
        monkeypatch.delenv(name, raising=False)

    cfg = RegistryConfig.from_env()
    assert Path(cfg.data_dir).parts[-2:] == ("data", "registry")
    assert cfg.storage_key == "TabRegistry"
    assert cfg.removal_grace == 1.0
    assert (cfg.host, cfg.port) == ("127.0.0.1", 8766)
    assert cfg.expected_extension_id is None
    assert cfg.trace is False


def test_config_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    from tab_identity.config import RegistryConfig

    monkeypatch.setenv("TAB_IDENTITY_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("TAB_IDENTITY_STORAGE_KEY", "Tabs2")
    monkeypatch.setenv("TAB_IDENTITY_REMOVAL_GRACE", "0.25")
    monkeypatch.setenv("TAB_IDENTITY_PORT", "not-a-port")
    monkeypatch.setenv("TAB_IDENTITY_EXTENSION_ID", "a" * 32)
    monkeypatch.setenv("TAB_IDENTITY_TRACE", "1")

    cfg = RegistryConfig.from_env()
    assert cfg.data_dir == str(tmp_path)
    assert cfg.storage_key == "Tabs2"
    assert cfg.removal_grace == 0.25
    assert cfg.port == 8766
    assert cfg.expected_extension_id == "a" * 32
    assert cfg.trace is True
