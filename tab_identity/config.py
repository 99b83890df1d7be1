from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _repo_root() -> Path:
    # tab_identity/config.py -> repo root is parents[1]
    return Path(__file__).resolve().parents[1]


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


@dataclass
class RegistryConfig:
    data_dir: str
    storage_key: str = "TabRegistry"
    removal_grace: float = 1.0
    host: str = "127.0.0.1"
    port: int = 8766
    expected_extension_id: str | None = None
    trace: bool = False

    @classmethod
    def from_env(cls) -> RegistryConfig:
        raw_dir = os.environ.get("TAB_IDENTITY_DATA_DIR", "").strip()
        data_dir = expand_path(raw_dir) if raw_dir else str(_repo_root() / "data" / "registry")
        key = os.environ.get("TAB_IDENTITY_STORAGE_KEY", "").strip() or "TabRegistry"
        try:
            grace = max(0.0, float(os.environ.get("TAB_IDENTITY_REMOVAL_GRACE", "1.0")))
        except ValueError:
            grace = 1.0
        host = os.environ.get("TAB_IDENTITY_HOST", "").strip() or "127.0.0.1"
        try:
            port = int(os.environ.get("TAB_IDENTITY_PORT", "8766"))
        except ValueError:
            port = 8766
        ext_id = os.environ.get("TAB_IDENTITY_EXTENSION_ID", "").strip() or None
        trace = os.environ.get("TAB_IDENTITY_TRACE", "").strip().lower() in {"1", "true", "yes", "on"}
        return cls(
            data_dir=data_dir,
            storage_key=key,
            removal_grace=grace,
            host=host,
            port=port,
            expected_extension_id=ext_id,
            trace=trace,
        )
