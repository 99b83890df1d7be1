#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[tab-identity] data_dir={os.environ.get('TAB_IDENTITY_DATA_DIR', 'data/registry')} | "
    f"port={os.environ.get('TAB_IDENTITY_PORT', '8766')} | "
    f"grace={os.environ.get('TAB_IDENTITY_REMOVAL_GRACE', '1.0')}s",
    file=sys.stderr,
)

from tab_identity.main import main  # noqa: E402

if __name__ == "__main__":
    main()
