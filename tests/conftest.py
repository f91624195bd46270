from __future__ import annotations

import os
import tempfile

# Module-level paths are read at import time; keep test runs out of /app/data.
os.environ.setdefault("PORTALFLOW_DATA_DIR", tempfile.mkdtemp(prefix="portalflow-tests-"))
