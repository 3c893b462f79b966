from __future__ import annotations

import os

# Set env before any tfl_expenses imports (settings are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ["TRACING_ENABLED"] = "false"
os.environ.pop("OPENAI_API_KEY", None)
