from __future__ import annotations
import os

DEFAULT_STEP_TIMEOUT = float(os.environ.get("STAGECI_STEP_TIMEOUT", "3600"))
SCHEDULING_TIMEOUT = float(os.environ.get("STAGECI_SCHEDULING_TIMEOUT", "300"))
DEFAULT_LABEL = os.environ.get("STAGECI_DEFAULT_LABEL", "local")
STDERR_TAIL_LINES = int(os.environ.get("STAGECI_STDERR_TAIL_LINES", "10"))
