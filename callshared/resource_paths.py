"""Locate bundled static assets in source checkouts and frozen builds."""
from __future__ import annotations

import sys
from pathlib import Path


def project_root() -> Path:
    frozen_root = getattr(sys, "_MEIPASS", None)
    if frozen_root:
        return Path(frozen_root)
    return Path(__file__).resolve().parent.parent


def webui_root() -> Path:
    """Directory holding the call screen's ``index.html``."""
    return project_root() / "webui"
