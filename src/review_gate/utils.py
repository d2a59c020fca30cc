"""Provide timestamp and identifier helpers."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_instance_id() -> str:
    """Short workflow instance ID: ``wf-<8hex>``."""
    return f"wf-{uuid.uuid4().hex[:8]}"
