"""Canonical fingerprints for deduplicating issues into work items."""

from __future__ import annotations

import hashlib
from typing import Any

DELIMITER = "|"


def _text(value: Any) -> str:
    return str(getattr(value, "value", value) or "").strip()


def fingerprint(category: Any, severity: Any, title: str, locator: str | None = None) -> str:
    """Hash (category, severity, title, locator) into a stable hex digest.

    Category and severity are compared case-insensitively; title and
    locator are only trimmed.
    """
    base = DELIMITER.join(
        [
            _text(category).upper(),
            _text(severity).upper(),
            _text(title),
            _text(locator),
        ]
    )
    return hashlib.sha256(base.encode("utf-8")).hexdigest()
