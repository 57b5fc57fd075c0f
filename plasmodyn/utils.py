"""Utility functions for plasmodyn."""

from __future__ import annotations

import hashlib


def config_hash(yaml_text: str) -> str:
    """SHA-256 of a YAML config string (for checkpoint tagging)."""
    return hashlib.sha256(yaml_text.encode('utf-8')).hexdigest()
