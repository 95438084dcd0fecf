"""
File persistence and path display helpers.

JSON files are replaced atomically: the new content goes to a temporary
sibling that is renamed over the target, so readers always see either the
previous or the new full document.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, List

logger = logging.getLogger(__name__)


def atomic_write_json(path: Path, data: Any, prefix: str = ".tmp_") -> bool:
    """
    Write JSON to `path` via temp file and rename.

    Args:
        path: Target file; parent directories are created.
        data: JSON-serialisable value.
        prefix: Temp file name prefix.

    Returns:
        True on success; failures are logged and leave the target untouched.
    """
    path = Path(path)
    tmp_path = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=prefix, suffix=".tmp")
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, ensure_ascii=False)
        os.replace(tmp_path, path)
        return True
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to write {path}: {e}")
        if tmp_path and os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError as cleanup_error:
                logger.debug(f"Could not remove temp file {tmp_path}: {cleanup_error}")
        return False


def read_json(path: Path, default: Any = None) -> Any:
    """
    Read a JSON file.

    Returns:
        Parsed value, or `default` when the file is missing or unreadable.
    """
    path = Path(path)
    if not path.exists():
        return default
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to read {path}: {e}")
        return default


def display_names(paths: Iterable[str]) -> Dict[str, str]:
    """
    Short display label for each path.

    The base name is used unless distinct paths share it; those paths are
    labelled relative to their common parent directory instead, or in full
    when they have none.
    """
    by_name: Dict[str, List[str]] = {}
    for path in dict.fromkeys(paths):
        by_name.setdefault(os.path.basename(path), []).append(path)

    labels: Dict[str, str] = {}
    for name, group in by_name.items():
        if len(group) == 1:
            labels[group[0]] = name
            continue
        try:
            parent = os.path.commonpath([os.path.dirname(p) for p in group])
        except ValueError:
            parent = ""
        for path in group:
            labels[path] = os.path.relpath(path, parent) if parent else path
    return labels
