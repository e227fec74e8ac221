# -*- coding: utf-8 -*-
import os
from typing import List


def expand_path(raw: str) -> str:
    """Expands ~ and drops a trailing slash. Empty input means the current directory."""
    path = os.path.expanduser((raw or "").strip())
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return path or "."


def path_fix_candidates(path: str) -> List[str]:
    """For an absolute path whose parent is missing (usually a mistyped
    relative path), returns the ./name and ~/name alternatives. Else []."""
    if not os.path.isabs(path) or os.path.isdir(os.path.dirname(path)):
        return []
    relative = path.lstrip("/")
    return [os.path.join(".", relative), os.path.join(os.path.expanduser("~"), relative)]
