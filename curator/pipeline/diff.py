from __future__ import annotations

import difflib
import hashlib


def content_hash(content: str | None) -> str:
    return hashlib.sha256((content or "").encode("utf-8")).hexdigest()


def generate_content_diff(old: str | None, new: str | None, *, context_lines: int = 3) -> str:
    """Unified diff of two markdown bodies; empty when they are identical."""
    old_lines = (old or "").splitlines(keepends=True)
    new_lines = (new or "").splitlines(keepends=True)
    diff = difflib.unified_diff(
        old_lines,
        new_lines,
        fromfile="current",
        tofile="proposed",
        n=context_lines,
    )
    return "".join(line if line.endswith("\n") else f"{line}\n" for line in diff)
