# notebook.py
"""
Test-tier handling for Jupyter notebooks.

A code cell whose first non-blank line looks like

    # TEST: name tier=secret

is a test cell. Its tier comes from the ``tier=`` token and defaults to
``public``. Students download notebooks with hidden tiers stripped; before a
notebook is graded, the instructor's test cells replace whatever test cells
the student sent back.
"""
from __future__ import annotations

import json
import re
from typing import Iterable, Optional

from .errors import NotebookFormatError

TEST_MARKER = re.compile(r"^\s*#\s*TEST:")
TIER_TOKEN = re.compile(r"\btier=(\S+)")
DEFAULT_TIER = "public"

# What a student never gets to see in a downloaded notebook.
STUDENT_HIDDEN_TIERS = frozenset({"secret", "release"})


def _source_text(cell: dict) -> str:
    source = cell.get("source", "")
    if isinstance(source, list) and all(isinstance(s, str) for s in source):
        return "".join(source)
    if isinstance(source, str):
        return source
    raise NotebookFormatError("cell source must be a string or a list of strings")


def _first_nonblank_line(text: str) -> Optional[str]:
    for line in text.splitlines():
        if line.strip():
            return line
    return None


def cell_tier(cell: dict) -> Optional[str]:
    """
    Tier of a test cell, or None when the cell is not a test cell.
    """
    if cell.get("cell_type") != "code":
        return None
    line = _first_nonblank_line(_source_text(cell))
    if line is None or not TEST_MARKER.match(line):
        return None
    m = TIER_TOKEN.search(line)
    return m.group(1) if m else DEFAULT_TIER


def is_test_cell(cell: dict) -> bool:
    return cell_tier(cell) is not None


def _load(document: bytes | str) -> dict:
    try:
        nb = json.loads(document)
    except (TypeError, ValueError) as e:
        raise NotebookFormatError(f"notebook is not valid JSON: {e}") from e
    if not isinstance(nb, dict):
        raise NotebookFormatError("notebook must be a JSON object")
    cells = nb.get("cells")
    if not isinstance(cells, list) or not all(isinstance(c, dict) for c in cells):
        raise NotebookFormatError("notebook 'cells' must be a list of objects")
    # Surface malformed sources now rather than halfway through a rewrite.
    for cell in cells:
        _source_text(cell)
    return nb


def _dump(nb: dict) -> bytes:
    return (json.dumps(nb, indent=1, ensure_ascii=False) + "\n").encode("utf-8")


def _as_bytes(document: bytes | str) -> bytes:
    return document.encode("utf-8") if isinstance(document, str) else document


def filter_for_viewer(
    document: bytes | str,
    hidden_tiers: Iterable[str] = STUDENT_HIDDEN_TIERS,
    *,
    fail_open: bool = True,
) -> bytes:
    """
    Remove every test cell whose tier is hidden. Other cells are never removed.

    Args:
        document: Raw .ipynb JSON
        hidden_tiers: Tiers to strip
        fail_open: Return the document unchanged when it cannot be parsed
            (otherwise raise NotebookFormatError)

    Returns:
        The filtered notebook as UTF-8 JSON bytes
    """
    try:
        nb = _load(document)
    except NotebookFormatError:
        if fail_open:
            return _as_bytes(document)
        raise

    hidden = set(hidden_tiers)
    nb["cells"] = [c for c in nb["cells"] if cell_tier(c) not in hidden]
    return _dump(nb)


def merge_for_grading(
    student: bytes | str,
    instructor: bytes | str,
    *,
    fail_open: bool = True,
) -> bytes:
    """
    Student's non-test cells (in order) followed by all of the instructor's
    test cells (in order). Test cells the student edited or added are dropped.

    Notebook-level metadata is taken from the student document.
    """
    try:
        student_nb = _load(student)
        instructor_nb = _load(instructor)
    except NotebookFormatError:
        if fail_open:
            return _as_bytes(student)
        raise

    solution_cells = [c for c in student_nb["cells"] if not is_test_cell(c)]
    test_cells = [c for c in instructor_nb["cells"] if is_test_cell(c)]
    student_nb["cells"] = solution_cells + test_cells
    return _dump(student_nb)
