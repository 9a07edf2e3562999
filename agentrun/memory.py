"""
Per-agent append-only memory log.

Each entry is a markdown block:

    ## 2026-01-02T15:04:05Z
    **Task:** <single line>
    **Result:** <text>

An entry starts at any line beginning with "## "; only "\\n" ends a line. Text
before the first marker is not an entry and is dropped by bounded reads and
by trimming.
There is no locking: concurrent writers to the same file can race.
"""

from __future__ import annotations

import os
import stat
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Union

from .config import get_settings

PathLike = Union[str, Path]

ENTRY_MARKER = "## "
MAX_RESULT_CHARS = 1000
TRUNCATION_MARKER = "..."
EMPTY_PLACEHOLDER = "(none)"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Replaced in tests for deterministic timestamps.
now: Callable[[], datetime] = _utc_now


def file_path(agent_name: str, custom_path: str = "") -> Path:
    """Return the memory file for an agent; nothing is created."""
    if custom_path:
        return Path(custom_path)
    return get_settings().data_dir / "memory" / f"{agent_name}.md"


def _format_entry(task: str, result: str) -> str:
    task = task.replace("\r\n", " ").replace("\n", " ").replace("\r", " ") or EMPTY_PLACEHOLDER
    result = result or EMPTY_PLACEHOLDER
    if len(result) > MAX_RESULT_CHARS:
        result = result[:MAX_RESULT_CHARS] + TRUNCATION_MARKER
    ts = now().astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    return f"## {ts}\n**Task:** {task}\n**Result:** {result}\n\n"


def append_entry(path: PathLike, task: str, result: str) -> None:
    """Append one entry, creating the file and its directory if needed."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(_format_entry(task, result))


def _read(path: Path) -> str:
    try:
        with path.open("r", encoding="utf-8", newline="") as f:
            return f.read()
    except FileNotFoundError:
        return ""


def _lines(content: str) -> List[str]:
    """Split after each "\\n" only; other line separators stay inside a line."""
    parts = content.split("\n")
    lines = [part + "\n" for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def _entry_starts(lines: List[str]) -> List[int]:
    return [i for i, line in enumerate(lines) if line.startswith(ENTRY_MARKER)]


def _tail(content: str, last_n: int) -> str:
    lines = _lines(content)
    starts = _entry_starts(lines)
    if not starts:
        return ""
    first = starts[max(0, len(starts) - last_n)]
    return "".join(lines[first:])


def load_entries(path: PathLike, last_n: int = 0) -> str:
    """
    Return the whole log when last_n is 0, otherwise the last `last_n`
    entries through end of file. A missing or empty file yields "".
    """
    content = _read(Path(path))
    if not content or last_n <= 0:
        return content
    return _tail(content, last_n)


def count_entries(path: PathLike) -> int:
    content = _read(Path(path))
    if not content:
        return 0
    return len(_entry_starts(_lines(content)))


def trim_entries(path: PathLike, keep_n: int) -> int:
    """
    Drop the oldest entries so that at most `keep_n` remain.

    keep_n == 0 means "no target" and never modifies the file. The retained
    tail is written to a temporary file in the same directory, given the
    original's permission bits, then renamed over the original. On failure
    the original is untouched. Returns the number of entries removed.
    """
    if keep_n < 0:
        raise ValueError("keep_n must be non-negative")
    if keep_n == 0:
        return 0

    path = Path(path)
    content = _read(path)
    if not content:
        return 0

    total = len(_entry_starts(_lines(content)))
    if total <= keep_n:
        return 0

    kept = _tail(content, keep_n)
    mode = stat.S_IMODE(path.stat().st_mode)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(kept)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise

    return total - keep_n
