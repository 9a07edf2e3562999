"""
Run-context assembly: working directory, context files, skill text, piped
stdin, and the combined system prompt.
"""

from __future__ import annotations

import fnmatch
import glob
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import IO, List, Optional, Sequence

BINARY_SNIFF_BYTES = 512
SECTION_SEPARATOR = "\n\n---\n\n"


class ResolveError(RuntimeError):
    """Raised when a skill file or other run context cannot be loaded."""


@dataclass
class FileContent:
    path: str  # relative to workdir, forward slashes
    content: str


def workdir(flag_value: str = "", configured: str = "") -> str:
    """--workdir flag > agent config > current directory."""
    if flag_value:
        return flag_value
    if configured:
        return configured
    try:
        return os.getcwd()
    except OSError:
        return "."


def _match_parts(pattern: List[str], parts: List[str]) -> bool:
    while pattern and parts:
        if pattern[0] == "**":
            rest = pattern[1:]
            return any(_match_parts(rest, parts[i:]) for i in range(len(parts) + 1))
        if not fnmatch.fnmatchcase(parts[0], pattern[0]):
            return False
        pattern, parts = pattern[1:], parts[1:]

    while pattern and pattern[0] == "**":
        pattern = pattern[1:]
    return not pattern and not parts


def _double_star_glob(pattern: str, root: str) -> List[str]:
    pat_parts = pattern.split("/")
    matches = []
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            full = os.path.join(dirpath, name)
            rel = os.path.relpath(full, root).replace(os.sep, "/")
            if _match_parts(pat_parts, rel.split("/")):
                matches.append(full)
    return matches


def _symlink_outside(path: str, root: str) -> bool:
    if not os.path.islink(path):
        return False
    try:
        target = os.path.realpath(path, strict=True)
    except OSError:
        return True
    real_root = os.path.realpath(root)
    return target != real_root and not target.startswith(real_root + os.sep)


def _read_text(path: str) -> Optional[str]:
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError:
        return None
    if b"\x00" in data[:BINARY_SNIFF_BYTES]:
        return None
    return data.decode("utf-8", errors="replace")


def resolve_files(patterns: Sequence[str], workdir_path: str) -> List[FileContent]:
    """
    Expand glob patterns relative to the workdir and read matching text files.

    Supports plain globs and `**` for any number of directories. Duplicates,
    binary files, unreadable files and symlinks that escape the workdir are
    skipped. Results are sorted by relative path.
    """
    if not patterns:
        return []

    root = os.path.abspath(workdir_path)
    seen = set()
    results: List[FileContent] = []

    for pattern in patterns:
        if "**" in pattern:
            matches = _double_star_glob(pattern, root)
        else:
            matches = glob.glob(os.path.join(root, pattern))

        for match in matches:
            rel = os.path.relpath(match, root).replace(os.sep, "/")
            if rel in seen or not os.path.isfile(match):
                continue
            if _symlink_outside(match, root):
                continue
            content = _read_text(match)
            if content is None:
                continue
            seen.add(rel)
            results.append(FileContent(path=rel, content=content))

    results.sort(key=lambda fc: fc.path)
    return results


def load_skill(skill_path: str, config_dir: Path) -> str:
    """Read a skill file; relative paths resolve against the config directory."""
    if not skill_path:
        return ""

    path = Path(skill_path)
    if not path.is_absolute():
        path = Path(config_dir) / path

    if not path.exists():
        raise ResolveError(f"skill not found: {path}")
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ResolveError(f"failed to read skill: {exc}") from exc


def read_stdin(stream: Optional[IO[str]] = None) -> str:
    """Return piped input, or "" when stdin is an interactive terminal."""
    stream = stream if stream is not None else sys.stdin
    if stream is None or stream.isatty():
        return ""
    return stream.read()


def build_system_prompt(system_prompt: str, skill: str, files: Sequence[FileContent]) -> str:
    out = system_prompt or ""

    if skill:
        out += SECTION_SEPARATOR + "## Skill\n\n" + skill

    if files:
        blocks = []
        for fc in files:
            ext = os.path.splitext(fc.path)[1].lstrip(".")
            blocks.append(f"### {fc.path}\n```{ext}\n{fc.content}\n```")
        out += SECTION_SEPARATOR + "## Context Files\n\n" + "\n\n".join(blocks)

    return out


def with_memory(system_prompt: str, memory: str) -> str:
    """Append a memory section to an assembled system prompt."""
    if not memory:
        return system_prompt
    return system_prompt + SECTION_SEPARATOR + "## Memory\n\n" + memory
