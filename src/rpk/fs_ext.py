from __future__ import annotations

import os
import stat
from pathlib import Path, PurePosixPath
from typing import Iterable


def mkdir_p(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def remove_file_if_exists(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def symlink_force(src: Path, dst: Path) -> None:
    """
    Point ``dst`` at ``src``, replacing whatever link or plain file is at ``dst``.

    This is a remove followed by a create, not a rename: ``dst`` may be a
    regular file left behind by something other than rpk.
    """
    remove_file_if_exists(dst)
    os.symlink(src, dst)


def detect_common_prefix(paths: Iterable[str]) -> str | None:
    """
    Return the single top-level directory shared by every archive member name.

    Directory members are expected to end with ``/``. A top-level file, a
    second top-level name or an empty listing means there is no prefix.
    """
    prefix: str | None = None
    for raw in paths:
        is_dir = raw.endswith("/")
        parts = [p for p in PurePosixPath(raw).parts if p not in (".", "/")]
        if not parts:
            continue
        if len(parts) == 1 and not is_dir:
            return None
        root = parts[0]
        if prefix is None:
            prefix = root
        elif prefix != root:
            return None
    return prefix


def is_executable(path: Path) -> bool:
    if not path.is_file() or path.is_symlink():
        return False
    if os.name == "nt":
        return path.suffix.lower() in (".exe", ".bat", ".cmd")
    return bool(path.stat().st_mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH))


def make_executable(path: Path) -> None:
    mode = path.stat().st_mode
    path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def write_text_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    tmp.replace(path)
