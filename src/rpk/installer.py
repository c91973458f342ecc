from __future__ import annotations

import enum
import gzip
import lzma
import os
import shutil
import tarfile
import tempfile
import zipfile
import zlib
from pathlib import Path, PureWindowsPath

from .client import RpkError
from .context import Context
from .fs_ext import detect_common_prefix, is_executable, make_executable, mkdir_p, symlink_force
from .models import LockedPackage


class InstallError(RpkError):
    pass


class UnsupportedFormatError(InstallError):
    pass


class ExecutableNotFoundError(InstallError):
    pass


class AmbiguousExecutableError(InstallError):
    pass


class ArchiveFormat(enum.Enum):
    ZIP = "zip"
    TAR = "tar"
    TAR_GZ = "tar.gz"
    TAR_XZ = "tar.xz"
    TAR_BZ2 = "tar.bz2"
    GZ = "gz"
    BINARY = "binary"

    @property
    def is_tar(self) -> bool:
        return self in (ArchiveFormat.TAR, ArchiveFormat.TAR_GZ, ArchiveFormat.TAR_XZ, ArchiveFormat.TAR_BZ2)


# Longer suffixes first so `.tar.gz` is not taken for a plain `.gz`.
ARCHIVE_SUFFIXES: tuple[tuple[str, ArchiveFormat], ...] = (
    (".tar.gz", ArchiveFormat.TAR_GZ),
    (".tar.xz", ArchiveFormat.TAR_XZ),
    (".tar.bz2", ArchiveFormat.TAR_BZ2),
    (".tgz", ArchiveFormat.TAR_GZ),
    (".txz", ArchiveFormat.TAR_XZ),
    (".tbz2", ArchiveFormat.TAR_BZ2),
    (".tbz", ArchiveFormat.TAR_BZ2),
    (".tar", ArchiveFormat.TAR),
    (".zip", ArchiveFormat.ZIP),
    (".gz", ArchiveFormat.GZ),
)

METADATA_SUFFIXES = (
    ".sha256",
    ".sha256sum",
    ".sha512",
    ".sha512sum",
    ".md5",
    ".asc",
    ".sig",
    ".pem",
    ".sbom",
    ".spdx",
    ".json",
    ".txt",
    ".intoto.jsonl",
)

PACKAGE_SUFFIXES = (
    ".deb",
    ".rpm",
    ".apk",
    ".msi",
    ".msix",
    ".dmg",
    ".pkg",
    ".snap",
    ".flatpak",
    ".7z",
    ".rar",
    ".zst",
    ".xz",
    ".bz2",
    ".vsix",
    ".whl",
    ".jar",
)


# Corrupt compressed streams surface as decompressor errors, not OSError.
_EXTRACT_ERRORS = (
    OSError,
    EOFError,
    ValueError,
    tarfile.TarError,
    zipfile.BadZipFile,
    zlib.error,
    lzma.LZMAError,
)


def detect_format(filename: str) -> ArchiveFormat:
    name = filename.lower()
    for suffix, fmt in ARCHIVE_SUFFIXES:
        if name.endswith(suffix):
            return fmt
    if name.endswith(PACKAGE_SUFFIXES + METADATA_SUFFIXES):
        raise UnsupportedFormatError(f"unsupported file format: {filename}")
    return ArchiveFormat.BINARY


def _safe_target(dest: Path, name: str) -> Path:
    if name.startswith("/") or PureWindowsPath(name).drive:
        raise InstallError(f"archive contains an absolute path entry: {name!r}")
    target = (dest / name).resolve()
    base = dest.resolve()
    if target != base and base not in target.parents:
        raise InstallError(f"archive contains an invalid path entry: {name!r}")
    return target


def _extract_zip(path: Path, dest: Path) -> list[str]:
    members: list[str] = []
    with zipfile.ZipFile(path, "r") as zf:
        for info in zf.infolist():
            name = info.filename
            if not name:
                continue
            target = _safe_target(dest, name)
            members.append(name)

            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue

            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info, "r") as src, target.open("wb") as out:
                shutil.copyfileobj(src, out)
            # Unix permission bits live in the high word of external_attr.
            mode = (info.external_attr >> 16) & 0o777
            if mode:
                target.chmod(mode)
    return members


def _extract_tar(path: Path, dest: Path) -> list[str]:
    with tarfile.open(path, "r:*") as tf:
        members = tf.getmembers()
        for m in members:
            _safe_target(dest, m.name)
        if hasattr(tarfile, "data_filter"):
            tf.extraction_filter = tarfile.data_filter
        tf.extractall(dest)
    return [m.name + "/" if m.isdir() else m.name for m in members]


def _exe_name(lpkg: LockedPackage) -> str:
    if lpkg.filename.lower().endswith(".exe") or os.name == "nt":
        return lpkg.name + ".exe"
    return lpkg.name


def unpack(artifact: Path, fmt: ArchiveFormat, dest: Path, *, exe_name: str) -> list[str]:
    """
    Unpack ``artifact`` into ``dest`` and return the member names, with a
    trailing ``/`` on directories. Single-file formats become ``dest/exe_name``.
    """
    dest.mkdir(parents=True, exist_ok=True)
    if fmt is ArchiveFormat.ZIP:
        return _extract_zip(artifact, dest)
    if fmt.is_tar:
        return _extract_tar(artifact, dest)

    target = dest / exe_name
    if fmt is ArchiveFormat.GZ:
        with gzip.open(artifact, "rb") as src, target.open("wb") as out:
            shutil.copyfileobj(src, out)
    else:
        shutil.copyfile(artifact, target)
    make_executable(target)
    return [exe_name]


def find_executable(root: Path, name: str) -> Path:
    names = {name}
    if os.name == "nt":
        names.add(name + ".exe")

    matches = [p for p in root.rglob("*") if p.name in names and p.is_file() and not p.is_symlink()]
    if matches:
        return min(matches, key=lambda p: (len(p.relative_to(root).parts), str(p)))

    candidates = sorted(p for p in root.iterdir() if is_executable(p))
    if len(candidates) == 1:
        return candidates[0]
    if not candidates:
        raise ExecutableNotFoundError(f"no executable named `{name}` found")
    found = ", ".join(p.name for p in candidates)
    raise AmbiguousExecutableError(f"could not determine which executable to link for `{name}`, found: {found}")


def _swap_into_place(src: Path, dest: Path) -> None:
    backup = dest.with_name(dest.name + ".rpk-backup")
    if backup.exists():
        shutil.rmtree(backup, ignore_errors=True)
    had_existing = dest.exists() or dest.is_symlink()
    if had_existing:
        dest.rename(backup)

    try:
        shutil.move(str(src), str(dest))
    except Exception:
        if dest.exists():
            shutil.rmtree(dest, ignore_errors=True)
        if had_existing and backup.exists():
            backup.rename(dest)
        raise
    finally:
        if backup.exists():
            shutil.rmtree(backup, ignore_errors=True)


def install_package(ctx: Context, lpkg: LockedPackage) -> Path:
    """
    Install the cached artifact of ``lpkg`` and link its executable into the bin directory.

    The archive is unpacked and searched in a staging directory first. The
    package tree under ``data_dir/pkgs`` is only replaced once an executable
    was found, so a broken release never clobbers a working install.
    """
    artifact = ctx.artifact_path(lpkg.name, lpkg.version, lpkg.filename)
    if not artifact.is_file():
        raise InstallError(f"artifact {artifact} does not exist")
    fmt = detect_format(lpkg.filename)

    try:
        mkdir_p(ctx.tmp_dir)
        mkdir_p(ctx.pkgs_dir)
        mkdir_p(ctx.bin_dir)
    except OSError as e:
        raise InstallError(f"failed to create directories for {lpkg.name}") from e

    dest = ctx.pkgs_dir / lpkg.name
    with tempfile.TemporaryDirectory(prefix=f"{lpkg.name}-", dir=ctx.tmp_dir) as td:
        staging = Path(td) / "unpacked"
        try:
            members = unpack(artifact, fmt, staging, exe_name=_exe_name(lpkg))
        except _EXTRACT_ERRORS as e:
            raise InstallError(f"failed to extract {artifact.name}") from e
        ctx.log_verbose_status("Extracted", f"{lpkg} ({fmt.value})")

        root = staging
        prefix = detect_common_prefix(members)
        if prefix is not None and (staging / prefix).is_dir():
            root = staging / prefix

        exe = find_executable(root, lpkg.name)
        rel = exe.relative_to(root)
        try:
            make_executable(exe)
            _swap_into_place(root, dest)
        except OSError as e:
            raise InstallError(f"failed to install {lpkg.name} into {dest}") from e

    target = dest / rel
    link = ctx.bin_dir / (lpkg.name + target.suffix if target.suffix.lower() == ".exe" else lpkg.name)
    try:
        symlink_force(target, link)
    except OSError as e:
        raise InstallError(f"failed to link {link}") from e
    ctx.log_verbose_status("Linked", f"{link} -> {target}")
    return link
