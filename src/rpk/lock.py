from __future__ import annotations

import json
import os
import shutil
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Sequence, TypeVar

from .client import RpkError
from .config import Config
from .context import Context
from .fs_ext import mkdir_p, write_text_atomic
from .installer import install_package
from .models import ConfigError, LockedPackage, Package
from .provider import Provider

DEFAULT_JOBS = 4

T = TypeVar("T")
R = TypeVar("R")


class PackageError(RpkError):
    def __init__(self, name: str, action: str) -> None:
        super().__init__(f"failed to {action} `{name}`")
        self.name = name
        self.action = action


@dataclass
class LockedConfig:
    ctx: Context
    pkgs: list[LockedPackage] = field(default_factory=list)
    # Collected while building this config; never written to the lock file.
    errors: list[PackageError] = field(default_factory=list)

    @classmethod
    def load(cls, ctx: Context) -> "LockedConfig":
        path = ctx.lock_file
        if not path.exists():
            raise ConfigError(f"lock file {path} does not exist, run `rpk sync` first")
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"failed to load {path}") from e
        try:
            return cls.from_dict(ctx, raw)
        except ConfigError as e:
            raise ConfigError(f"failed to load {path}") from e

    @classmethod
    def load_or_default(cls, ctx: Context) -> "LockedConfig":
        if not ctx.lock_file.exists():
            return cls(ctx=ctx)
        return cls.load(ctx)

    @classmethod
    def from_dict(cls, ctx: Context, raw: Any) -> "LockedConfig":
        # The recorded directories are informational; this run's context wins.
        if not isinstance(raw, dict):
            raise ConfigError("lock file must be a JSON object")
        pkgs_raw = raw.get("pkgs", [])
        if not isinstance(pkgs_raw, list):
            raise ConfigError("`pkgs` must be a list of locked packages")
        lcfg = cls(ctx=ctx)
        for item in pkgs_raw:
            lpkg = LockedPackage.from_dict(item)
            if lcfg.get(lpkg.name) is not None:
                raise ConfigError(f"duplicate package `{lpkg.name}` in lock file")
            lcfg.pkgs.append(lpkg)
        return lcfg

    def to_dict(self) -> dict[str, Any]:
        out = self.ctx.to_dict()
        out["pkgs"] = [p.to_dict() for p in sorted(self.pkgs, key=lambda p: p.name)]
        return out

    def save(self) -> None:
        """Write the whole lock file at once; a failed run never leaves a half-written lock."""
        path = self.ctx.lock_file
        try:
            mkdir_p(path.parent)
            write_text_atomic(path, json.dumps(self.to_dict(), indent=2) + "\n")
        except OSError as e:
            raise RpkError(f"failed to save {path}") from e

    def get(self, name: str) -> LockedPackage | None:
        for lpkg in self.pkgs:
            if lpkg.name == name:
                return lpkg
        return None

    def add_pkg(self, lpkg: LockedPackage) -> None:
        for i, existing in enumerate(self.pkgs):
            if existing.name == lpkg.name:
                self.pkgs[i] = lpkg
                return
        self.pkgs.append(lpkg)


def sync_package(ctx: Context, pkg: Package, provider: Provider) -> LockedPackage:
    lpkg = provider.resolve_and_fetch(ctx, pkg)
    install_package(ctx, lpkg)
    ctx.log_status("Checked", lpkg)
    return lpkg


def restore_package(ctx: Context, lpkg: LockedPackage, provider: Provider) -> LockedPackage:
    provider.fetch_pinned(ctx, lpkg)
    install_package(ctx, lpkg)
    ctx.log_status("Checked", lpkg)
    return lpkg


def _guarded(name: str, action: str, fn: Callable[[], R]) -> R:
    try:
        return fn()
    except (RpkError, OSError) as e:
        raise PackageError(name, action) from e


def run_all(items: Sequence[T], fn: Callable[[T], R], *, jobs: int = DEFAULT_JOBS) -> list[R | PackageError]:
    """
    Run ``fn`` for every item with at most ``jobs`` running at once.

    Results come back in the order of ``items`` no matter which finished first.
    A ``PackageError`` is returned in place of the result instead of aborting
    the batch. On interrupt, queued items are cancelled and running ones are
    allowed to finish.
    """
    results: list[R | PackageError] = []
    if jobs <= 1 or len(items) <= 1:
        for item in items:
            try:
                results.append(fn(item))
            except PackageError as e:
                results.append(e)
        return results

    executor = ThreadPoolExecutor(max_workers=jobs, thread_name_prefix="rpk")
    try:
        futures = [executor.submit(fn, item) for item in items]
        for fut in futures:
            try:
                results.append(fut.result())
            except PackageError as e:
                results.append(e)
    except KeyboardInterrupt:
        executor.shutdown(wait=True, cancel_futures=True)
        raise
    finally:
        executor.shutdown(wait=True)
    return results


def _collect(ctx: Context, results: list[LockedPackage | PackageError]) -> LockedConfig:
    lcfg = LockedConfig(ctx=ctx)
    for res in results:
        if isinstance(res, PackageError):
            lcfg.errors.append(res)
        else:
            lcfg.add_pkg(res)
    return lcfg


def sync_packages(ctx: Context, config: Config, provider: Provider, *, jobs: int = DEFAULT_JOBS) -> LockedConfig:
    """Resolve every declared package fresh, install it, and return the new lock."""
    ctx.log_header("Syncing", ctx.config_file)

    def _sync(pkg: Package) -> LockedPackage:
        return _guarded(pkg.name, "sync", lambda: sync_package(ctx, pkg, provider))

    return _collect(ctx, run_all(config.packages(), _sync, jobs=jobs))


def restore_packages(
    lcfg: LockedConfig,
    provider: Provider,
    *,
    jobs: int = DEFAULT_JOBS,
    only: str | None = None,
) -> list[PackageError]:
    """Reinstall exactly what the lock file records; nothing is resolved again."""
    ctx = lcfg.ctx
    pkgs = list(lcfg.pkgs)
    if only is not None:
        lpkg = lcfg.get(only)
        if lpkg is None:
            raise ConfigError(f"package `{only}` not found in lock file")
        pkgs = [lpkg]
    ctx.log_header("Restoring", ctx.lock_file)

    def _restore(lpkg: LockedPackage) -> LockedPackage:
        return _guarded(lpkg.name, "restore", lambda: restore_package(ctx, lpkg, provider))

    return [res for res in run_all(pkgs, _restore, jobs=jobs) if isinstance(res, PackageError)]


def update_packages(
    config: Config,
    lcfg: LockedConfig,
    provider: Provider,
    *,
    jobs: int = DEFAULT_JOBS,
    only: str | None = None,
) -> LockedConfig:
    """
    Re-resolve locked packages and return the new lock.

    With ``only`` just that package drops its pinned version; every other
    declared package is reinstalled from its lock entry, or resolved if it
    has none. Lock entries that are no longer declared are dropped.
    """
    ctx = lcfg.ctx
    if only is not None and config.get(only) is None:
        raise ConfigError(f"package `{only}` not found in config file")
    ctx.log_header("Updating", ctx.config_file)

    work: list[Package | LockedPackage] = []
    for pkg in config.packages():
        locked = lcfg.get(pkg.name)
        if only is not None and pkg.name != only and locked is not None and locked.source == pkg.source:
            work.append(locked)
        else:
            work.append(pkg)

    def _update(item: Package | LockedPackage) -> LockedPackage:
        if isinstance(item, LockedPackage):
            return _guarded(item.name, "restore", lambda: restore_package(ctx, item, provider))
        return _guarded(item.name, "update", lambda: sync_package(ctx, item, provider))

    return _collect(ctx, run_all(work, _update, jobs=jobs))


def add_package(config: Config, lcfg: LockedConfig, pkg: Package, provider: Provider) -> LockedConfig:
    """
    Declare ``pkg`` in the config file, then resolve and install it into ``lcfg``.

    The config is saved before resolution so a failed download still leaves the
    declaration in place for the next ``sync``.
    """
    ctx = lcfg.ctx
    config.add_package(pkg)
    config.save(ctx)
    ctx.log_status("Added", pkg)
    try:
        lcfg.add_pkg(_guarded(pkg.name, "add", lambda: sync_package(ctx, pkg, provider)))
    except PackageError as e:
        lcfg.errors.append(e)
    return lcfg


def _remove_path(ctx: Context, path: Path) -> None:
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
    except OSError as e:
        raise RpkError(f"failed to remove {path}") from e
    ctx.log_status("Removed", path)


def _link_target(link: Path) -> Path:
    target = Path(os.readlink(link))
    if not target.is_absolute():
        target = link.parent / target
    return Path(os.path.abspath(target))


def cleanup(lcfg: LockedConfig, *, cache: bool = False) -> list[Path]:
    """
    Remove package trees and bin links for packages that are not in the lock file.

    Only symlinks that point into the package directory are touched, so
    unrelated files in a shared bin directory survive. With ``cache`` the
    download cache is emptied too.
    """
    ctx = lcfg.ctx
    keep = {p.name for p in lcfg.pkgs}
    removed: list[Path] = []

    if ctx.bin_dir.is_dir():
        pkgs_dir = Path(os.path.abspath(ctx.pkgs_dir))
        for entry in sorted(ctx.bin_dir.iterdir()):
            if not entry.is_symlink():
                continue
            name = entry.name[:-4] if entry.name.lower().endswith(".exe") else entry.name
            if name in keep:
                continue
            if pkgs_dir not in _link_target(entry).parents:
                continue
            _remove_path(ctx, entry)
            removed.append(entry)

    if ctx.pkgs_dir.is_dir():
        for entry in sorted(ctx.pkgs_dir.iterdir()):
            if entry.name in keep:
                continue
            _remove_path(ctx, entry)
            removed.append(entry)

    if ctx.tmp_dir.is_dir():
        shutil.rmtree(ctx.tmp_dir, ignore_errors=True)

    if cache and ctx.cache_dir.is_dir():
        for entry in sorted(ctx.cache_dir.iterdir()):
            _remove_path(ctx, entry)
            removed.append(entry)

    return removed
