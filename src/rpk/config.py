from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from .context import Context
from .fs_ext import mkdir_p, remove_file_if_exists, write_text_atomic
from .models import ConfigError, Package

DEFAULT_PACKAGES: dict[str, dict[str, Any]] = {}


@dataclass
class Config:
    pkgs: dict[str, Package] = field(default_factory=dict)

    @classmethod
    def load(cls, ctx: Context) -> "Config":
        """Load the editable configuration, writing the default one if it does not exist yet."""
        path = ctx.config_file
        if not path.exists():
            return cls.init(ctx)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"failed to load {path}") from e
        try:
            return cls.from_dict(raw)
        except ConfigError as e:
            raise ConfigError(f"failed to load {path}") from e

    @classmethod
    def init(cls, ctx: Context, raw: Any = None) -> "Config":
        """
        Write a fresh config file, from ``raw`` when given or the default otherwise.

        ``raw`` is validated before anything on disk is touched.
        """
        cfg = cls.from_dict({"pkgs": DEFAULT_PACKAGES} if raw is None else raw)
        # A lock file without its config describes packages nobody declared anymore.
        try:
            remove_file_if_exists(ctx.lock_file)
        except OSError as e:
            raise ConfigError(f"failed to remove lock file {ctx.lock_file}") from e
        cfg.save(ctx)
        return cfg

    @classmethod
    def from_dict(cls, raw: Any) -> "Config":
        if not isinstance(raw, dict):
            raise ConfigError("configuration must be a JSON object")
        pkgs_raw = raw.get("pkgs", {})
        if not isinstance(pkgs_raw, dict):
            raise ConfigError("`pkgs` must be a mapping of package name to package")
        pkgs: dict[str, Package] = {}
        for name in sorted(pkgs_raw):
            pkgs[name] = Package.from_dict(name, pkgs_raw[name])
        return cls(pkgs=pkgs)

    def to_dict(self) -> dict[str, Any]:
        return {"pkgs": {name: self.pkgs[name].to_dict() for name in sorted(self.pkgs)}}

    def save(self, ctx: Context) -> None:
        try:
            mkdir_p(ctx.config_dir)
            write_text_atomic(ctx.config_file, json.dumps(self.to_dict(), indent=2) + "\n")
        except OSError as e:
            raise ConfigError(f"failed to save {ctx.config_file}") from e

    def packages(self) -> list[Package]:
        return [self.pkgs[name] for name in sorted(self.pkgs)]

    def get(self, name: str) -> Package | None:
        return self.pkgs.get(name)

    def add_package(self, pkg: Package) -> None:
        if pkg.name in self.pkgs:
            raise ConfigError(f"package `{pkg.name}` already exists in the config file")
        self.pkgs[pkg.name] = pkg
