from __future__ import annotations

import enum
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from platformdirs import user_cache_path, user_config_path, user_data_path

from ._version import __version__

APP_NAME = "rpk"

ENV_CONFIG_DIR = "RPK_CONFIG_DIR"
ENV_DATA_DIR = "RPK_DATA_DIR"
ENV_CACHE_DIR = "RPK_CACHE_DIR"
ENV_BIN_DIR = "RPK_BIN_DIR"

CONFIG_FILENAME = "packages.json"
LOCK_FILENAME = "packages.lock.json"

_RESET = "\033[0m"
_BOLD = "\033[1m"


class Verbosity(enum.IntEnum):
    QUIET = 0
    NORMAL = 1
    VERBOSE = 2


class Color(str, enum.Enum):
    RED = "31"
    GREEN = "32"
    YELLOW = "33"
    MAGENTA = "35"
    CYAN = "36"


@dataclass(frozen=True)
class Output:
    verbosity: Verbosity = Verbosity.NORMAL
    no_color: bool = False


@dataclass(frozen=True)
class Context:
    version: str
    config_file: Path
    config_dir: Path
    cache_dir: Path
    data_dir: Path
    bin_dir: Path
    lock_file: Path
    output: Output = field(default_factory=Output)

    @property
    def pkgs_dir(self) -> Path:
        return self.data_dir / "pkgs"

    @property
    def tmp_dir(self) -> Path:
        return self.data_dir / ".tmp"

    def artifact_path(self, name: str, version: str, filename: str) -> Path:
        return self.cache_dir / name / version / filename

    def to_dict(self) -> dict[str, Any]:
        # lock_file and output describe this run only and are never persisted.
        return {
            "version": self.version,
            "config_file": str(self.config_file),
            "config_dir": str(self.config_dir),
            "cache_dir": str(self.cache_dir),
            "data_dir": str(self.data_dir),
            "bin_dir": str(self.bin_dir),
        }

    def log_header(self, prefix: str, msg: Any) -> None:
        if self.output.verbosity >= Verbosity.NORMAL:
            self._log_header(prefix, msg)

    def log_verbose_header(self, prefix: str, msg: Any) -> None:
        if self.output.verbosity >= Verbosity.VERBOSE:
            self._log_header(prefix, msg)

    def _log_header(self, prefix: str, msg: Any) -> None:
        if self.output.no_color:
            print(f"{prefix.upper()} {msg}", file=sys.stderr)
        else:
            print(f"{_paint(prefix, Color.MAGENTA)} {msg}", file=sys.stderr)

    def log_status(self, prefix: str, msg: Any) -> None:
        if self.output.verbosity >= Verbosity.NORMAL:
            self._log(Color.CYAN, prefix, msg)

    def log_verbose_status(self, prefix: str, msg: Any) -> None:
        if self.output.verbosity >= Verbosity.VERBOSE:
            self._log(Color.CYAN, prefix, msg)

    def log_warning(self, prefix: str, msg: Any) -> None:
        if self.output.verbosity >= Verbosity.NORMAL:
            self._log(Color.YELLOW, prefix, msg)

    def _log(self, color: Color, prefix: str, msg: Any) -> None:
        if self.output.no_color:
            print(f"{prefix.upper():>12} {msg}", file=sys.stderr)
        else:
            print(f"{_paint(f'{prefix:>12}', color)} {msg}", file=sys.stderr)

    def log_error(self, err: BaseException) -> None:
        log_error(err, no_color=self.output.no_color)


def _paint(text: str, color: Color) -> str:
    return f"\033[{color.value}m{_BOLD}{text}{_RESET}"


def format_error_chain(err: BaseException) -> str:
    parts: list[str] = []
    cur: BaseException | None = err
    seen: set[int] = set()
    while cur is not None and id(cur) not in seen:
        seen.add(id(cur))
        msg = str(cur) or type(cur).__name__
        parts.append(msg)
        cur = cur.__cause__
    return "\n  due to: ".join(parts)


def log_error(err: BaseException, *, no_color: bool = False) -> None:
    pretty = format_error_chain(err)
    if no_color:
        print(f"\nERROR: {pretty}", file=sys.stderr)
    else:
        print(f"\n{_paint('error:', Color.RED)} {pretty}", file=sys.stderr)


def color_enabled(choice: str = "auto") -> bool:
    if choice == "always":
        return True
    if choice == "never":
        return False
    return sys.stderr.isatty() and os.getenv("NO_COLOR") is None


def _pick_dir(flag: str | Path | None, env_var: str, default: Path) -> Path:
    # Flag > env > default. Always absolute: bin links store these paths verbatim.
    if flag is not None:
        return Path(flag).expanduser().absolute()
    if env := os.getenv(env_var):
        return Path(env).expanduser().absolute()
    return default.absolute()


def build_context(
    *,
    config_dir: str | Path | None = None,
    data_dir: str | Path | None = None,
    cache_dir: str | Path | None = None,
    bin_dir: str | Path | None = None,
    output: Output | None = None,
) -> Context:
    cfg_dir = _pick_dir(config_dir, ENV_CONFIG_DIR, user_config_path(APP_NAME))
    dat_dir = _pick_dir(data_dir, ENV_DATA_DIR, user_data_path(APP_NAME))
    cch_dir = _pick_dir(cache_dir, ENV_CACHE_DIR, user_cache_path(APP_NAME))
    b_dir = _pick_dir(bin_dir, ENV_BIN_DIR, dat_dir / "bin")
    return Context(
        version=__version__,
        config_file=cfg_dir / CONFIG_FILENAME,
        config_dir=cfg_dir,
        cache_dir=cch_dir,
        data_dir=dat_dir,
        bin_dir=b_dir,
        lock_file=cfg_dir / LOCK_FILENAME,
        output=output or Output(),
    )
