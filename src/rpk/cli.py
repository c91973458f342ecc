from __future__ import annotations

import argparse
import os
import sys
import textwrap

from ._version import __version__
from .client import DEFAULT_TIMEOUT_S, GitHubClient, RpkError
from .config import Config
from .context import (
    ENV_BIN_DIR,
    ENV_CACHE_DIR,
    ENV_CONFIG_DIR,
    ENV_DATA_DIR,
    Context,
    Output,
    Verbosity,
    build_context,
    color_enabled,
    log_error,
)
from .lock import (
    DEFAULT_JOBS,
    LockedConfig,
    PackageError,
    add_package,
    cleanup,
    restore_packages,
    sync_packages,
    update_packages,
)
from .models import ConfigError, GitHubSource, Package, parse_repo
from .provider import Provider, default_registry


def _print_table(header: list[str], rows: list[list[str]]) -> None:
    widths = [max([len(header[i])] + [len(r[i]) for r in rows]) for i in range(len(header))]
    for r in [header, *rows]:
        print("  ".join(c.ljust(w) for c, w in zip(r, widths)).rstrip())


def _positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid number: {value!r}") from e
    if n < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return n


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="rpk",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Manage binaries from GitHub releases.",
        epilog=textwrap.dedent(
            f"""\
            Environment variables:
              {ENV_CONFIG_DIR}, {ENV_DATA_DIR}, {ENV_CACHE_DIR}, {ENV_BIN_DIR}, RPK_TIMEOUT_S, GITHUB_TOKEN
            """
        ),
    )
    p.add_argument("--version", action="version", version=f"rpk {__version__}")
    p.add_argument("-q", "--quiet", action="store_true", help="Suppress any informational output")
    p.add_argument("-v", "--verbose", action="store_true", help="Use verbose output")
    p.add_argument(
        "--color",
        choices=("auto", "always", "never"),
        default="auto",
        metavar="WHEN",
        help="When to use colors: auto, always or never (default: auto)",
    )
    p.add_argument("--config-dir", metavar="PATH", help=f"The configuration directory (env: {ENV_CONFIG_DIR})")
    p.add_argument("--data-dir", metavar="PATH", help=f"The directory to store package data (env: {ENV_DATA_DIR})")
    p.add_argument("--cache-dir", metavar="PATH", help=f"The directory to store downloads (env: {ENV_CACHE_DIR})")
    p.add_argument("--bin-dir", metavar="PATH", help=f"The directory binaries are linked into (env: {ENV_BIN_DIR})")
    p.add_argument(
        "-j",
        "--jobs",
        type=_positive_int,
        default=DEFAULT_JOBS,
        help=f"Maximum number of packages processed at once (default: {DEFAULT_JOBS})",
    )
    p.add_argument("--timeout", type=float, help=f"HTTP timeout in seconds (default: {DEFAULT_TIMEOUT_S:g})")

    sub = p.add_subparsers(dest="cmd", required=True)

    init = sub.add_parser("init", help="Initialize a configuration file")
    init.add_argument("--from", dest="from_url", metavar="URL", help="Seed the configuration from a JSON file at URL")
    sub.add_parser("list", aliases=["l", "ls"], help="List all installed packages")
    sub.add_parser("sync", aliases=["s"], help="Install all declared packages, re-generating the lock file")

    add = sub.add_parser("add", aliases=["a"], help="Add a new package to the config file and install it")
    add.add_argument("repo", help="The GitHub repository hosting the package, e.g. sharkdp/fd")
    add.add_argument("--name", help="A unique name for the package (default: the repository name)")
    add.add_argument("--version", dest="pkg_version", metavar="VERSION", help="The version of the package")
    add.add_argument("--desc", help="A description of the package")

    restore = sub.add_parser("restore", aliases=["r"], help="Restore packages to the state in the lock file")
    restore.add_argument("package", nargs="?", metavar="PKG", help="Only restore this package")

    update = sub.add_parser("update", aliases=["u"], help="Update packages and re-generate the lock file")
    update.add_argument("package", nargs="?", metavar="PKG", help="Only update this package")

    clean = sub.add_parser("cleanup", help="Remove packages which are not listed in the lock file")
    clean.add_argument("--cache", action="store_true", help="Remove all cached downloads as well")

    sub.add_parser("env", help="Print the environment variables for rpk")

    return p


def _context_from_args(args: argparse.Namespace) -> Context:
    if args.quiet:
        verbosity = Verbosity.QUIET
    elif args.verbose:
        verbosity = Verbosity.VERBOSE
    else:
        verbosity = Verbosity.NORMAL
    return build_context(
        config_dir=args.config_dir,
        data_dir=args.data_dir,
        cache_dir=args.cache_dir,
        bin_dir=args.bin_dir,
        output=Output(verbosity=verbosity, no_color=not color_enabled(args.color)),
    )


def _timeout_from_args(args: argparse.Namespace) -> float:
    timeout = args.timeout if args.timeout is not None else os.getenv("RPK_TIMEOUT_S")
    try:
        return float(timeout) if timeout is not None else DEFAULT_TIMEOUT_S
    except ValueError:
        return DEFAULT_TIMEOUT_S


def _make_client(args: argparse.Namespace) -> GitHubClient:
    return GitHubClient.from_env(timeout_s=_timeout_from_args(args))


def _make_provider(client: GitHubClient) -> Provider:
    return default_registry(client)


def _report(ctx: Context, errors: list[PackageError]) -> int:
    for err in errors:
        ctx.log_error(err)
    return 1 if errors else 0


def cmd_init(ctx: Context, args: argparse.Namespace) -> int:
    if ctx.config_file.exists():
        ctx.log_warning("Skipped", f"{ctx.config_file} already exists")
        return 0
    if args.from_url:
        if not args.from_url.startswith(("http://", "https://")):
            raise RpkError(f"--from expects an http(s) URL, got {args.from_url!r}")
        with _make_client(args) as client:
            raw = client.get_json(args.from_url, auth=False)
        try:
            Config.init(ctx, raw)
        except ConfigError as e:
            raise ConfigError(f"invalid configuration at {args.from_url}") from e
    else:
        Config.init(ctx)
    ctx.log_status("Created", ctx.config_file)
    return 0


def cmd_list(ctx: Context, args: argparse.Namespace) -> int:
    lcfg = LockedConfig.load(ctx)
    rows = [[p.name, p.version, str(p.source), p.desc or ""] for p in sorted(lcfg.pkgs, key=lambda p: p.name)]
    _print_table(["NAME", "VERSION", "SOURCE", "DESC"], rows)
    return 0


def cmd_sync(ctx: Context, args: argparse.Namespace) -> int:
    config = Config.load(ctx)
    with _make_client(args) as client:
        lcfg = sync_packages(ctx, config, _make_provider(client), jobs=args.jobs)
    lcfg.save()
    return _report(ctx, lcfg.errors)


def cmd_add(ctx: Context, args: argparse.Namespace) -> int:
    repo = parse_repo(args.repo)
    name = (args.name or repo.split("/", 1)[1]).strip()
    if not name:
        raise RpkError("package name must not be empty")
    pkg = Package(name=name, source=GitHubSource(repo=repo), version=args.pkg_version, desc=args.desc)

    config = Config.load(ctx)
    lcfg = LockedConfig.load_or_default(ctx)
    with _make_client(args) as client:
        lcfg = add_package(config, lcfg, pkg, _make_provider(client))
    lcfg.save()
    return _report(ctx, lcfg.errors)


def cmd_restore(ctx: Context, args: argparse.Namespace) -> int:
    lcfg = LockedConfig.load(ctx)
    with _make_client(args) as client:
        errors = restore_packages(lcfg, _make_provider(client), jobs=args.jobs, only=args.package)
    return _report(ctx, errors)


def cmd_update(ctx: Context, args: argparse.Namespace) -> int:
    config = Config.load(ctx)
    lcfg = LockedConfig.load_or_default(ctx)
    with _make_client(args) as client:
        new_lcfg = update_packages(config, lcfg, _make_provider(client), jobs=args.jobs, only=args.package)
    new_lcfg.save()
    return _report(ctx, new_lcfg.errors)


def cmd_cleanup(ctx: Context, args: argparse.Namespace) -> int:
    lcfg = LockedConfig.load(ctx)
    removed = cleanup(lcfg, cache=args.cache)
    if not removed:
        ctx.log_status("Clean", "nothing to remove")
    return 0


def cmd_env(ctx: Context, args: argparse.Namespace) -> int:
    print(f'export {ENV_CONFIG_DIR}="{ctx.config_dir}"')
    print(f'export {ENV_DATA_DIR}="{ctx.data_dir}"')
    print(f'export {ENV_CACHE_DIR}="{ctx.cache_dir}"')
    print(f'export {ENV_BIN_DIR}="{ctx.bin_dir}"')
    print(f'export PATH="{ctx.bin_dir}:$PATH"')
    return 0


COMMANDS = {
    "init": cmd_init,
    "list": cmd_list,
    "l": cmd_list,
    "ls": cmd_list,
    "sync": cmd_sync,
    "s": cmd_sync,
    "add": cmd_add,
    "a": cmd_add,
    "restore": cmd_restore,
    "r": cmd_restore,
    "update": cmd_update,
    "u": cmd_update,
    "cleanup": cmd_cleanup,
    "env": cmd_env,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    no_color = not color_enabled(args.color)
    try:
        ctx = _context_from_args(args)
        return COMMANDS[args.cmd](ctx, args)
    except RpkError as e:
        log_error(e, no_color=no_color)
        return 1
    except KeyboardInterrupt:
        print("\ninterrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
