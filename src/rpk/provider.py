from __future__ import annotations

import platform
import re
import sys
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Iterable, Protocol
from urllib.parse import quote

from .client import GitHubClient, RpkError, RpkHTTPError
from .context import Context
from .installer import METADATA_SUFFIXES, ArchiveFormat, detect_format
from .models import GitHubSource, LockedPackage, Package, Source


class ResolutionError(RpkError):
    pass


class VersionNotFoundError(ResolutionError):
    pass


class NoMatchingAssetError(ResolutionError):
    pass


class ReleaseParseError(RpkError):
    pass


class Provider(Protocol):
    def resolve_and_fetch(self, ctx: Context, pkg: Package) -> LockedPackage:
        ...

    def fetch_pinned(self, ctx: Context, lpkg: LockedPackage) -> None:
        ...


OS_TOKENS: dict[str, tuple[str, ...]] = {
    "linux": ("linux",),
    "darwin": ("darwin", "macos", "apple", "osx", "mac"),
    "windows": ("windows", "win64", "win32", "win"),
}

ARCH_TOKENS: dict[str, tuple[str, ...]] = {
    "x86_64": ("x86_64", "amd64", "x64", "x86-64"),
    "aarch64": ("aarch64", "arm64"),
    "armv7": ("armv7", "armv7l", "armhf"),
    "i686": ("i686", "i386"),
}

_ARCH_ALIASES = {
    "amd64": "x86_64",
    "x64": "x86_64",
    "arm64": "aarch64",
    "armv7l": "armv7",
    "i386": "i686",
    "x86": "i686",
}


def current_platform() -> tuple[str, str]:
    if sys.platform.startswith("linux"):
        os_name = "linux"
    elif sys.platform == "darwin":
        os_name = "darwin"
    elif sys.platform in ("win32", "cygwin"):
        os_name = "windows"
    else:
        os_name = sys.platform
    machine = platform.machine().lower()
    return os_name, _ARCH_ALIASES.get(machine, machine)


@lru_cache(maxsize=None)
def _token_re(token: str) -> re.Pattern[str]:
    return re.compile(rf"(?<![a-z0-9]){re.escape(token)}(?![a-z0-9])")


def _has_token(name: str, tokens: Iterable[str]) -> bool:
    return any(_token_re(t).search(name) for t in tokens)


def strip_v(tag: str) -> str:
    if tag[:1] in ("v", "V") and tag[1:2].isdigit():
        return tag[1:]
    return tag


def tag_matches(tag: str, version: str) -> bool:
    return tag == version or strip_v(tag) == strip_v(version)


@dataclass(frozen=True)
class Asset:
    name: str
    download_url: str


@dataclass(frozen=True)
class Release:
    tag: str
    assets: tuple[Asset, ...]
    draft: bool = False
    prerelease: bool = False

    @property
    def version(self) -> str:
        return strip_v(self.tag)


def parse_release(raw: Any) -> Release:
    if not isinstance(raw, dict):
        raise ReleaseParseError(f"expected a release object, got {type(raw).__name__}")
    tag = raw.get("tag_name")
    if not isinstance(tag, str) or not tag.strip():
        raise ReleaseParseError("release is missing `tag_name`")
    assets_raw = raw.get("assets", [])
    if not isinstance(assets_raw, list):
        raise ReleaseParseError(f"release {tag} has a malformed `assets` field")

    assets: list[Asset] = []
    for item in assets_raw:
        if not isinstance(item, dict):
            raise ReleaseParseError(f"release {tag} has a malformed asset entry")
        name = item.get("name")
        url = item.get("browser_download_url")
        if not isinstance(name, str) or not isinstance(url, str):
            raise ReleaseParseError(f"release {tag} has an asset without `name` or `browser_download_url`")
        assets.append(Asset(name=name, download_url=url))

    return Release(
        tag=tag.strip(),
        assets=tuple(assets),
        draft=bool(raw.get("draft", False)),
        prerelease=bool(raw.get("prerelease", False)),
    )


def _format_rank(name: str) -> int:
    try:
        fmt = detect_format(name)
    except RpkError:
        return 2
    return 1 if fmt is ArchiveFormat.BINARY else 0


def select_asset(assets: Iterable[Asset], *, os_name: str | None = None, arch: str | None = None) -> Asset:
    """
    Pick the one asset built for ``os_name``/``arch`` (defaults to the running platform).

    Both an OS token and an architecture token must appear in the file name.
    Among the matches, formats the installer can unpack win over formats it
    cannot, musl builds win on Linux, then the shortest name wins.
    """
    if os_name is None or arch is None:
        cur_os, cur_arch = current_platform()
        os_name = os_name or cur_os
        arch = arch or cur_arch

    os_tokens = OS_TOKENS.get(os_name, (os_name,))
    arch_tokens = ARCH_TOKENS.get(arch, (arch,))
    if os_name == "darwin":
        arch_tokens = arch_tokens + ("universal",)

    candidates: list[Asset] = []
    for asset in assets:
        name = asset.name.lower()
        if name.endswith(METADATA_SUFFIXES):
            continue
        if _has_token(name, os_tokens) and _has_token(name, arch_tokens):
            candidates.append(asset)

    if not candidates:
        raise NoMatchingAssetError(f"no asset matches the current platform ({os_name}/{arch})")

    def _rank(asset: Asset) -> tuple[int, int, int, str]:
        name = asset.name.lower()
        musl = 0 if os_name == "linux" and _has_token(name, ("musl",)) else 1
        return (_format_rank(name), musl, len(name), asset.name)

    return min(candidates, key=_rank)


class GitHubProvider:
    def __init__(self, client: GitHubClient, *, os_name: str | None = None, arch: str | None = None) -> None:
        self._client = client
        self.os_name = os_name
        self.arch = arch

    def find_release(self, repo: str, version: str | None) -> Release:
        owner, name = repo.split("/", 1)
        path = f"/repos/{quote(owner, safe='')}/{quote(name, safe='')}/releases"
        try:
            for page in self._client.iter_pages(path):
                if not isinstance(page, list):
                    raise ReleaseParseError(f"malformed release listing for {repo}: expected a list")
                for raw in page:
                    release = parse_release(raw)
                    if release.draft:
                        continue
                    if version is None:
                        if release.prerelease:
                            continue
                        return release
                    if tag_matches(release.tag, version):
                        return release
        except RpkHTTPError as e:
            if e.status_code == 404:
                raise ResolutionError(f"repository {repo} not found") from e
            raise

        if version is None:
            raise VersionNotFoundError(f"no releases found for {repo}")
        raise VersionNotFoundError(f"no release matching version `{version}` found for {repo}")

    def resolve_and_fetch(self, ctx: Context, pkg: Package) -> LockedPackage:
        source = pkg.source
        release = self.find_release(source.repo, pkg.version)
        ctx.log_verbose_status("Resolved", f"{pkg} to {release.tag}")
        try:
            asset = select_asset(release.assets, os_name=self.os_name, arch=self.arch)
        except NoMatchingAssetError as e:
            raise NoMatchingAssetError(f"failed to select an asset from {source.repo}@{release.tag}") from e

        lpkg = LockedPackage(
            name=pkg.name,
            version=release.version,
            source=source,
            filename=asset.name,
            desc=pkg.desc,
            download_url=asset.download_url,
        )
        self._download(ctx, lpkg, [asset.download_url])
        return lpkg

    def fetch_pinned(self, ctx: Context, lpkg: LockedPackage) -> None:
        if lpkg.download_url:
            urls = [lpkg.download_url]
        else:
            repo = lpkg.source.repo
            filename = quote(lpkg.filename, safe="")
            urls = [
                f"https://github.com/{repo}/releases/download/{quote(tag, safe='')}/{filename}"
                for tag in dict.fromkeys((f"v{strip_v(lpkg.version)}", lpkg.version))
            ]
        self._download(ctx, lpkg, urls)

    def _download(self, ctx: Context, lpkg: LockedPackage, urls: list[str]) -> None:
        dest = ctx.artifact_path(lpkg.name, lpkg.version, lpkg.filename)
        if dest.is_file() and dest.stat().st_size > 0:
            ctx.log_verbose_status("Cached", f"{lpkg} ({lpkg.filename})")
            return
        for i, url in enumerate(urls):
            try:
                self._client.download(url, dest)
            except RpkHTTPError as e:
                if e.status_code == 404 and i < len(urls) - 1:
                    continue
                raise
            ctx.log_status("Downloaded", f"{lpkg} ({lpkg.filename})")
            return


class ProviderRegistry:
    """Routes each package to the provider registered for the type of its source."""

    def __init__(self) -> None:
        self._providers: dict[type, Provider] = {}

    def register(self, source_type: type, provider: Provider) -> None:
        self._providers[source_type] = provider

    def provider_for(self, source: Source) -> Provider:
        provider = self._providers.get(type(source))
        if provider is None:
            raise RpkError(f"no provider available for {source}")
        return provider

    def resolve_and_fetch(self, ctx: Context, pkg: Package) -> LockedPackage:
        return self.provider_for(pkg.source).resolve_and_fetch(ctx, pkg)

    def fetch_pinned(self, ctx: Context, lpkg: LockedPackage) -> None:
        self.provider_for(lpkg.source).fetch_pinned(ctx, lpkg)


def default_registry(client: GitHubClient) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(GitHubSource, GitHubProvider(client))
    return registry
