import tempfile
import unittest
from pathlib import Path
from typing import Any, Callable

import httpx

from rpk.client import GitHubClient, RpkError
from rpk.context import Context, Output, Verbosity, build_context
from rpk.models import GitHubSource, LockedPackage, Package
from rpk.provider import (
    Asset,
    GitHubProvider,
    NoMatchingAssetError,
    ProviderRegistry,
    ReleaseParseError,
    ResolutionError,
    VersionNotFoundError,
    select_asset,
    strip_v,
    tag_matches,
)

FD_ASSETS = [
    "fd-v10.2.0-aarch64-apple-darwin.tar.gz",
    "fd-v10.2.0-aarch64-unknown-linux-gnu.tar.gz",
    "fd-v10.2.0-aarch64-unknown-linux-musl.tar.gz",
    "fd-v10.2.0-x86_64-apple-darwin.tar.gz",
    "fd-v10.2.0-x86_64-pc-windows-msvc.zip",
    "fd-v10.2.0-x86_64-unknown-linux-gnu.tar.gz",
    "fd-v10.2.0-x86_64-unknown-linux-musl.tar.gz",
    "fd-v10.2.0-x86_64-unknown-linux-musl.tar.gz.sha256",
    "fd_10.2.0_amd64.deb",
    "fd-musl_10.2.0_amd64.deb",
]


def _assets(names: list[str]) -> list[Asset]:
    return [Asset(name=n, download_url=f"https://dl.test/{n}") for n in names]


def _ctx(root: Path) -> Context:
    return build_context(
        config_dir=root / "config",
        data_dir=root / "data",
        cache_dir=root / "cache",
        bin_dir=root / "bin",
        output=Output(verbosity=Verbosity.QUIET, no_color=True),
    )


def _release(tag: str, names: list[str], *, draft: bool = False, prerelease: bool = False) -> dict[str, Any]:
    return {
        "tag_name": tag,
        "draft": draft,
        "prerelease": prerelease,
        "assets": [
            {"name": n, "browser_download_url": f"https://github.com/sharkdp/fd/releases/download/{tag}/{n}"}
            for n in names
        ],
    }


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> GitHubClient:
    client = GitHubClient(api_url="https://api.github.test")
    client._http = httpx.Client(transport=httpx.MockTransport(handler), follow_redirects=True)  # type: ignore[attr-defined]
    return client


class TestSelectAsset(unittest.TestCase):
    def test_linux_prefers_musl_archive(self) -> None:
        asset = select_asset(_assets(FD_ASSETS), os_name="linux", arch="x86_64")
        self.assertEqual(asset.name, "fd-v10.2.0-x86_64-unknown-linux-musl.tar.gz")

    def test_linux_arm(self) -> None:
        asset = select_asset(_assets(FD_ASSETS), os_name="linux", arch="aarch64")
        self.assertEqual(asset.name, "fd-v10.2.0-aarch64-unknown-linux-musl.tar.gz")

    def test_darwin(self) -> None:
        asset = select_asset(_assets(FD_ASSETS), os_name="darwin", arch="x86_64")
        self.assertEqual(asset.name, "fd-v10.2.0-x86_64-apple-darwin.tar.gz")

    def test_windows(self) -> None:
        asset = select_asset(_assets(FD_ASSETS), os_name="windows", arch="x86_64")
        self.assertEqual(asset.name, "fd-v10.2.0-x86_64-pc-windows-msvc.zip")

    def test_darwin_is_not_mistaken_for_windows(self) -> None:
        names = ["tool-darwin-amd64.tar.gz", "tool-windows-amd64.zip"]
        self.assertEqual(select_asset(_assets(names), os_name="windows", arch="x86_64").name, "tool-windows-amd64.zip")
        self.assertEqual(select_asset(_assets(names), os_name="darwin", arch="x86_64").name, "tool-darwin-amd64.tar.gz")

    def test_arch_aliases_match(self) -> None:
        names = ["jq-linux-amd64", "jq-linux-arm64", "jq-macos-arm64"]
        self.assertEqual(select_asset(_assets(names), os_name="linux", arch="x86_64").name, "jq-linux-amd64")
        self.assertEqual(select_asset(_assets(names), os_name="linux", arch="aarch64").name, "jq-linux-arm64")
        self.assertEqual(select_asset(_assets(names), os_name="darwin", arch="aarch64").name, "jq-macos-arm64")

    def test_darwin_universal_build(self) -> None:
        names = ["tool-universal-apple-darwin.tar.gz", "tool-x86_64-unknown-linux-gnu.tar.gz"]
        asset = select_asset(_assets(names), os_name="darwin", arch="aarch64")
        self.assertEqual(asset.name, "tool-universal-apple-darwin.tar.gz")

    def test_supported_format_beats_package_format(self) -> None:
        names = ["tool_linux_amd64.deb", "tool_linux_amd64.tar.gz"]
        self.assertEqual(select_asset(_assets(names), os_name="linux", arch="x86_64").name, "tool_linux_amd64.tar.gz")

    def test_archive_beats_bare_binary(self) -> None:
        names = ["tool-linux-amd64", "tool-linux-amd64.tar.gz"]
        self.assertEqual(select_asset(_assets(names), os_name="linux", arch="x86_64").name, "tool-linux-amd64.tar.gz")

    def test_checksums_are_never_selected(self) -> None:
        names = ["tool-linux-amd64.sha256", "tool-linux-amd64.sig"]
        with self.assertRaises(NoMatchingAssetError):
            select_asset(_assets(names), os_name="linux", arch="x86_64")

    def test_no_match(self) -> None:
        with self.assertRaises(NoMatchingAssetError) as cm:
            select_asset(_assets(FD_ASSETS), os_name="freebsd", arch="x86_64")
        self.assertIn("freebsd/x86_64", str(cm.exception))


class TestVersions(unittest.TestCase):
    def test_strip_v(self) -> None:
        self.assertEqual(strip_v("v1.2.3"), "1.2.3")
        self.assertEqual(strip_v("1.2.3"), "1.2.3")
        self.assertEqual(strip_v("vendor"), "vendor")

    def test_tag_matches(self) -> None:
        self.assertTrue(tag_matches("v10.2.0", "10.2.0"))
        self.assertTrue(tag_matches("10.2.0", "v10.2.0"))
        self.assertTrue(tag_matches("jq-1.7.1", "jq-1.7.1"))
        self.assertFalse(tag_matches("v10.2.0", "10.2"))


class TestGitHubProvider(unittest.TestCase):
    def _provider(self, releases: list[dict[str, Any]], downloads: dict[str, bytes] | None = None):
        seen: list[httpx.Request] = []
        downloads = downloads or {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.url.host == "api.github.test":
                if request.url.path != "/repos/sharkdp/fd/releases":
                    return httpx.Response(404, json={"message": "Not Found"})
                page = int(request.url.params.get("page", "1"))
                return httpx.Response(200, json=releases if page == 1 else [])
            body = downloads.get(str(request.url))
            if body is None:
                return httpx.Response(404, text="Not Found")
            return httpx.Response(200, content=body)

        client = _client(handler)
        self.addCleanup(client.close)
        return GitHubProvider(client, os_name="linux", arch="x86_64"), seen

    def test_latest_skips_drafts_and_prereleases(self) -> None:
        provider, _ = self._provider(
            [
                _release("v11.0.0", FD_ASSETS, draft=True),
                _release("v10.3.0-rc1", FD_ASSETS, prerelease=True),
                _release("v10.2.0", FD_ASSETS),
                _release("v10.1.0", FD_ASSETS),
            ]
        )
        self.assertEqual(provider.find_release("sharkdp/fd", None).tag, "v10.2.0")

    def test_explicit_version_matches_with_or_without_v(self) -> None:
        provider, _ = self._provider([_release("v10.2.0", FD_ASSETS), _release("v10.1.0", FD_ASSETS)])
        self.assertEqual(provider.find_release("sharkdp/fd", "10.1.0").tag, "v10.1.0")
        self.assertEqual(provider.find_release("sharkdp/fd", "v10.1.0").tag, "v10.1.0")

    def test_explicit_prerelease_is_allowed(self) -> None:
        provider, _ = self._provider([_release("v10.3.0-rc1", FD_ASSETS, prerelease=True)])
        self.assertEqual(provider.find_release("sharkdp/fd", "10.3.0-rc1").tag, "v10.3.0-rc1")

    def test_unknown_version(self) -> None:
        provider, _ = self._provider([_release("v10.2.0", FD_ASSETS)])
        with self.assertRaises(VersionNotFoundError) as cm:
            provider.find_release("sharkdp/fd", "9.9.9")
        self.assertIn("9.9.9", str(cm.exception))

    def test_missing_repository(self) -> None:
        provider, _ = self._provider([])
        with self.assertRaises(ResolutionError) as cm:
            provider.find_release("nobody/nothing", None)
        self.assertIn("nobody/nothing", str(cm.exception))

    def test_malformed_listing(self) -> None:
        provider, _ = self._provider([{"assets": []}])
        with self.assertRaises(ReleaseParseError):
            provider.find_release("sharkdp/fd", None)

    def test_listing_is_paginated(self) -> None:
        first_page = [_release(f"v1.0.{i}", [], prerelease=True) for i in range(100)]
        calls: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            page = int(request.url.params["page"])
            calls.append(page)
            self.assertEqual(request.url.params["per_page"], "100")
            return httpx.Response(200, json=first_page if page == 1 else [_release("v0.9.0", FD_ASSETS)])

        client = _client(handler)
        self.addCleanup(client.close)
        release = GitHubProvider(client, os_name="linux", arch="x86_64").find_release("sharkdp/fd", None)

        self.assertEqual(release.tag, "v0.9.0")
        self.assertEqual(calls, [1, 2])

    def test_resolve_and_fetch_downloads_into_cache(self) -> None:
        name = "fd-v10.2.0-x86_64-unknown-linux-musl.tar.gz"
        url = f"https://github.com/sharkdp/fd/releases/download/v10.2.0/{name}"
        provider, _ = self._provider([_release("v10.2.0", FD_ASSETS)], {url: b"archive-bytes"})
        with tempfile.TemporaryDirectory() as td:
            ctx = _ctx(Path(td))
            pkg = Package(name="fd", source=GitHubSource(repo="sharkdp/fd"), desc="find alternative")

            lpkg = provider.resolve_and_fetch(ctx, pkg)

            self.assertEqual(lpkg.name, "fd")
            self.assertEqual(lpkg.version, "10.2.0")
            self.assertEqual(lpkg.filename, name)
            self.assertEqual(lpkg.download_url, url)
            self.assertEqual(lpkg.desc, "find alternative")
            self.assertEqual(ctx.artifact_path("fd", "10.2.0", name).read_bytes(), b"archive-bytes")
            leftovers = [p for p in ctx.artifact_path("fd", "10.2.0", name).parent.iterdir() if p.name.endswith(".part")]
            self.assertEqual(leftovers, [])

    def test_release_without_matching_asset_names_the_release(self) -> None:
        provider, _ = self._provider([_release("v10.2.0", ["fd_10.2.0_source.tar.gz"])])
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(NoMatchingAssetError) as cm:
                provider.resolve_and_fetch(_ctx(Path(td)), Package(name="fd", source=GitHubSource(repo="sharkdp/fd")))
        self.assertIn("sharkdp/fd@v10.2.0", str(cm.exception))

    def test_fetch_pinned_does_not_list_releases(self) -> None:
        name = "fd-v10.1.0-x86_64-unknown-linux-musl.tar.gz"
        url = f"https://github.com/sharkdp/fd/releases/download/v10.1.0/{name}"
        provider, seen = self._provider([_release("v10.2.0", FD_ASSETS)], {url: b"old"})
        lpkg = LockedPackage(
            name="fd",
            version="10.1.0",
            source=GitHubSource(repo="sharkdp/fd"),
            filename=name,
            download_url=url,
        )
        with tempfile.TemporaryDirectory() as td:
            ctx = _ctx(Path(td))
            provider.fetch_pinned(ctx, lpkg)
            self.assertEqual(ctx.artifact_path("fd", "10.1.0", name).read_bytes(), b"old")

        self.assertEqual([str(r.url) for r in seen], [url])

    def test_fetch_pinned_reuses_cached_artifact(self) -> None:
        provider, seen = self._provider([])
        lpkg = LockedPackage(name="fd", version="10.1.0", source=GitHubSource(repo="sharkdp/fd"), filename="fd.tar.gz")
        with tempfile.TemporaryDirectory() as td:
            ctx = _ctx(Path(td))
            path = ctx.artifact_path("fd", "10.1.0", "fd.tar.gz")
            path.parent.mkdir(parents=True)
            path.write_bytes(b"cached")

            provider.fetch_pinned(ctx, lpkg)

            self.assertEqual(path.read_bytes(), b"cached")
        self.assertEqual(seen, [])

    def test_fetch_pinned_without_url_tries_tag_spellings(self) -> None:
        url = "https://github.com/sharkdp/fd/releases/download/10.1.0/fd.tar.gz"
        provider, seen = self._provider([], {url: b"plain-tag"})
        lpkg = LockedPackage(name="fd", version="10.1.0", source=GitHubSource(repo="sharkdp/fd"), filename="fd.tar.gz")
        with tempfile.TemporaryDirectory() as td:
            ctx = _ctx(Path(td))
            provider.fetch_pinned(ctx, lpkg)
            self.assertEqual(ctx.artifact_path("fd", "10.1.0", "fd.tar.gz").read_bytes(), b"plain-tag")

        self.assertEqual(
            [str(r.url) for r in seen],
            ["https://github.com/sharkdp/fd/releases/download/v10.1.0/fd.tar.gz", url],
        )

    def test_failed_download_is_reported(self) -> None:
        provider, _ = self._provider([])
        lpkg = LockedPackage(
            name="fd",
            version="10.1.0",
            source=GitHubSource(repo="sharkdp/fd"),
            filename="fd.tar.gz",
            download_url="https://github.com/sharkdp/fd/releases/download/v10.1.0/fd.tar.gz",
        )
        with tempfile.TemporaryDirectory() as td:
            ctx = _ctx(Path(td))
            with self.assertRaises(RpkError):
                provider.fetch_pinned(ctx, lpkg)
            self.assertFalse(ctx.artifact_path("fd", "10.1.0", "fd.tar.gz").exists())


class _RecordingProvider:
    def __init__(self) -> None:
        self.calls: list[str] = []

    def resolve_and_fetch(self, ctx: Context, pkg: Package) -> LockedPackage:
        self.calls.append(f"resolve:{pkg.name}")
        return LockedPackage(name=pkg.name, version="1.0.0", source=pkg.source, filename="tool")

    def fetch_pinned(self, ctx: Context, lpkg: LockedPackage) -> None:
        self.calls.append(f"pinned:{lpkg.name}")


class TestProviderRegistry(unittest.TestCase):
    def test_dispatches_on_source_type(self) -> None:
        fake = _RecordingProvider()
        registry = ProviderRegistry()
        registry.register(GitHubSource, fake)
        with tempfile.TemporaryDirectory() as td:
            ctx = _ctx(Path(td))
            pkg = Package(name="fd", source=GitHubSource(repo="sharkdp/fd"))
            lpkg = registry.resolve_and_fetch(ctx, pkg)
            registry.fetch_pinned(ctx, lpkg)
        self.assertEqual(fake.calls, ["resolve:fd", "pinned:fd"])

    def test_unregistered_source_type(self) -> None:
        registry = ProviderRegistry()
        with self.assertRaises(RpkError):
            registry.provider_for(GitHubSource(repo="sharkdp/fd"))
