from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Union

from .client import RpkError


class ConfigError(RpkError):
    pass


@dataclass(frozen=True)
class GitHubSource:
    tag: ClassVar[str] = "github"

    repo: str

    @property
    def owner(self) -> str:
        return self.repo.split("/", 1)[0]

    @property
    def name(self) -> str:
        return self.repo.split("/", 1)[1]

    def __str__(self) -> str:
        return f"github.com:{self.repo}"

    def to_dict(self) -> dict[str, Any]:
        return {"source": self.tag, "repo": self.repo}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "GitHubSource":
        repo = raw.get("repo")
        if not isinstance(repo, str):
            raise ConfigError("missing field `repo`")
        return cls(repo=parse_repo(repo))


# One variant today; new hosting services are added here and in SOURCE_TYPES.
Source = Union[GitHubSource]

SOURCE_TYPES: dict[str, type[GitHubSource]] = {GitHubSource.tag: GitHubSource}
DEFAULT_SOURCE_TAG = GitHubSource.tag


def parse_repo(value: str) -> str:
    raw = value.strip()
    owner, sep, name = raw.partition("/")
    owner = owner.strip()
    name = name.strip()
    if not sep or not owner or not name or "/" in name:
        raise ConfigError(f"invalid repo {value!r}, should be: 'owner/repo'")
    return f"{owner}/{name}"


def source_from_dict(raw: dict[str, Any]) -> Source:
    tag = raw.get("source", DEFAULT_SOURCE_TAG)
    if not isinstance(tag, str):
        raise ConfigError(f"invalid `source` value: {tag!r}")
    source_cls = SOURCE_TYPES.get(tag)
    if source_cls is None:
        expected = ", ".join(f"`{t}`" for t in sorted(SOURCE_TYPES))
        raise ConfigError(f"unknown source `{tag}`, expected one of {expected}")
    return source_cls.from_dict(raw)


def _optional_str(raw: dict[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"invalid `{key}` value: {value!r}")
    return value.strip() or None


@dataclass(frozen=True)
class Package:
    name: str
    source: Source
    version: str | None = None
    desc: str | None = None

    def __str__(self) -> str:
        return f"{self.name}@{self.version or 'latest'} from {self.source}"

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = dict(self.source.to_dict())
        if self.version is not None:
            out["version"] = self.version
        if self.desc is not None:
            out["desc"] = self.desc
        return out

    @classmethod
    def from_dict(cls, name: str, raw: Any) -> "Package":
        if not isinstance(raw, dict):
            raise ConfigError(f"package `{name}` must be a table of fields")
        try:
            source = source_from_dict(raw)
            return cls(
                name=name,
                source=source,
                version=_optional_str(raw, "version"),
                desc=_optional_str(raw, "desc"),
            )
        except ConfigError as e:
            raise ConfigError(f"invalid package `{name}`") from e


@dataclass(frozen=True)
class LockedPackage:
    name: str
    version: str
    source: Source
    filename: str
    desc: str | None = None
    download_url: str | None = None

    def __str__(self) -> str:
        return f"{self.name}@{self.version}"

    def to_package(self) -> Package:
        return Package(name=self.name, source=self.source, version=self.version, desc=self.desc)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "version": self.version}
        out.update(self.source.to_dict())
        out["desc"] = self.desc
        out["filename"] = self.filename
        out["download_url"] = self.download_url
        return out

    @classmethod
    def from_dict(cls, raw: Any) -> "LockedPackage":
        if not isinstance(raw, dict):
            raise ConfigError("locked package entry must be a table of fields")
        name = raw.get("name")
        version = raw.get("version")
        filename = raw.get("filename")
        for key, value in (("name", name), ("version", version), ("filename", filename)):
            if not isinstance(value, str) or not value.strip():
                raise ConfigError(f"locked package is missing field `{key}`")
        return cls(
            name=name.strip(),
            version=version.strip(),
            source=source_from_dict(raw),
            filename=filename.strip(),
            desc=_optional_str(raw, "desc"),
            download_url=_optional_str(raw, "download_url"),
        )
