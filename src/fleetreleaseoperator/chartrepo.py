"""Resolve chart references against chart repositories and keep a local cache
of the fetched chart archives.
"""

from __future__ import annotations

__all__ = (
    "ChartCatalog",
    "ChartFetcher",
    "ChartReference",
    "cache_path",
    "fetch_chart_func",
)

import os
import re
import tempfile
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urljoin

import httpx
import structlog
import yaml
from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version

from fleetreleaseoperator.errors import (
    ChartNotFoundError,
    ChartTransportError,
)

_CONSTRAINT_PREFIXES = ("<", ">", "=", "!", "~", "^")


@dataclass(frozen=True)
class ChartReference:
    """A chart name and version in a chart repository."""

    name: str
    version: str
    repo_url: str

    @classmethod
    def from_spec(cls, chart: dict[str, Any]) -> ChartReference:
        """Build a reference from the ``spec.chart`` field of an
        installation target.
        """
        return cls(
            name=chart["name"],
            version=str(chart["version"]),
            repo_url=chart["repoUrl"],
        )

    def __str__(self) -> str:
        return f"{self.name}@{self.version} ({self.repo_url})"


ChartFetcher = Callable[[ChartReference], bytes]
"""Fetch the archive bytes of a chart, raising
`fleetreleaseoperator.errors.ChartRepoError` subclasses on failure.
"""


def cache_path(cache_dir: Path, ref: ChartReference) -> Path:
    """Path of a chart archive in the local cache."""
    repo_dir = re.sub(r"[^a-zA-Z0-9]+", "_", ref.repo_url)
    return cache_dir / repo_dir / f"{ref.name}-{ref.version}.tgz"


def is_version_constraint(version: str) -> bool:
    return version.strip().startswith(_CONSTRAINT_PREFIXES)


def to_specifier(constraint: str) -> SpecifierSet:
    """Translate a chart version constraint into a `SpecifierSet`.

    Supports comparison operators separated by spaces or commas, and the
    caret (``^1.2.3``: same major version) and tilde (``~1.2.3``: same minor
    version) ranges.
    """
    specifiers = []
    for part in re.split(r"[\s,]+", constraint.strip()):
        if not part:
            continue
        if part.startswith("^"):
            lower = Version(part[1:])
            specifiers.append(f">={lower}")
            specifiers.append(f"<{lower.major + 1}")
        elif part.startswith("~") and not part.startswith("~="):
            lower = Version(part[1:])
            specifiers.append(f">={lower}")
            specifiers.append(f"<{lower.major}.{lower.minor + 1}")
        elif part.startswith("="):
            specifiers.append(f"=={part.lstrip('=')}")
        else:
            specifiers.append(part)
    return SpecifierSet(",".join(specifiers))


class ChartCatalog:
    """Resolve and fetch charts from chart repositories.

    Repository indexes are cached in memory, and chart archives on disk under
    ``cache_dir``.

    Parameters
    ----------
    cache_dir : `pathlib.Path`
        Directory of the local chart archive cache.
    http_client : `httpx.Client`, optional
        HTTP client used to reach repositories.
    logger : optional
        Logger to use. Defaults to a structlog logger.
    """

    def __init__(
        self,
        cache_dir: Path,
        *,
        http_client: httpx.Client | None = None,
        logger: Any | None = None,
    ) -> None:
        self._cache_dir = Path(cache_dir)
        self._http = http_client or httpx.Client(
            timeout=30.0, follow_redirects=True
        )
        self._logger = logger or structlog.getLogger(__name__)
        self._indexes: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def _get(self, url: str) -> bytes:
        try:
            response = self._http.get(url)
        except httpx.HTTPError as err:
            raise ChartTransportError(f"GET {url} failed: {err}") from err
        if response.status_code == 404:
            raise ChartNotFoundError(f"GET {url}: not found")
        if response.is_error:
            raise ChartTransportError(
                f"GET {url} returned {response.status_code}"
            )
        return response.content

    def _load_index(self, repo_url: str) -> dict[str, Any]:
        url = urljoin(repo_url.rstrip("/") + "/", "index.yaml")
        self._logger.debug("Fetching chart repository index", url=url)
        try:
            index = yaml.safe_load(self._get(url))
        except yaml.YAMLError as err:
            raise ChartTransportError(
                f"repository index {url} is not valid YAML: {err}"
            ) from err
        if not isinstance(index, dict):
            raise ChartTransportError(f"repository index {url} is empty")
        return index

    def _index(self, repo_url: str, *, refresh: bool = False) -> dict:
        with self._lock:
            if refresh or repo_url not in self._indexes:
                self._indexes[repo_url] = self._load_index(repo_url)
            return self._indexes[repo_url]

    def _entries(self, ref: ChartReference) -> list[dict[str, Any]]:
        """Index entries of a chart, refreshing the index once on a miss."""
        entries = self._index(ref.repo_url).get("entries") or {}
        if ref.name not in entries:
            entries = (
                self._index(ref.repo_url, refresh=True).get("entries") or {}
            )
        if ref.name not in entries:
            raise ChartNotFoundError(
                f"chart {ref.name!r} not found in {ref.repo_url}"
            )
        return entries[ref.name]

    def _find_entry(self, ref: ChartReference) -> dict[str, Any]:
        for entry in self._entries(ref):
            if str(entry.get("version")) == ref.version:
                return entry
        raise ChartNotFoundError(
            f"chart {ref.name!r} version {ref.version!r} not found in "
            f"{ref.repo_url}"
        )

    def resolve_version(self, ref: ChartReference) -> str:
        """Resolve the version of a chart reference.

        Exact versions are returned as-is when the repository carries them.
        Version constraints resolve to the highest matching version.

        Raises
        ------
        fleetreleaseoperator.errors.ChartNotFoundError
            Raised if no version of the chart matches.
        """
        if not is_version_constraint(ref.version):
            if self._is_cached(cache_path(self._cache_dir, ref)):
                return ref.version
            return str(self._find_entry(ref)["version"])

        try:
            specifier = to_specifier(ref.version)
        except (InvalidSpecifier, InvalidVersion) as err:
            raise ChartNotFoundError(
                f"invalid version constraint {ref.version!r} for chart "
                f"{ref.name!r}"
            ) from err

        candidates = []
        for entry in self._entries(ref):
            try:
                version = Version(str(entry.get("version")))
            except InvalidVersion:
                continue
            if version in specifier:
                candidates.append((version, str(entry["version"])))
        if not candidates:
            raise ChartNotFoundError(
                f"no version of chart {ref.name!r} in {ref.repo_url} "
                f"satisfies {ref.version!r}"
            )
        return max(candidates)[1]

    def fetch(self, ref: ChartReference) -> bytes:
        """Fetch the archive of an exact chart version, from the local cache
        if present.

        Raises
        ------
        fleetreleaseoperator.errors.ChartNotFoundError
            Raised if the repository does not carry the chart version.
        fleetreleaseoperator.errors.ChartTransportError
            Raised if the repository cannot be reached, or if the cache
            cannot be read or written.
        """
        path = cache_path(self._cache_dir, ref)
        if self._is_cached(path):
            self._logger.debug("Chart found in cache", chart=str(ref))
            try:
                return path.read_bytes()
            except OSError as err:
                raise ChartTransportError(
                    f"cannot read cached chart {path}: {err}"
                ) from err

        entry = self._find_entry(ref)
        urls = entry.get("urls") or []
        if not urls:
            raise ChartNotFoundError(
                f"chart {ref.name!r} version {ref.version!r} has no URLs"
            )
        url = urljoin(ref.repo_url.rstrip("/") + "/", urls[0])
        data = self._get(url)
        try:
            self._write_cache(path, data)
        except OSError as err:
            raise ChartTransportError(
                f"cannot write chart cache {path}: {err}"
            ) from err
        self._logger.info("Fetched chart", chart=str(ref), url=url)
        return data

    def _is_cached(self, path: Path) -> bool:
        try:
            return path.exists()
        except OSError as err:
            raise ChartTransportError(
                f"cannot read chart cache {path}: {err}"
            ) from err

    def _write_cache(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise


def fetch_chart_func(catalog: ChartCatalog) -> ChartFetcher:
    """Return a fetcher that resolves a reference's version before fetching
    it from ``catalog``.
    """

    def fetch(ref: ChartReference) -> bytes:
        version = catalog.resolve_version(ref)
        return catalog.fetch(
            ChartReference(
                name=ref.name, version=version, repo_url=ref.repo_url
            )
        )

    return fetch
