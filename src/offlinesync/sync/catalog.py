"""Catalog adapters.

This module provides:
- CatalogAdapter: Protocol the engine depends on ("list items", "open item")
- ContentStream: Readable stream of one item, possibly starting mid-file
- DirectoryCatalogAdapter: Catalog backed by a mounted directory
- HttpCatalogAdapter: Catalog backed by a JSON listing served over HTTP
- protect_catalog: Wraps a remote catalog call in its circuit breaker
- create_adapter: Factory from source settings (kind, location, ...)

The engine never imports a concrete adapter type outside create_adapter;
anything providing ``name``, ``supports_resume``, ``list_items()`` and
``open(item, offset)`` can act as a catalog.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any, BinaryIO, Protocol, runtime_checkable
from urllib.parse import urljoin

import httpx

from offlinesync.core.errors import CircuitOpenError, TransferError, ValidationError
from offlinesync.sync.types import CatalogItem

if TYPE_CHECKING:
    from offlinesync.sync.breaker import BreakerRegistry

logger = logging.getLogger(__name__)

# Name of the optional metadata index at the root of a directory catalog
METADATA_FILE = "catalog.json"

# Suffix of in-progress transfers written by this engine
PARTIAL_SUFFIX = ".offlinesync-partial"

DEFAULT_EXCLUDES: tuple[str, ...] = (
    "*.tmp",
    "*.part",
    "*.partial",
    f"*{PARTIAL_SUFFIX}",
    ".DS_Store",
    "Thumbs.db",
    "desktop.ini",
    "@eaDir",
    "#recycle",
    ".Trash-*",
    "lost+found",
    "System Volume Information",
    METADATA_FILE,
)


class ContentStream(ABC):
    """Readable content of one catalog item.

    ``offset`` is the position the stream actually starts at. It equals
    the requested offset when the source honored it, and 0 when the
    source can only send the whole item.
    """

    offset: int = 0

    @abstractmethod
    def iter_chunks(self, chunk_size: int) -> Iterator[bytes]:
        """Yield the remaining content in chunks."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Release the underlying handle."""
        ...

    def __enter__(self) -> ContentStream:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


@runtime_checkable
class CatalogAdapter(Protocol):
    """Capability the engine needs from a content source."""

    @property
    def name(self) -> str:
        """Dependency name (used to key the circuit breaker)."""
        ...

    @property
    def supports_resume(self) -> bool:
        """Whether open() can start at a non-zero offset."""
        ...

    def list_items(self) -> list[CatalogItem]:
        """List the catalog, in a stable order."""
        ...

    def open(self, item: CatalogItem, offset: int = 0) -> ContentStream:
        """Open an item for reading, starting at offset when supported."""
        ...


# === Directory catalog ===


class FileContentStream(ContentStream):
    """Stream over a local file."""

    def __init__(self, path: Path, offset: int = 0) -> None:
        self._file: BinaryIO = open(path, "rb")
        if offset:
            self._file.seek(offset)
        self.offset = offset

    def iter_chunks(self, chunk_size: int) -> Iterator[bytes]:
        for block in iter(lambda: self._file.read(chunk_size), b""):
            yield block

    def close(self) -> None:
        self._file.close()


def _is_excluded(name: str, patterns: Sequence[str]) -> bool:
    return any(fnmatch.fnmatch(name, pattern) for pattern in patterns)


class DirectoryCatalogAdapter:
    """Catalog of the files below a directory (NFS/SMB share or device).

    Item ids are POSIX paths relative to the root, so they double as the
    destination path. Attributes are derived from the layout:

    - ``extension``: lower-case file extension
    - ``category``: first directory component ("" at the root)
    - ``group``: parent directory relative to the root
    - ``modified``: modification time (epoch seconds)

    An optional ``catalog.json`` at the root maps item ids to extra
    attributes (rating, year, genres...) and optional checksums.
    """

    def __init__(
        self,
        root: Path,
        name: str | None = None,
        file_extensions: Sequence[str] = (),
        exclude_patterns: Sequence[str] = DEFAULT_EXCLUDES,
    ) -> None:
        """Initialize the adapter.

        Args:
            root: Directory to catalog.
            name: Dependency name (defaults to "directory:<root>").
            file_extensions: Only include these extensions (with dot).
            exclude_patterns: Glob patterns for names to skip.
        """
        self._root = Path(root)
        self._name = name or f"directory:{self._root}"
        self._extensions = tuple(ext.lower() for ext in file_extensions)
        self._excludes = tuple(exclude_patterns)

    @property
    def name(self) -> str:
        return self._name

    @property
    def supports_resume(self) -> bool:
        return True

    @property
    def root(self) -> Path:
        return self._root

    def _load_metadata(self) -> dict[str, Any]:
        index = self._root / METADATA_FILE
        if not index.is_file():
            return {}
        try:
            data = json.loads(index.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable {index}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring {index}: expected an object keyed by item id")
            return {}
        return data

    def list_items(self) -> list[CatalogItem]:
        """Walk the root and describe every eligible file.

        Raises:
            OSError: If the root cannot be read (classified by the caller).
        """
        if not self._root.is_dir():
            raise FileNotFoundError(f"Catalog root not found: {self._root}")

        metadata = self._load_metadata()
        items: list[CatalogItem] = []
        for dirpath, dirnames, filenames in os.walk(self._root):
            # Sorted in place so the walk order is deterministic
            dirnames[:] = sorted(d for d in dirnames if not _is_excluded(d, self._excludes))
            for filename in sorted(filenames):
                if _is_excluded(filename, self._excludes):
                    continue
                path = Path(dirpath) / filename
                extension = path.suffix.lower()
                if self._extensions and extension not in self._extensions:
                    continue
                try:
                    stat = path.stat()
                except OSError as e:
                    logger.warning(f"Skipping unreadable file {path}: {e}")
                    continue

                rel = path.relative_to(self._root).as_posix()
                parts = rel.split("/")
                attributes: dict[str, Any] = {
                    "extension": extension,
                    "category": parts[0] if len(parts) > 1 else "",
                    "group": "/".join(parts[:-1]),
                    "modified": stat.st_mtime,
                }
                extra = metadata.get(rel, {})
                checksum = None
                display = path.stem
                if isinstance(extra, Mapping):
                    attributes.update(extra.get("attributes", {}))
                    checksum = extra.get("checksum")
                    display = extra.get("name", display)

                items.append(
                    CatalogItem(
                        item_id=rel,
                        name=display,
                        size=stat.st_size,
                        attributes=attributes,
                        address=str(path),
                        checksum=checksum,
                    )
                )

        logger.debug(f"{self._name}: listed {len(items)} items")
        return items

    def open(self, item: CatalogItem, offset: int = 0) -> ContentStream:
        return FileContentStream(Path(item.address), offset)


# === HTTP catalog ===


class HttpContentStream(ContentStream):
    """Stream over an HTTP response, honoring byte ranges when the server does.

    ``guard`` wraps each chunk read (e.g. a mirror's circuit breaker) so a
    connection that dies mid-item counts against the mirror serving it.
    """

    def __init__(
        self,
        client: httpx.Client,
        url: str,
        offset: int = 0,
        guard: Callable[[Callable[[], Any]], Any] | None = None,
    ) -> None:
        headers = {"Range": f"bytes={offset}-"} if offset else {}
        request = client.build_request("GET", url, headers=headers)
        self._guard = guard
        self._response = client.send(request, stream=True)
        try:
            self._response.raise_for_status()
        except httpx.HTTPStatusError:
            self._response.close()
            raise

        if offset and self._response.status_code == 206:
            self.offset = offset
        else:
            if offset:
                logger.info(f"Server ignored range request, restarting: {url}")
            self.offset = 0

    def iter_chunks(self, chunk_size: int) -> Iterator[bytes]:
        chunks = self._response.iter_bytes(chunk_size)
        if self._guard is None:
            yield from chunks
            return
        while True:
            chunk = self._guard(lambda: next(chunks, None))
            if chunk is None:
                return
            yield chunk

    def close(self) -> None:
        self._response.close()


class HttpCatalogAdapter:
    """Catalog served as JSON over HTTP (e.g. an archive mirror).

    The listing is either a JSON array of items or an object with an
    ``items`` array. Each item needs ``id`` (or ``item_id``), ``size`` and
    ``url`` (or ``address``, resolved against the catalog URL); ``name``,
    ``attributes`` and ``checksum`` are optional.

    ``catalog_url`` may be a list of mirrors serving the same listing, in
    priority order. Listing and opening try them in turn, starting with
    the last mirror that answered, and fail over when one errors. Relative
    item URLs are resolved against whichever mirror is used. Given a
    registry, each mirror gets its own breaker (``catalog:<name>:<url>``)
    and an open one is skipped without a request.
    """

    def __init__(
        self,
        catalog_url: str | Sequence[str],
        name: str | None = None,
        client: httpx.Client | None = None,
        timeout: float = 30.0,
        headers: Mapping[str, str] | None = None,
        file_extensions: Sequence[str] = (),
        registry: BreakerRegistry | None = None,
    ) -> None:
        mirrors = [catalog_url] if isinstance(catalog_url, str) else list(catalog_url)
        if not mirrors:
            raise ValueError("At least one catalog URL is required")
        self._mirrors = list(dict.fromkeys(mirrors))
        self._url = self._mirrors[0]
        self._name = name or f"http:{self._url}"
        self._registry = registry
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=timeout,
            headers=dict(headers or {}),
            follow_redirects=True,
        )
        self._extensions = tuple(ext.lower() for ext in file_extensions)
        self._lock = threading.Lock()
        self._preferred = 0
        # item_id -> address as written in the listing
        self._raw_addresses: dict[str, str] = {}

    @property
    def name(self) -> str:
        return self._name

    @property
    def supports_resume(self) -> bool:
        return True

    @property
    def mirrors(self) -> list[str]:
        return list(self._mirrors)

    @property
    def manages_breakers(self) -> bool:
        """Whether this adapter guards its own requests with per-mirror breakers."""
        return self._registry is not None

    def mirror_breaker_name(self, mirror: str) -> str:
        return f"{breaker_name(self)}:{mirror}"

    def close(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._owns_client:
            self._client.close()

    def list_items(self) -> list[CatalogItem]:
        """Fetch and parse the catalog listing from the first mirror that answers.

        Raises:
            httpx.HTTPError: On transport or HTTP status errors (last mirror's).
            CircuitOpenError: If every mirror's breaker is open.
            ValidationError: If the listing is malformed.
        """
        return self._failover(
            [(mirror, mirror) for mirror in self._mirrors],
            lambda mirror, url: self._list_from(mirror),
        )

    def open(self, item: CatalogItem, offset: int = 0) -> ContentStream:
        if not item.address:
            raise TransferError(f"Catalog item has no URL: {item.item_id}")
        raw = self._raw_addresses.get(item.item_id)
        if raw is None:
            candidates = [(self._mirror_of(item.address), item.address)]
        else:
            candidates = [(mirror, urljoin(mirror, raw)) for mirror in self._mirrors]
        return self._failover(
            candidates,
            lambda mirror, url: HttpContentStream(
                self._client, url, offset, guard=self._guard_for(mirror)
            ),
        )

    def _list_from(self, mirror: str) -> list[CatalogItem]:
        response = self._client.get(mirror)
        response.raise_for_status()
        try:
            payload = response.json()
        except json.JSONDecodeError as e:
            raise ValidationError(f"Catalog is not valid JSON: {mirror}") from e

        raw_items = payload.get("items") if isinstance(payload, dict) else payload
        if not isinstance(raw_items, list):
            raise ValidationError(f"Catalog has no item list: {mirror}")

        items: list[CatalogItem] = []
        raw_addresses: dict[str, str] = {}
        for raw in raw_items:
            try:
                item = CatalogItem.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"{self._name}: skipping malformed catalog entry: {e}")
                continue
            if self._extensions and Path(item.item_id).suffix.lower() not in self._extensions:
                continue
            if item.address:
                raw_addresses[item.item_id] = item.address
                item = CatalogItem(
                    item_id=item.item_id,
                    name=item.name,
                    size=item.size,
                    attributes=item.attributes,
                    address=urljoin(mirror, item.address),
                    checksum=item.checksum,
                )
            items.append(item)

        with self._lock:
            self._raw_addresses = raw_addresses
        logger.debug(f"{self._name}: listed {len(items)} items from {mirror}")
        return items

    def _failover(
        self,
        candidates: list[tuple[str, str]],
        attempt: Callable[[str, str], Any],
    ) -> Any:
        """Run attempt(mirror, url) on each candidate until one succeeds.

        Validation errors are the listing's fault, not the mirror's, and
        are raised at once.
        """
        ordered = self._by_preference(candidates)
        last_error: Exception | None = None
        rejected: CircuitOpenError | None = None
        for mirror, url in ordered:
            guard = self._guard_for(mirror)
            try:
                if guard is None:
                    result = attempt(mirror, url)
                else:
                    result = guard(lambda m=mirror, u=url: attempt(m, u))
            except CircuitOpenError as e:
                rejected = rejected or e
                logger.debug(f"{self._name}: skipping {mirror}, circuit open")
                continue
            except ValidationError:
                raise
            except Exception as e:
                last_error = e
                logger.warning(f"{self._name}: mirror {mirror} failed: {e}")
                continue
            self._prefer(mirror)
            return result

        if last_error is not None:
            raise last_error
        raise rejected or TransferError(f"No mirror configured: {self._name}")

    def _guard_for(self, mirror: str) -> Callable[[Callable[[], Any]], Any] | None:
        if self._registry is None:
            return None
        registry = self._registry
        name = self.mirror_breaker_name(mirror)
        return lambda operation: registry.call(name, operation)

    def _by_preference(self, candidates: list[tuple[str, str]]) -> list[tuple[str, str]]:
        with self._lock:
            preferred = self._mirrors[self._preferred]
        seen: set[str] = set()
        ordered = []
        for mirror, url in sorted(candidates, key=lambda c: c[0] != preferred):
            if url not in seen:
                seen.add(url)
                ordered.append((mirror, url))
        return ordered

    def _prefer(self, mirror: str) -> None:
        if mirror in self._mirrors:
            with self._lock:
                self._preferred = self._mirrors.index(mirror)

    def _mirror_of(self, address: str) -> str:
        """Mirror an absolute item address was resolved against (its origin)."""
        origin = httpx.URL(address)
        for mirror in self._mirrors:
            candidate = httpx.URL(mirror)
            if (candidate.scheme, candidate.host, candidate.port) == (
                origin.scheme,
                origin.host,
                origin.port,
            ):
                return mirror
        return self._url


def breaker_name(adapter: CatalogAdapter) -> str:
    """Name of the circuit breaker protecting a catalog."""
    return f"catalog:{adapter.name}"


def protect_catalog(
    registry: BreakerRegistry, adapter: CatalogAdapter, operation: Callable[[], Any]
) -> Callable[[], Any]:
    """Wrap a remote catalog operation in the catalog's breaker.

    Adapters that keep their own per-mirror breakers are left alone, so
    a request is never counted twice.
    """
    if getattr(adapter, "manages_breakers", False):
        return operation
    return registry.wrap(breaker_name(adapter), operation)


def create_adapter(
    kind: str,
    location: str,
    name: str | None = None,
    timeout: float = 30.0,
    headers: Mapping[str, str] | None = None,
    file_extensions: Sequence[str] = (),
    mirrors: Sequence[str] = (),
    registry: BreakerRegistry | None = None,
) -> DirectoryCatalogAdapter | HttpCatalogAdapter:
    """Create a catalog adapter from source settings.

    Args:
        kind: "directory" or "http".
        location: Directory path or catalog URL.
        name: Dependency name.
        timeout: HTTP timeout.
        headers: HTTP headers.
        file_extensions: Extension filter.
        mirrors: Fallback catalog URLs tried after location (http only).
        registry: Breaker registry for per-mirror breakers (http only).

    Raises:
        ValueError: If the kind is unknown.
    """
    if kind == "directory":
        return DirectoryCatalogAdapter(
            Path(location).expanduser(), name=name, file_extensions=file_extensions
        )
    if kind == "http":
        return HttpCatalogAdapter(
            [location, *mirrors],
            name=name,
            timeout=timeout,
            headers=headers,
            file_extensions=file_extensions,
            registry=registry,
        )
    raise ValueError(f"Unknown catalog kind: {kind}")
