"""Read-through cache of the Service Usage catalog.

Listing every activatable service for a project takes dozens of paginated
requests, so the result is stored as one JSON document per project number
under the user's cache directory:

    <cache root>/<project number>/available-apis.json

The key is the project number rather than the project id because ids can be
reused after a project is deleted, while numbers are unique per project.

Entries are a point-in-time snapshot. There is no TTL: a cached document is
returned as-is until it is deleted (``gproj list-available --refresh``), and
the only update is marking services enabled after this tool enabled them.
Concurrent invocations for the same project may race on the file.
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import CacheCorruptionError, CacheWriteError
from .gcp import ActivationAPI
from .models import CATALOG_ADAPTER, ServiceCatalogEntry

logger = logging.getLogger(__name__)

CACHE_FILENAME = "available-apis.json"

# Service Usage state for an activated service
ENABLED_STATE = "ENABLED"


def first_line(text: str) -> str:
    """Return the first line of ``text``, or all of it if it is one line."""
    return text.split("\n", 1)[0]


def decode_service(raw: dict[str, Any]) -> ServiceCatalogEntry:
    """Convert one Service Usage ``Service`` resource into a catalog entry.

    ``raw["name"]`` is of the form ``projects/123/services/foo.googleapis.com``
    while ``raw["config"]["name"]`` is ``foo.googleapis.com``.
    """
    config = raw.get("config") or {}
    documentation = config.get("documentation") or {}
    name = config.get("name") or raw.get("name", "").rsplit("/", 1)[-1]
    return ServiceCatalogEntry(
        name=name,
        title=config.get("title", ""),
        summary=first_line(documentation.get("summary", "")),
        enabled=raw.get("state") == ENABLED_STATE,
    )


class CatalogCache:
    """Per-project cache of the activatable service catalog."""

    def __init__(self, root: Path, activation: ActivationAPI) -> None:
        self._root = root
        self._activation = activation

    def path_for(self, project_number: int) -> Path:
        return self._root / str(project_number) / CACHE_FILENAME

    def list_services(self, project_number: int) -> list[ServiceCatalogEntry]:
        """Return the catalog for a project, from cache when available.

        Raises:
            CacheCorruptionError: A cached document exists but cannot be decoded.
            RemoteCallError: The live fetch failed.
        """
        path = self.path_for(project_number)

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            # Caching is an optimization: fall back to an uncached fetch
            logger.warning(
                "warning: unable to cache results, error was: %s",
                e,
                extra={"cache_path": str(path)},
            )
            return self.fetch(project_number)

        try:
            cached = path.read_bytes()
        except FileNotFoundError:
            logger.info("fetching available APIs, this may take a minute or two...")
            services = self.fetch(project_number)
            self._store(path, services)
            logger.info("fetched %d APIs and stored at %s", len(services), path)
            return services
        except OSError as e:
            raise CacheCorruptionError(path, str(e)) from e

        return self._decode(path, cached)

    def fetch(self, project_number: int) -> list[ServiceCatalogEntry]:
        """Fetch the full catalog from Service Usage, sorted by name."""
        services: list[ServiceCatalogEntry] = []
        for page in self._activation.list_service_pages(project_number):
            services.extend(decode_service(raw) for raw in page)

        services.sort(key=lambda s: s.name)
        return services

    def mark_enabled(self, project_number: int, names: Iterable[str]) -> None:
        """Record services as enabled in an existing cache document.

        Does nothing when the project has no cached catalog.
        """
        path = self.path_for(project_number)
        if not path.exists():
            return

        wanted = set(names)
        try:
            services = self._decode(path, path.read_bytes())
        except (OSError, CacheCorruptionError) as e:
            # The services are enabled either way; only the cached view is stale
            logger.warning(
                "warning: unable to update cached API listing, error was: %s",
                e,
                extra={"cache_path": str(path)},
            )
            return

        seen = {s.name for s in services}
        updated = [
            s.model_copy(update={"enabled": True}) if s.name in wanted else s for s in services
        ]
        # Services enabled without a catalog entry are recorded too
        updated.extend(ServiceCatalogEntry(name=n, enabled=True) for n in wanted - seen)
        updated.sort(key=lambda s: s.name)
        self._store(path, updated)

    def invalidate(self, project_number: int) -> bool:
        """Delete the cached catalog. Returns True if a document was removed."""
        path = self.path_for(project_number)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info("removed cached API listing at %s", path)
        return True

    def _decode(self, path: Path, data: bytes) -> list[ServiceCatalogEntry]:
        try:
            return CATALOG_ADAPTER.validate_json(data)
        except ValidationError as e:
            raise CacheCorruptionError(path, str(e)) from e

    def _store(self, path: Path, services: list[ServiceCatalogEntry]) -> None:
        """Replace the document atomically via a temporary file in the same directory."""
        tmp_name: str | None = None
        try:
            with tempfile.NamedTemporaryFile(
                dir=path.parent, prefix=f".{path.name}.", delete=False
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(CATALOG_ADAPTER.dump_json(services))
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            warning = CacheWriteError(path, str(e))
            logger.warning("warning: %s", warning, extra={"cache_path": str(path)})
