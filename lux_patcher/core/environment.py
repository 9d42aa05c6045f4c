"""Environment discovery and patch server setup.

Resolution runs in three steps:

1. ``GET {cfg_url}/UniverseConfig.svc/xml/EnvironmentInfo?environment={env}``
   lists the universes (servers) of an environment, each with a ``CdnInfo``
   naming the patch server host and directory.
2. The patch server base is ``http(s)://{PatcherUrl}/{PatcherDir}/``;
   ``patcher.ini`` in that directory configures the client.
3. The version file (``version.txt``) is a manifest of meta files. When it
   lists the index file (``index.txt``), that file is downloaded as an sd0
   payload and becomes the desired manifest.
"""

from __future__ import annotations

import time
import xml.etree.ElementTree as ET
from urllib.parse import urlencode

import httpx
import structlog
from pydantic import BaseModel, Field

from lux_patcher.core.config import FetchConfig
from lux_patcher.core.errors import FetchError, IntegrityError, NotFoundError
from lux_patcher.core.integrity import verify_content
from lux_patcher.core.retry import RetryPolicy
from lux_patcher.core.types import EnvironmentDescriptor, FileEntry, Manifest
from lux_patcher.formats.manifest import load_manifest
from lux_patcher.formats.patcher_ini import PatcherConfig, parse_patcher_ini
from lux_patcher.formats.sd0 import decompress_sd0

logger = structlog.get_logger()

ENVIRONMENT_INFO_PATH = "UniverseConfig.svc/xml/EnvironmentInfo"
PATCHER_INI = "patcher.ini"


class ServerInfo(BaseModel):
    """One universe listed in the environment info."""

    name: str = Field(..., description="Universe name")
    patcher_url: str = Field(..., description="Patch server host (and optional path)")
    patcher_dir: str = Field(..., description="Directory on the patch server")
    secure: bool = Field(default=False, description="Use https")

    @property
    def patcher_base_url(self) -> str:
        scheme = "https" if self.secure else "http"
        host = self.patcher_url.strip("/")
        directory = self.patcher_dir.strip("/")
        return f"{scheme}://{host}/{directory}/" if directory else f"{scheme}://{host}/"


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child(element: ET.Element, name: str) -> ET.Element | None:
    for child in element:
        if _local_name(child.tag).lower() == name.lower():
            return child
    return None


def _value(element: ET.Element, name: str) -> str | None:
    """Value of a child element or attribute, matched case-insensitively."""
    child = _child(element, name)
    if child is not None:
        return (child.text or "").strip()
    for key, value in element.attrib.items():
        if _local_name(key).lower() == name.lower():
            return value.strip()
    return None


def parse_environment_info(data: bytes | str) -> list[ServerInfo]:
    """Parse an EnvironmentInfo document.

    Args:
        data: XML document

    Returns:
        Servers in document order

    Raises:
        ValueError: If the document is not XML or a server lacks CdnInfo
    """
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        raise ValueError(f"Invalid environment info XML: {e}") from e

    servers: list[ServerInfo] = []
    for element in root.iter():
        if _local_name(element.tag) != "Server":
            continue

        name = _value(element, "Name") or ""
        cdn = _child(element, "CdnInfo")
        if cdn is None:
            raise ValueError(f"Server {name!r} has no CdnInfo")

        patcher_url = _value(cdn, "PatcherUrl")
        if not patcher_url:
            raise ValueError(f"Server {name!r} has no PatcherUrl")

        servers.append(
            ServerInfo(
                name=name,
                patcher_url=patcher_url,
                patcher_dir=_value(cdn, "PatcherDir") or "",
                secure=(_value(cdn, "Secure") or "").lower() in ("true", "1", "yes"),
            )
        )

    logger.debug("environment_info_parsed", servers=len(servers))
    return servers


def select_server(servers: list[ServerInfo], name: str | None = None) -> ServerInfo:
    """Pick a server by name (case-insensitive), or the first one.

    Raises:
        NotFoundError: If there are no servers or the name is unknown
    """
    if not servers:
        raise NotFoundError("Environment lists no servers")
    if name is None:
        return servers[0]
    for server in servers:
        if server.name.lower() == name.lower():
            return server
    available = ", ".join(s.name for s in servers)
    raise NotFoundError(f"Server {name!r} not found (available: {available})")


class EnvironmentResolver:
    """Resolves an environment name to a patch server and its manifests.

    Args:
        cfg_url: Base URL of the universe configuration service
        config: Fetch configuration
        client: Optional pre-built HTTP client
    """

    def __init__(
        self,
        cfg_url: str,
        config: FetchConfig | None = None,
        client: httpx.Client | None = None,
    ):
        self.cfg_url = cfg_url if cfg_url.endswith("/") else cfg_url + "/"
        self.config = config or FetchConfig()
        self.retry_policy = RetryPolicy.from_config(self.config)
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.Client:
        """Get or create sync HTTP client."""
        if self._client is None:
            self._client = httpx.Client(
                timeout=self.config.timeout,
                verify=self.config.verify_ssl,
                follow_redirects=True,
            )
        return self._client

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
        self._client = None

    def __enter__(self) -> EnvironmentResolver:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def environment_info_url(self, environment: str) -> str:
        return f"{self.cfg_url}{ENVIRONMENT_INFO_PATH}?{urlencode({'environment': environment})}"

    def get_bytes(self, url: str) -> bytes:
        """GET with the same retry rules as the patch fetcher.

        Raises:
            FetchError: On a 4xx response or once retries are exhausted
        """
        policy = self.retry_policy
        last_error = ""
        last_status: int | None = None

        for attempt in range(1, policy.max_attempts + 1):
            try:
                response = self.client.get(url)
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
                last_status = None
            except httpx.HTTPError as e:
                # Decoding errors and redirect loops are not retried
                raise FetchError(
                    f"Fetching {url} failed: {type(e).__name__}: {e}",
                    url=url,
                    attempts=attempt,
                ) from e
            else:
                last_status = response.status_code
                if response.is_success:
                    return response.content
                last_error = f"HTTP {response.status_code}"
                if response.status_code < 500:
                    raise FetchError(
                        f"Fetching {url} failed: {last_error}",
                        url=url,
                        attempts=attempt,
                        status_code=last_status,
                    )

            if not policy.should_retry(attempt):
                break
            delay = policy.delay(attempt)
            logger.debug("fetch_retry", url=url, attempt=attempt, wait=delay, error=last_error)
            time.sleep(delay)

        raise FetchError(
            f"Fetching {url} failed after {policy.max_attempts} attempts: {last_error}",
            url=url,
            attempts=policy.max_attempts,
            status_code=last_status,
        )

    def list_servers(self, environment: str) -> list[ServerInfo]:
        """Fetch and parse the environment info."""
        url = self.environment_info_url(environment)
        logger.info("environment_info_fetch", environment=environment, url=url)
        servers = parse_environment_info(self.get_bytes(url))
        logger.info("environment_servers_found", environment=environment, count=len(servers))
        return servers

    def fetch_patcher_config(self, base_url: str) -> PatcherConfig:
        """Download and parse ``patcher.ini`` from a patch server directory."""
        data = self.get_bytes(base_url + PATCHER_INI)
        return parse_patcher_ini(data)

    def resolve(
        self, environment: str, server: str | None = None
    ) -> tuple[EnvironmentDescriptor, PatcherConfig]:
        """Resolve an environment to a descriptor and its patcher config.

        Args:
            environment: Environment name (e.g. ``live``)
            server: Universe name; the first listed server when None

        Returns:
            Environment descriptor and patcher configuration

        Raises:
            FetchError: If a request fails
            NotFoundError: If the server cannot be found
            ValueError: If a response is malformed
        """
        selected = select_server(self.list_servers(environment), server)
        base_url = selected.patcher_base_url
        patcher_config = self.fetch_patcher_config(base_url)

        descriptor = EnvironmentDescriptor(
            name=environment,
            patch_server_base_url=base_url,
            manifest_url=base_url + patcher_config.versionfile,
            server_name=selected.name,
        )
        logger.info(
            "environment_resolved",
            environment=environment,
            server=selected.name,
            base_url=base_url,
        )
        return descriptor, patcher_config


class ManifestSource:
    """Downloads the desired manifest for a resolved environment.

    Args:
        resolver: Resolver whose HTTP client and retry policy are reused
        patcher_config: Patch server configuration
    """

    def __init__(self, resolver: EnvironmentResolver, patcher_config: PatcherConfig):
        self.resolver = resolver
        self.patcher_config = patcher_config

    def fetch_version_manifest(self, descriptor: EnvironmentDescriptor) -> Manifest:
        return load_manifest(self.resolver.get_bytes(descriptor.manifest_url))

    def fetch_payload(self, base_url: str, entry: FileEntry) -> bytes:
        """Download an sd0 payload listed in a manifest and verify it.

        Raises:
            IntegrityError: If the payload is corrupt or does not match
        """
        h = entry.hash
        payload = self.resolver.get_bytes(f"{base_url}{h[0]}/{h[1]}/{h}.sd0")
        try:
            content = decompress_sd0(payload)
        except ValueError as e:
            raise IntegrityError(f"Corrupt payload for {entry.path}: {e}", path=entry.path) from e
        verify_content(content, entry.hash, entry.size, path=entry.path)
        return content

    def fetch_desired(self, descriptor: EnvironmentDescriptor) -> Manifest:
        """Fetch the manifest describing the full installation.

        Returns:
            The index manifest when the version file lists one, otherwise
            the version manifest itself
        """
        versions = self.fetch_version_manifest(descriptor)
        index_entry = versions.get(self.patcher_config.indexfile)
        if index_entry is None:
            logger.info("index_not_listed", indexfile=self.patcher_config.indexfile)
            return versions

        logger.info("index_fetch", indexfile=index_entry.path, hash=index_entry.hash)
        data = self.fetch_payload(descriptor.patch_server_base_url, index_entry)
        return load_manifest(data)
