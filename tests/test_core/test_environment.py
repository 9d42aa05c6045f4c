"""Tests for lux_patcher.core.environment module."""

import hashlib

import httpx
import pytest

from lux_patcher.core.config import FetchConfig
from lux_patcher.core.environment import (
    EnvironmentResolver,
    ManifestSource,
    ServerInfo,
    parse_environment_info,
    select_server,
)
from lux_patcher.core.errors import FetchError, IntegrityError, NotFoundError
from lux_patcher.formats.patcher_ini import PatcherConfig
from lux_patcher.formats.sd0 import compress_sd0

CFG_URL = "http://config.test/"

ENVIRONMENT_XML = b"""<?xml version="1.0" encoding="utf-8"?>
<EnvironmentInfo xmlns="http://schemas.example.com/universe">
  <Servers>
    <Server>
      <Name>Starbase 3001</Name>
      <CdnInfo>
        <Secure>false</Secure>
        <PatcherUrl>patcher.test</PatcherUrl>
        <PatcherDir>luclient</PatcherDir>
      </CdnInfo>
    </Server>
    <Server Name="Nimbus">
      <CdnInfo Secure="true" PatcherUrl="secure.test" PatcherDir="/lu/" />
    </Server>
  </Servers>
</EnvironmentInfo>
"""

PATCHER_INI = b"""# patcher config
versionfile=version.txt
indexfile=index.txt
"""


def md5(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def no_wait_config() -> FetchConfig:
    return FetchConfig(base_backoff=0, max_backoff=0)


class TestParseEnvironmentInfo:
    """Test environment info XML parsing."""

    def test_elements_and_attributes(self):
        """Test values given as child elements or attributes."""
        servers = parse_environment_info(ENVIRONMENT_XML)

        assert [s.name for s in servers] == ["Starbase 3001", "Nimbus"]
        assert servers[0] == ServerInfo(
            name="Starbase 3001", patcher_url="patcher.test", patcher_dir="luclient", secure=False
        )
        assert servers[1].secure is True

    def test_patcher_base_url(self):
        """Test scheme and slashes in the base URL."""
        servers = parse_environment_info(ENVIRONMENT_XML)
        assert servers[0].patcher_base_url == "http://patcher.test/luclient/"
        assert servers[1].patcher_base_url == "https://secure.test/lu/"

    def test_invalid_xml(self):
        """Test malformed XML is rejected."""
        with pytest.raises(ValueError, match="Invalid environment info"):
            parse_environment_info(b"<not closed")

    def test_missing_cdn_info(self):
        """Test servers without CdnInfo are rejected."""
        with pytest.raises(ValueError, match="no CdnInfo"):
            parse_environment_info(b"<Env><Servers><Server><Name>x</Name></Server></Servers></Env>")

    def test_no_servers(self):
        """Test an empty list parses."""
        assert parse_environment_info(b"<Env><Servers/></Env>") == []


class TestSelectServer:
    """Test server selection."""

    def test_default_first(self):
        """Test the first server is the default."""
        servers = parse_environment_info(ENVIRONMENT_XML)
        assert select_server(servers).name == "Starbase 3001"

    def test_by_name_case_insensitive(self):
        """Test servers are matched by name ignoring case."""
        servers = parse_environment_info(ENVIRONMENT_XML)
        assert select_server(servers, "nimbus").name == "Nimbus"

    def test_unknown(self):
        """Test unknown names and empty lists raise NotFoundError."""
        servers = parse_environment_info(ENVIRONMENT_XML)
        with pytest.raises(NotFoundError, match="available"):
            select_server(servers, "Moonbase")
        with pytest.raises(NotFoundError):
            select_server([])


class TestEnvironmentResolver:
    """Test environment resolution over HTTP."""

    def make_resolver(self, server) -> EnvironmentResolver:
        return EnvironmentResolver(CFG_URL, no_wait_config(), client=server.client())

    def test_environment_info_url(self, server):
        """Test the environment is passed as a query parameter."""
        resolver = self.make_resolver(server)
        assert resolver.environment_info_url("live") == (
            "http://config.test/UniverseConfig.svc/xml/EnvironmentInfo?environment=live"
        )

    def test_resolve(self, server):
        """Test resolution yields the descriptor and patcher config."""
        server.add(f"{CFG_URL}UniverseConfig.svc/xml/EnvironmentInfo?environment=live", ENVIRONMENT_XML)
        server.add("http://patcher.test/luclient/patcher.ini", PATCHER_INI)

        with self.make_resolver(server) as resolver:
            descriptor, patcher_config = resolver.resolve("live")

        assert descriptor.name == "live"
        assert descriptor.server_name == "Starbase 3001"
        assert descriptor.patch_server_base_url == "http://patcher.test/luclient/"
        assert descriptor.manifest_url == "http://patcher.test/luclient/version.txt"
        assert patcher_config.indexfile == "index.txt"

    def test_environment_not_found(self, server):
        """Test a 404 from the config service is a FetchError."""
        with pytest.raises(FetchError) as exc_info:
            self.make_resolver(server).resolve("missing")
        assert exc_info.value.status_code == 404

    def test_server_errors_retried(self, server):
        """Test 5xx responses are retried before giving up."""
        url = f"{CFG_URL}UniverseConfig.svc/xml/EnvironmentInfo?environment=live"
        server.add(url, lambda request: httpx.Response(503))

        with pytest.raises(FetchError) as exc_info:
            self.make_resolver(server).list_servers("live")

        assert exc_info.value.attempts == 3
        assert server.count(url) == 3

    def test_undecodable_body(self, server):
        """Test a corrupt content encoding is a FetchError."""
        url = f"{CFG_URL}UniverseConfig.svc/xml/EnvironmentInfo?environment=live"
        server.add_undecodable(url)

        with pytest.raises(FetchError) as exc_info:
            self.make_resolver(server).list_servers("live")

        assert exc_info.value.attempts == 1
        assert server.count(url) == 1


class TestManifestSource:
    """Test desired manifest download."""

    base = "http://patcher.test/luclient/"

    def setup_descriptor(self, server):
        server.add(f"{CFG_URL}UniverseConfig.svc/xml/EnvironmentInfo?environment=live", ENVIRONMENT_XML)
        server.add(self.base + "patcher.ini", PATCHER_INI)
        resolver = EnvironmentResolver(CFG_URL, no_wait_config(), client=server.client())
        descriptor, patcher_config = resolver.resolve("live")
        return resolver, descriptor, patcher_config

    def test_index_manifest(self, server):
        """Test the index listed in the version file becomes the desired manifest."""
        index = b"[version]\n42,trunk\n[files]\nclient/legouniverse.exe,4,%s\n" % md5(b"exe!").encode()
        version = b"[version]\n42,version\n[files]\nindex.txt,%d,%s\n" % (len(index), md5(index).encode())
        server.add(self.base + "version.txt", version)
        h = md5(index)
        server.add(f"{self.base}{h[0]}/{h[1]}/{h}.sd0", compress_sd0(index))
        resolver, descriptor, patcher_config = self.setup_descriptor(server)

        desired = ManifestSource(resolver, patcher_config).fetch_desired(descriptor)

        assert desired.version == "42"
        assert desired.name == "trunk"
        assert list(desired.keys()) == ["client/legouniverse.exe"]

    def test_version_manifest_without_index(self, server):
        """Test the version manifest is used when no index is listed."""
        version = b"[version]\n7,version\n[files]\nclient/a.dat,1,%s\n" % md5(b"a").encode()
        server.add(self.base + "version.txt", version)
        resolver, descriptor, patcher_config = self.setup_descriptor(server)

        desired = ManifestSource(resolver, patcher_config).fetch_desired(descriptor)

        assert list(desired.keys()) == ["client/a.dat"]

    def test_corrupt_index(self, server):
        """Test a corrupt index payload is an integrity failure."""
        index = b"[version]\n1,trunk\n[files]\n"
        version = b"[version]\n1,version\n[files]\nindex.txt,%d,%s\n" % (len(index), md5(index).encode())
        server.add(self.base + "version.txt", version)
        h = md5(index)
        server.add(f"{self.base}{h[0]}/{h[1]}/{h}.sd0", b"garbage")
        resolver, descriptor, patcher_config = self.setup_descriptor(server)

        with pytest.raises(IntegrityError):
            ManifestSource(resolver, patcher_config).fetch_desired(descriptor)

    def test_custom_index_name(self, server):
        """Test the index file name comes from patcher.ini."""
        version = b"[version]\n1,version\n[files]\n"
        server.add(self.base + "version.txt", version)
        resolver, descriptor, _ = self.setup_descriptor(server)

        source = ManifestSource(resolver, PatcherConfig(indexfile="other.txt"))
        assert len(source.fetch_desired(descriptor)) == 0
