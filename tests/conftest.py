"""Pytest configuration and shared fixtures for lux_patcher tests."""

import hashlib
import tempfile
from collections.abc import Callable, Generator
from pathlib import Path

import httpx
import pytest

from lux_patcher.core.retry import RetryPolicy
from lux_patcher.core.types import EnvironmentDescriptor, FileEntry
from lux_patcher.formats.sd0 import compress_sd0

BASE_URL = "http://patcher.test/luclient/"


def _md5(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


class FakePatchServer:
    """In-memory patch server for ``httpx.MockTransport``.

    Routes map URLs to bytes or to callables producing an ``httpx.Response``.
    Every request is recorded.
    """

    base_url = BASE_URL

    def __init__(self) -> None:
        self.routes: dict[str, bytes | Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: list[str] = []

    def full_url(self, data: bytes) -> str:
        """URL of the sd0 payload for ``data``."""
        h = _md5(data)
        return f"{self.base_url}{h[0]}/{h[1]}/{h}.sd0"

    def delta_url(self, old: bytes, new: bytes) -> str:
        f, t = _md5(old), _md5(new)
        return f"{self.base_url}deltas/{t[0]}/{t[1]}/{f}_{t}.zbsdiff"

    def add_file(self, data: bytes) -> str:
        url = self.full_url(data)
        self.routes[url] = compress_sd0(data)
        return url

    def add(self, url: str, body: bytes | Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[url] = body

    def add_undecodable(self, url: str) -> None:
        """Serve a body that claims gzip encoding but is not gzip."""
        self.routes[url] = lambda request: httpx.Response(
            200,
            headers={"Content-Encoding": "gzip"},
            stream=httpx.ByteStream(b"definitely not gzip"),
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        route = self.routes.get(url)
        if route is None:
            return httpx.Response(404)
        if callable(route):
            return route(request)
        return httpx.Response(200, content=route)

    def async_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))

    def count(self, url: str) -> int:
        return self.requests.count(url)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def install_dir(temp_dir: Path) -> Path:
    """Empty installation directory."""
    path = temp_dir / "install"
    path.mkdir()
    return path


@pytest.fixture
def server() -> FakePatchServer:
    """Fresh fake patch server."""
    return FakePatchServer()


@pytest.fixture
def no_wait_policy() -> RetryPolicy:
    """Retry policy that never sleeps."""
    return RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)


@pytest.fixture
def environment() -> EnvironmentDescriptor:
    """Environment pointing at the fake patch server."""
    return EnvironmentDescriptor(
        name="live",
        patch_server_base_url=BASE_URL,
        manifest_url=BASE_URL + "version.txt",
    )


# Pytest configuration
def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest settings."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    """Add the unit marker to every test not marked integration."""
    for item in items:
        if not any(marker.name == "integration" for marker in item.iter_markers()):
            item.add_marker(pytest.mark.unit)


@pytest.fixture
def make_entry() -> Callable[..., FileEntry]:
    """Factory for a FileEntry describing some content at a path."""

    def _make(path: str, data: bytes, **kwargs) -> FileEntry:
        return FileEntry(path=path, size=len(data), hash=_md5(data), **kwargs)

    return _make
