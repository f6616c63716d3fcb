"""
Pytest configuration and shared fixtures for all tests.
"""

import sys
from pathlib import Path

import httpx
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from backend_location.backends.base import Backend, FileInfo, FileType, Handle
from backend_location.exceptions import ObjectNotFoundError


class MemoryBackend(Backend):
    """In-memory backend used as a stand-in for real storage."""

    scheme = "memory"

    def __init__(self):
        self.files = {}
        self.closed = False

    @property
    def location(self):
        return "memory"

    @property
    def connections(self):
        return 1

    def save(self, h, data):
        self.files[(h.type, h.name)] = bytes(data)

    def load(self, h, length=0, offset=0):
        try:
            data = self.files[(h.type, h.name)]
        except KeyError:
            raise ObjectNotFoundError(str(h)) from None
        data = data[offset:]
        return data[:length] if length > 0 else data

    def stat(self, h):
        return FileInfo(name=h.name, size=len(self.load(h)))

    def list(self, t):
        for (ft, name), data in sorted(self.files.items(), key=lambda item: item[0][1]):
            if ft is t:
                yield FileInfo(name=name or "config", size=len(data))

    def remove(self, h):
        if self.files.pop((h.type, h.name), None) is None:
            raise ObjectNotFoundError(str(h))

    def close(self):
        self.closed = True


class RecordingTransport(httpx.BaseTransport):
    """Transport double that records requests and answers from a handler."""

    def __init__(self, handler=None):
        self.requests = []
        self.handler = handler or (lambda request: httpx.Response(200, content=b""))
        self.closed = False

    def handle_request(self, request):
        request.read()
        self.requests.append(request)
        return self.handler(request)

    def close(self):
        self.closed = True


@pytest.fixture
def memory_backend():
    """An empty in-memory backend."""
    return MemoryBackend()


@pytest.fixture
def recording_transport():
    """A transport that answers every request with an empty 200 response."""
    return RecordingTransport()


@pytest.fixture
def empty_environ():
    """An environment without any credentials."""
    return {}


@pytest.fixture
def sample_data():
    """Sample binary data for testing."""
    return b"This is sample repository data for backend testing."


@pytest.fixture
def data_handle():
    """A handle for a data file."""
    return Handle(FileType.DATA, "0123456789abcdef")
