import asyncio
import logging
import os
import sys
import tempfile
from dataclasses import replace
from pathlib import Path

import httpx
import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# keep logs and the default store out of the real user data dir
os.environ.setdefault("SAFEWORK_DATA_DIR", tempfile.mkdtemp(prefix="safework-tests-"))

from core.settings import SYNC  # noqa: E402
from services.api_client import RemoteApi  # noqa: E402
from services.connectivity import NetworkState  # noqa: E402
from services.sync_service import OfflineSyncService  # noqa: E402
from storage.db import DurableStore  # noqa: E402


BASE_URL = "http://safework.test"


class FakeRemote:
    """In-memory stand-in for the SafeWork Pro API.

    ``fail_paths`` maps a request path to the number of times it should still
    answer 500; ``gate`` (when set) blocks every request until released.
    """

    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.requests: list[httpx.Request] = []
        self.fail_paths: dict[str, int] = {}
        self.fail_all = False
        self.gate: asyncio.Event | None = None

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append((request.method, request.url.path))
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        remaining = self.fail_paths.get(request.url.path, 0)
        if self.fail_all or remaining:
            if remaining:
                self.fail_paths[request.url.path] = remaining - 1
            return httpx.Response(500, json={"error": "boom"})
        return httpx.Response(200, json={"ok": True})

    def paths(self) -> list[str]:
        return [path for _, path in self.calls]


@pytest.fixture()
def store(tmp_path):
    store = DurableStore(tmp_path / "offline.db")
    store.initialize()
    yield store
    store.close()


@pytest.fixture()
def remote():
    return FakeRemote()


@pytest.fixture()
def network():
    return NetworkState(online=False)


@pytest.fixture()
def make_service(store, remote, network):
    def factory(**overrides) -> OfflineSyncService:
        client = httpx.AsyncClient(
            base_url=BASE_URL,
            transport=httpx.MockTransport(remote.handler),
        )
        api = RemoteApi(BASE_URL, client=client)
        settings = replace(SYNC, **overrides) if overrides else SYNC
        return OfflineSyncService(
            store,
            api,
            network,
            settings=settings,
            logger=logging.getLogger("tests.sync"),
        )

    return factory
