import json
import os
import tempfile

# `main` builds a module-level app on import; give it a throwaway database directory.
os.environ.setdefault("DATABASE_DIR", tempfile.mkdtemp(prefix="persona-relay-tests-"))

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from dal.persona_dal import RequestSnapshotDAL, ResultRecordDAL
from main import create_app
from utils.config import AppConfig
from utils.database_init import AsyncDatabaseInitializer

RHEA_TRANSCRIPT = (
    "# Rhea's Profile\n\nRhea is a wandering blacksmith.\n\n"
    "## Personality\nStoic but kind.\n\n"
    "# The Roleplay's Setup\nA mountain forge.\n\n"
    "# First Message\n\nWelcome, traveler."
)


class UpstreamRecorder:
    """Scripted upstream provider for `httpx.MockTransport`.

    Each incoming request is recorded and answered by the next scripted
    response (the last one repeats). A callable entry builds a fresh
    response per request; an exception entry is raised.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests), len(self.responses)) - 1
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        return response() if callable(response) else response


class CountingStream(httpx.AsyncByteStream):
    """Async body that records how often it was closed.

    When `error` is given it is raised after the last chunk, like a
    connection dropped mid-body.
    """

    def __init__(self, chunks, error=None):
        self.chunks = list(chunks)
        self.error = error
        self.close_count = 0

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error

    async def aclose(self):
        self.close_count += 1


def sse_body(*deltas: str) -> bytes:
    """Encode chat completion deltas as an event stream."""
    frames = []
    for delta in deltas:
        chunk = {
            "id": "chatcmpl-1",
            "object": "chat.completion.chunk",
            "created": 1700000000,
            "model": "test-model",
            "choices": [{"index": 0, "delta": {"content": delta}, "finish_reason": None}],
        }
        frames.append(f"data: {json.dumps(chunk)}\n\n")
    frames.append("data: [DONE]\n\n")
    return "".join(frames).encode("utf-8")


@pytest.fixture
def db_initializer(tmp_path):
    return AsyncDatabaseInitializer(tmp_path)


@pytest.fixture
def request_dal(db_initializer):
    return RequestSnapshotDAL(db_initializer)


@pytest.fixture
def result_dal(db_initializer):
    return ResultRecordDAL(db_initializer)


@pytest.fixture
def upstream():
    return UpstreamRecorder(lambda: httpx.Response(200, json={"ok": True}))


@pytest_asyncio.fixture
async def upstream_client(upstream):
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as client:
        yield client


@pytest.fixture
def app(tmp_path, upstream_client):
    config = AppConfig(database_dir=tmp_path)
    return create_app(config, http_client=upstream_client)


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
