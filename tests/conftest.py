import asyncio
import inspect
import json
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable, List, Optional

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="stepchain_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SETTINGS_ENCRYPTION_KEY", "test-settings-key-do-not-use-in-production")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from stepchain.service.credentials import CredentialCache  # noqa: E402
from stepchain.service.memory import ConversationMemory  # noqa: E402
from stepchain.service.relay import ProxyRelay  # noqa: E402
from stepchain.service.runtime import reset_runtime_for_tests  # noqa: E402
from stepchain.service.steps import StepStateMachine  # noqa: E402
from stepchain.service.workflow import WorkflowService  # noqa: E402
from stepchain.storage.memory import MemoryStore  # noqa: E402

PROVIDER_KEY_ENV = ("OPENAI_API_KEY", "GOOGLE_API_KEY", "ANTHROPIC_API_KEY")


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    """Give every test its own state directory and a fresh runtime."""
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    for name in PROVIDER_KEY_ENV:
        monkeypatch.delenv(name, raising=False)
    reset_runtime_for_tests()
    yield


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


# ----------------------------------------------------------------------------
# Upstream provider stub
# ----------------------------------------------------------------------------


def sse_event(payload: Any) -> bytes:
    return f"data: {json.dumps(payload)}\n\n".encode()


def openai_chunk(text: str) -> bytes:
    return sse_event({"choices": [{"delta": {"content": text}}]})


def openai_message(text: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": text}}]}


class UpstreamStub:
    """Scripted upstream for ``httpx.MockTransport``.

    Responses are consumed in order; each recorded request keeps its URL,
    headers and decoded JSON body.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self._script: List[Callable[[httpx.Request], httpx.Response]] = []

    @property
    def bodies(self) -> List[dict]:
        return [json.loads(r.content) for r in self.requests]

    def stream(self, chunks: List[bytes], status: int = 200, *, fail_after: Optional[Exception] = None):
        async def body():
            for chunk in chunks:
                yield chunk
            if fail_after is not None:
                raise fail_after

        self._script.append(lambda request: httpx.Response(status, content=body()))
        return self

    def json(self, payload: Any, status: int = 200):
        self._script.append(lambda request: httpx.Response(status, json=payload))
        return self

    def fail(self, message: str = "connection refused"):
        def raise_error(request):
            raise httpx.ConnectError(message, request=request)

        self._script.append(raise_error)
        return self

    def respond(self, build: Callable[[httpx.Request], httpx.Response]):
        self._script.append(build)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self._script:
            return httpx.Response(500, json={"error": "no scripted response"})
        return self._script.pop(0)(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def upstream():
    return UpstreamStub()


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"), encryption_key="unit-test-key")


@pytest.fixture
def credentials(memory_store):
    memory_store.set_api_keys(
        {
            "openai_api_key": "sk-openai-test",
            "google_api_key": "google-test-key",
            "anthropic_api_key": "sk-ant-test",
        }
    )
    return CredentialCache(memory_store, ttl_seconds=300)


@pytest.fixture
def relay(credentials, memory_store, upstream):
    return ProxyRelay(credentials, memory_store, transport=upstream.transport)


@pytest.fixture
def workflows(memory_store):
    return WorkflowService(memory_store)


def build_machine(relay, memory_store, window_size: int = 2, **kwargs) -> StepStateMachine:
    return StepStateMachine(
        memory_store, relay, ConversationMemory(relay, window_size=window_size), **kwargs
    )


@pytest.fixture
def machine(relay, memory_store):
    return build_machine(relay, memory_store)


def make_template(step_count: int = 4, model: str = "OpenAI__gpt-4o", **config) -> dict:
    return {
        "name": "Blog post",
        "config": {
            "model": model,
            "globalInstruction": config.pop("globalInstruction", "Be concise."),
            "steps": [
                {"name": f"Step {i + 1}", "prompt": f"Prompt {i + 1}"}
                for i in range(step_count)
            ],
            **config,
        },
    }
