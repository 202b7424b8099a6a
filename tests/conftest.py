"""Pytest configuration and fixtures for the devicehub tests."""

import os

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("JWT_SECRET", "test-secret-" + "x" * 40)
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ENABLE_PROMETHEUS_METRICS", "false")

from dataclasses import dataclass, field  # noqa: E402
from typing import Dict, List, Tuple  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from devicehub.core.config import Settings, get_settings  # noqa: E402
from devicehub.main import create_app  # noqa: E402
from devicehub.services.flash import FlashWorkflow  # noqa: E402
from devicehub.services.process_runner import ProcessExitError  # noqa: E402

get_settings.cache_clear()

PASSWORD = "correct-horse-42"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class FakeRunner:
    """Records invocations instead of spawning the build tool."""

    available: bool = True
    failures: Dict[str, ProcessExitError] = field(default_factory=dict)
    calls: List[Tuple[str, List[str]]] = field(default_factory=list)
    probes: int = 0

    async def probe(self, executable: str, *, timeout_ms: int | None = None) -> bool:
        self.probes += 1
        return self.available

    async def run(self, executable: str, args, **_: object) -> bytes:
        self.calls.append((executable, list(args)))
        failure = self.failures.get(args[0])
        if failure is not None:
            raise failure
        return b"ok\n"

    def fail(self, phase: str, *, timed_out: bool = False, exit_code: int | None = 1) -> None:
        self.failures[phase] = ProcessExitError(
            executable="arduino-cli",
            args=[phase],
            timed_out=timed_out,
            exit_code=None if timed_out else exit_code,
            output=b"boom",
        )


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def project_root(tmp_path):
    sketches = tmp_path / "sketches" / "blink"
    sketches.mkdir(parents=True)
    (sketches / "blink.ino").write_text("void setup() {}\nvoid loop() {}\n")
    return tmp_path


@pytest.fixture
def settings(project_root) -> Settings:
    return Settings(
        app_env="test",
        jwt_secret="unit-test-secret-" + "y" * 40,
        bcrypt_rounds=4,
        project_root=project_root,
        enable_prometheus_metrics=False,
    )


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def app(settings, runner):
    application = create_app(settings)
    application.state.flash_workflow = FlashWorkflow(
        runner,
        executable=settings.flash_cli_executable,
        project_root=settings.project_root,
        allowed_extensions=settings.sketch_extensions,
    )
    return application


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


def register(client: TestClient, email: str = "maker@example.com", password: str = PASSWORD) -> str:
    response = client.post("/api/register", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["token"]


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
