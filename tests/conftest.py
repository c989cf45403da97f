"""
Pytest configuration and fixtures.
"""
import os
import sys
import tempfile
from pathlib import Path

# Set test configuration before importing app
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="buildsvc-tests-"))
os.environ["AUTH_TOKEN"] = "test-build-token"
os.environ["UPDATE_AUTH_TOKEN"] = "test-update-token"
os.environ["LOG_DIRECTORY"] = str(_TEST_ROOT / "logs")
os.environ["LOG_FILE"] = "server.log"
os.environ["TEMP_DIR_ROOT"] = str(_TEST_ROOT / "workspaces")
os.environ["UPDATE_SCRIPT_PATH"] = str(_TEST_ROOT / "update_server.sh")
os.environ["LOG_POLL_INTERVAL"] = "0.01"

import pytest
from fastapi.testclient import TestClient

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from main import app
from build_service.core.config import Settings

ARTIFACT_BYTES = b"PK\x03\x04fake-artifact-" + bytes(range(256)) * 64


@pytest.fixture
def client():
    """Create a test client that keeps one event loop for the whole test."""
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    """Return valid authentication headers for /build and /metrics."""
    return {"Authorization": "Bearer test-build-token"}


@pytest.fixture
def update_headers():
    """Return valid authentication headers for /update."""
    return {"Authorization": "Bearer test-update-token"}


@pytest.fixture
def workspace_root() -> Path:
    root = Path(os.environ["TEMP_DIR_ROOT"])
    root.mkdir(parents=True, exist_ok=True)
    return root


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings isolated to a temporary directory."""
    return Settings(
        log_directory=str(tmp_path / "logs"),
        temp_dir_root=str(tmp_path / "workspaces"),
        update_script_path=str(tmp_path / "update_server.sh"),
        log_poll_interval=0.01,
        auth_token="test-build-token",
        update_auth_token="test-update-token",
    )


class FakePipeline:
    """Stand-ins for the external steps, recording every call."""

    def __init__(self):
        self.calls: list[str] = []
        self.fail_at: str | None = None
        self.artifact = ARTIFACT_BYTES
        self.build_log_lines: list[str] = []
        self.log_path: Path | None = None

    async def fetch_repository(self, repo_url, dest, branch="main", timeout=None):
        from build_service.core.errors import FetchError

        self.calls.append("fetch")
        if self.fail_at == "fetch":
            raise FetchError(detail="fatal: repository not found")
        dest.mkdir(parents=True, exist_ok=True)
        (dest / "apps" / "mobile").mkdir(parents=True, exist_ok=True)
        return dest

    async def install_dependencies(self, package_dir, command=None, timeout=None):
        from build_service.core.errors import InstallError

        self.calls.append("install")
        if self.fail_at == "install":
            raise InstallError(detail="npm ERR! code E404")

    async def build_app(self, package_dir, platform, output_file, command=None, timeout=None, allowed=None):
        from build_service.core.errors import BuildError

        self.calls.append("build")
        if self.log_path is not None and self.build_log_lines:
            with open(self.log_path, "a", encoding="utf-8") as f:
                for line in self.build_log_lines:
                    f.write(line + "\n")
        if self.fail_at == "build":
            raise BuildError(detail="Gradle build failed")
        artifact = package_dir / output_file
        artifact.write_bytes(self.artifact)
        return artifact


@pytest.fixture
def fake_pipeline(monkeypatch) -> FakePipeline:
    """Replace clone/install/build in the orchestrator with recording fakes."""
    fake = FakePipeline()
    monkeypatch.setattr("build_service.core.orchestrator.fetch_repository", fake.fetch_repository)
    monkeypatch.setattr("build_service.core.orchestrator.install_dependencies", fake.install_dependencies)
    monkeypatch.setattr("build_service.core.orchestrator.build_app", fake.build_app)
    return fake


@pytest.fixture
def make_script(tmp_path):
    """Write an executable shell script and return its path."""
    def _make(body: str, name: str = "script.sh") -> Path:
        path = tmp_path / name
        path.write_text("#!/bin/sh\n" + body + "\n")
        path.chmod(0o755)
        return path
    return _make
