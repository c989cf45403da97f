"""
Pydantic schemas for build requests.
"""
from pydantic import BaseModel, ConfigDict, Field


class BuildRequest(BaseModel):
    """Request body for POST /build."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    repo_url: str = Field(default="", description="Git URL to clone (branch from DEFAULT_CLONE_BRANCH)")
    platform: str = Field(default="", description="Target platform: 'android' or 'ios'")
    package_path: str = Field(default="", description="App package directory, relative to the repository root")
    update_server: bool = Field(default=False, description="Trigger a self-update after a successful build")
    stream_logs: bool = Field(default=False, description="Stream service log lines before the artifact bytes")

    def missing_fields(self) -> list[str]:
        return [
            name
            for name in ("repo_url", "platform", "package_path")
            if not getattr(self, name).strip()
        ]
