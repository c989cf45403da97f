"""
Platform Builder - native app build for one target platform.

The build tool is trusted to write the artifact at the requested path; a zero
exit without that file is still a failed build.
"""
import logging
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from build_service.core.errors import BuildError, BuildTimeoutError, UnsupportedPlatformError
from build_service.core.process import run_process

logger = logging.getLogger(__name__)

DEFAULT_BUILD_COMMAND = ["eas", "build"]


class Platform(str, Enum):
    """Supported build targets."""
    ANDROID = "android"
    IOS = "ios"

    @property
    def extension(self) -> str:
        return "apk" if self is Platform.ANDROID else "ipa"

    @property
    def content_type(self) -> str:
        if self is Platform.ANDROID:
            return "application/vnd.android.package-archive"
        return "application/octet-stream"


def validate_platform(value: str, allowed: Optional[Iterable[str]] = None) -> Platform:
    """
    Resolve a platform tag.

    Raises:
        UnsupportedPlatformError: Unknown tag or not in the allow-list
    """
    try:
        platform = Platform(value)
    except ValueError:
        raise UnsupportedPlatformError(detail=f"unsupported platform: {value}")
    if allowed is not None and platform.value not in set(allowed):
        raise UnsupportedPlatformError(detail=f"platform not allowed: {value}")
    return platform


def artifact_filename(platform: Platform, job_id: str) -> str:
    return f"app-{job_id}.{platform.extension}"


async def build_app(
    package_dir: Path,
    platform: Platform | str,
    output_file: str,
    command: Optional[list[str]] = None,
    timeout: Optional[float] = None,
    allowed: Optional[Iterable[str]] = None,
) -> Path:
    """
    Run the local build and verify its output.

    Returns:
        Path of the built artifact

    Raises:
        UnsupportedPlatformError: Before anything is spawned
        BuildError: Tool failed or no artifact was produced
        BuildTimeoutError: Deadline exceeded
    """
    target = validate_platform(platform.value if isinstance(platform, Platform) else platform, allowed)

    cmd = list(command or DEFAULT_BUILD_COMMAND) + [
        "--platform", target.value,
        "--local",
        "--output", output_file,
    ]
    logger.info(f"build_start platform={target.value}")
    result = await run_process(cmd, cwd=package_dir, timeout=timeout, log_output=True)

    if result.timed_out:
        raise BuildTimeoutError(detail=result.output_text)
    if not result.succeeded:
        logger.error(f"build_failed exit_code={result.exit_code} output={result.output_text}")
        raise BuildError(detail=result.output_text)

    artifact = package_dir / output_file
    if not artifact.is_file():
        logger.error(f"build_failed reason=artifact_missing file={output_file}")
        raise BuildError(detail=f"built app file not found at {artifact}")

    logger.info(f"build_done platform={target.value} size={artifact.stat().st_size} duration_ms={result.duration_ms}")
    return artifact
