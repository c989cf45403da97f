"""
Dependency Installer - runs the package manager inside the package directory.
"""
import logging
from pathlib import Path
from typing import Optional

from build_service.core.errors import BuildTimeoutError, InstallError
from build_service.core.process import run_process

logger = logging.getLogger(__name__)

DEFAULT_INSTALL_COMMAND = ["npm", "install"]


async def install_dependencies(
    package_dir: Path,
    command: Optional[list[str]] = None,
    timeout: Optional[float] = None,
) -> None:
    """Install dependencies, inheriting the service environment."""
    if not package_dir.is_dir():
        logger.error("install_failed reason=package_path_missing")
        raise InstallError(detail=f"package directory not found: {package_dir}")

    cmd = list(command or DEFAULT_INSTALL_COMMAND)
    logger.info(f"install_start cmd={cmd[0]}")
    result = await run_process(cmd, cwd=package_dir, timeout=timeout, log_output=True)

    if result.timed_out:
        raise BuildTimeoutError(detail=result.output_text)
    if not result.succeeded:
        logger.error(f"install_failed exit_code={result.exit_code} output={result.output_text}")
        raise InstallError(detail=result.output_text)

    logger.info(f"install_done duration_ms={result.duration_ms}")
