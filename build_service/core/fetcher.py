"""
Repository Fetcher - shallow single-branch git clone into a workspace.
"""
import logging
from pathlib import Path
from typing import Optional

from build_service.core.errors import BuildTimeoutError, FetchError, InvalidRepoURLError
from build_service.core.process import run_process

logger = logging.getLogger(__name__)

# Characters a shell would treat as command separators. The URL is passed as a
# discrete argument, so this is a filter on obviously hostile input only.
FORBIDDEN_URL_CHARS = frozenset(";&")


def validate_repo_url(url: str) -> str:
    """
    Reject empty URLs and URLs carrying command separators.

    Raises:
        InvalidRepoURLError: If the URL is rejected
    """
    if not url or not url.strip():
        raise InvalidRepoURLError()
    if any(ch in FORBIDDEN_URL_CHARS for ch in url):
        raise InvalidRepoURLError()
    return url.strip()


async def fetch_repository(
    repo_url: str,
    dest: Path,
    branch: str = "main",
    timeout: Optional[float] = None,
) -> Path:
    """
    Shallow-clone one branch of a repository into dest.

    Returns:
        The clone path

    Raises:
        InvalidRepoURLError: URL rejected, nothing spawned
        FetchError: git failed or produced no checkout
        BuildTimeoutError: Deadline exceeded
    """
    url = validate_repo_url(repo_url)

    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FetchError(detail=f"error creating parent directory: {e}")

    logger.info(f"clone_start branch={branch}")
    result = await run_process(
        ["git", "clone", "--depth", "1", "--single-branch", "--branch", branch, url, str(dest)],
        env_override={"GIT_TERMINAL_PROMPT": "0"},
        timeout=timeout,
    )

    if result.timed_out:
        raise BuildTimeoutError(detail=result.output_text)
    if not result.succeeded:
        logger.error(f"clone_failed exit_code={result.exit_code} output={result.output_text}")
        raise FetchError(detail=result.output_text)
    if not dest.is_dir():
        logger.error("clone_failed reason=missing_destination")
        raise FetchError(detail="clone destination missing after git exited 0")

    logger.info(f"clone_done duration_ms={result.duration_ms}")
    return dest
