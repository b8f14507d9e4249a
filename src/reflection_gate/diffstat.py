from __future__ import annotations

import logging
import subprocess

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 10


def _git(cwd: str, *args: str) -> str | None:
    """Run a git command in ``cwd``; None when git is missing or fails."""
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd or None,
            capture_output=True,
            text=True,
            check=True,
            timeout=GIT_TIMEOUT_SECONDS,
        )
    except subprocess.CalledProcessError as e:
        logger.debug("git %s failed: %s", " ".join(args), e.stderr.strip())
        return None
    except (FileNotFoundError, NotADirectoryError, subprocess.TimeoutExpired) as e:
        logger.debug("git %s unavailable: %s", " ".join(args), e)
        return None
    return result.stdout


def parse_numstat(output: str) -> int:
    """Sum added and deleted lines. Binary files ('-') count as zero."""
    total = 0
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 3:
            continue
        for count in parts[:2]:
            if count.isdigit():
                total += int(count)
    return total


def diff_size(cwd: str) -> int | None:
    """Lines changed against HEAD, staged and unstaged. None if unknown."""
    output = _git(cwd, "diff", "--numstat", "HEAD")
    if output is None:
        return None
    return parse_numstat(output)


def changed_files(cwd: str) -> list[str]:
    output = _git(cwd, "diff", "--name-only", "HEAD")
    if not output:
        return []
    return [line.strip() for line in output.splitlines() if line.strip()]
