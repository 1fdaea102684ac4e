"""Host facts reported to the directory service."""

from __future__ import annotations

import logging
import platform
import socket
from pathlib import Path

from kmagent.schemas.report import SystemInfo

logger = logging.getLogger(__name__)

_PLATFORMS = {"Linux": "linux", "Darwin": "darwin", "Windows": "windows"}


def collect_hostname() -> str:
    return socket.gethostname()


def get_linux_distribution(
    os_release: str | Path = "/etc/os-release",
    issue: str | Path = "/etc/issue",
) -> str | None:
    """Distribution name from os-release NAME=, falling back to the first line of /etc/issue."""
    try:
        for line in Path(os_release).read_text().splitlines():
            if line.startswith("NAME="):
                return line[5:].strip().strip('"')
    except OSError as e:
        logger.debug("Cannot read %s: %s", os_release, e)

    try:
        lines = Path(issue).read_text().splitlines()
    except OSError as e:
        logger.debug("Cannot read %s: %s", issue, e)
        return None
    return lines[0].strip() if lines else None


def collect_system_info() -> SystemInfo:
    os_name = platform.system() or "Unknown"
    distribution = None
    if os_name == "Linux":
        distribution = get_linux_distribution()

    return SystemInfo(
        os=os_name,
        arch=platform.machine() or "Unknown",
        platform=_PLATFORMS.get(os_name, "unknown"),
        kernel=platform.release() or "Unknown",
        distribution=distribution or os_name,
        version=platform.version() or "Unknown",
    )
