"""Signed, non-enumerable artifact file names."""

from __future__ import annotations

import base64
import hashlib
import hmac
from dataclasses import dataclass
from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)

SCREENSHOT_EXT = ".png"
VIDEO_EXT = ".webm"


def artifact_token(secret: str, monitor_id: int, run_key: str) -> str:
    """HMAC-SHA256 over the monitor id and run key, urlsafe base64 without padding."""
    message = f"{monitor_id}:{run_key}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class ArtifactPaths:
    screenshot: Path
    video: Path | None


def artifact_paths(
    secret: str,
    monitor_id: int,
    run_key: str,
    screenshot_dir: str | Path,
    video_dir: str | Path,
    record_video: bool = True,
) -> ArtifactPaths:
    token = artifact_token(secret, monitor_id, run_key)
    screenshot = Path(screenshot_dir) / f"{token}{SCREENSHOT_EXT}"
    video = Path(video_dir) / f"{token}{VIDEO_EXT}" if record_video else None
    return ArtifactPaths(screenshot=screenshot, video=video)


def ensure_dirs(*dirs: str | Path) -> None:
    for d in dirs:
        Path(d).mkdir(parents=True, exist_ok=True)


def verify_artifact(path: Path, monitor_id: int, kind: str) -> bool:
    """A missing or empty artifact is a warning, never a check failure."""
    try:
        size = path.stat().st_size
    except OSError:
        logger.warning("Artifact was not written", monitor_id=monitor_id, kind=kind, path=str(path))
        return False
    if size == 0:
        logger.warning("Artifact is empty", monitor_id=monitor_id, kind=kind, path=str(path))
        return False
    logger.debug("Artifact written", monitor_id=monitor_id, kind=kind, path=str(path), size_bytes=size)
    return True
