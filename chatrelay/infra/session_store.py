# chatrelay/infra/session_store.py
"""
Filesystem-backed durable session store.

The protocol client persists its pairing credentials under
``<base_dir>/<session_id>`` so a restarted process reconnects without a
fresh QR scan.  This module only locates and deletes those directories;
their contents belong to the client.

Purging is synchronous and never raises: failures are collected as
warnings so disconnect / re-pair flows always proceed.
"""
from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path

from chatrelay.infra.logging_config import get_logger

logger = get_logger(__name__)

CLIENT_DIR_PREFIX = "session-"


@dataclass
class PurgeResult:
    removed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def cleaned_up(self) -> bool:
        return bool(self.removed)


class FileSessionStore:
    """One artifact directory per serialized session key."""

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir).resolve()

    def artifact_dir(self, session_id: str) -> Path:
        return self.base_dir / session_id

    def ensure_base_dir(self) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def exists(self, session_id: str) -> bool:
        return self.artifact_dir(session_id).is_dir()

    def purge(self, session_id: str) -> PurgeResult:
        """
        Delete every artifact belonging to ``session_id``.

        Covers the exact directory, its lower/upper-case variants, the
        ``session-<session_id>`` directory some protocol clients create and
        a stray ``<session_id>.lock`` file.  Only these exact names are
        touched: another session id may contain this one as a substring.
        """
        result = PurgeResult()

        if not self.base_dir.is_dir():
            logger.info(f"Session base directory does not exist, nothing to clean: {self.base_dir}")
            return result

        candidates = {
            self.base_dir / name
            for variant in (session_id, session_id.lower(), session_id.upper())
            for name in (variant, f"{CLIENT_DIR_PREFIX}{variant}")
        }
        for path in sorted(candidates):
            self._remove_dir(path, result)

        lock_file = self.base_dir / f"{session_id}.lock"
        try:
            lock_file.unlink()
            logger.debug(f"Removed session lock file: {lock_file.name}")
        except FileNotFoundError:
            pass
        except OSError as exc:
            result.warnings.append(f"lock file {lock_file.name}: {exc}")
            logger.warning(f"Error removing session lock file {lock_file.name}: {exc}")

        if not result.removed:
            logger.info(f"No session files found to clean up for {session_id}")

        return result

    @staticmethod
    def _remove_dir(path: Path, result: PurgeResult) -> None:
        if not path.is_dir():
            return
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return
        except OSError as exc:
            result.warnings.append(f"{path.name}: {exc}")
            logger.warning(f"Failed to remove session directory {path.name}: {exc}")
            return

        result.removed.append(path.name)
        logger.info(f"Session directory removed: {path.name}")
