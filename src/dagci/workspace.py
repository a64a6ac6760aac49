# workspace.py
from __future__ import annotations

import shutil
import threading
from pathlib import Path
from typing import Iterable, List

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_WORKSPACE_DIR = ".dagci/workspace"


class Workspace:
    """
    Directory shared by all jobs of one pipeline run.

    Upstream jobs persist files into it; downstream jobs attach it into
    their working directory. Layout mirrors the persisted paths:
      root/
        Cargo.lock
        target/...
    """

    def __init__(self, root: str | Path = DEFAULT_WORKSPACE_DIR):
        self.root = Path(root).resolve()
        self._lock = threading.Lock()

    def reset(self) -> None:
        """Start a fresh run: drop anything persisted by a previous one."""
        if self.root.exists():
            shutil.rmtree(self.root)
        self.root.mkdir(parents=True, exist_ok=True)

    def persist(self, source_root: str | Path, paths: Iterable[str]) -> List[str]:
        """
        Copy `paths` (relative to `source_root`) into the workspace.

        Raises FileNotFoundError for a path that does not exist.
        """
        src_root = Path(source_root).resolve()
        persisted: List[str] = []
        with self._lock:
            self.root.mkdir(parents=True, exist_ok=True)
            for rel in paths:
                src = src_root / rel
                if not src.exists():
                    raise FileNotFoundError(f"cannot persist missing path: {src}")
                dst = self.root / rel
                dst.parent.mkdir(parents=True, exist_ok=True)
                if src.is_dir():
                    shutil.copytree(src, dst, dirs_exist_ok=True)
                else:
                    shutil.copy2(src, dst)
                persisted.append(rel)
                logger.debug("workspace_persisted", path=rel, root=str(self.root))
        return persisted

    def attach(self, at: str | Path) -> Path:
        """Copy the workspace contents into `at`. Returns the target dir."""
        target = Path(at).resolve()
        target.mkdir(parents=True, exist_ok=True)
        with self._lock:
            if self.root.exists():
                shutil.copytree(self.root, target, dirs_exist_ok=True)
        logger.debug("workspace_attached", at=str(target))
        return target
