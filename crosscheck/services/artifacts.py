from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import Optional


def _safe_name(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", value.strip()).strip("-.")
    return cleaned or "unnamed"


class ArtifactStore:
    """Manage on-disk locations for checkpoint captures and baselines."""

    def __init__(self, root: Optional[Path] = None) -> None:
        resolved_root = Path(root) if root is not None else Path.cwd() / "artifacts"
        self._root = resolved_root.resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _ensure_dir(self, path: Path) -> Path:
        path.mkdir(parents=True, exist_ok=True)
        return path

    def batch_dir(self, batch_id: str) -> Path:
        return self._ensure_dir(self._root / "batches" / _safe_name(batch_id))

    def job_dir(self, batch_id: str, job_id: str) -> Path:
        return self._ensure_dir(self.batch_dir(batch_id) / _safe_name(job_id))

    def checkpoint_path(self, batch_id: str, job_id: str, tag: str, suffix: str = "observed") -> Path:
        return self.job_dir(batch_id, job_id) / f"{_safe_name(tag)}.{suffix}.png"

    def baseline_path(self, app_name: str, test_name: str, environment_key: str, tag: str) -> Path:
        directory = self._ensure_dir(
            self._root / "baselines" / _safe_name(app_name) / _safe_name(test_name) / _safe_name(environment_key)
        )
        return directory / f"{_safe_name(tag)}.png"

    def relative(self, path: Path) -> str:
        cleaned = path.resolve()
        root = self._root.resolve()
        return str(cleaned.relative_to(root))

    def promote_to_baseline(self, source: Path, app_name: str, test_name: str, environment_key: str, tag: str) -> Path:
        destination = self.baseline_path(app_name, test_name, environment_key, tag)
        shutil.copy2(source, destination)
        return destination

    def purge_batch(self, batch_id: str) -> None:
        """Remove all captures associated with a batch."""
        target = self._root / "batches" / _safe_name(batch_id)
        if target.exists():
            shutil.rmtree(target, ignore_errors=True)

    def purge_baselines(self, app_name: str, test_name: str) -> None:
        """Remove every baseline recorded for a test of an app."""
        target = self._root / "baselines" / _safe_name(app_name) / _safe_name(test_name)
        if target.exists():
            shutil.rmtree(target, ignore_errors=True)


_artifact_store: Optional[ArtifactStore] = None


def get_artifact_store() -> ArtifactStore:
    global _artifact_store
    if _artifact_store is None:
        _artifact_store = ArtifactStore()
    return _artifact_store


def set_artifact_store(store: ArtifactStore) -> None:
    global _artifact_store
    _artifact_store = store
