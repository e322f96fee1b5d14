from __future__ import annotations

import asyncio
import json
import logging
import shutil
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Optional

from autofetch.host.interfaces import ArtifactStore
from autofetch.utils import atomic_write_json, format_timestamp, utc_now

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"


@dataclass(slots=True)
class ArtifactInfo:
    artifact_id: int
    record_id: int
    field: str
    filename: str
    comment: str
    created_at: str


class DirectoryArtifactStore(ArtifactStore):
    """Artifacts stored as <root>/<artifact_id>/<filename>, indexed by a JSON manifest."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._lock = asyncio.Lock()

    @property
    def _manifest_path(self) -> Path:
        return self._root / MANIFEST_NAME

    def _load(self) -> Dict[str, dict]:
        if not self._manifest_path.exists():
            return {}
        payload = json.loads(self._manifest_path.read_text(encoding="utf-8"))
        return payload.get("artifacts", {})

    def _save(self, artifacts: Dict[str, dict]) -> None:
        atomic_write_json(self._manifest_path, {"artifacts": artifacts})

    def path_for(self, artifact_id: int) -> Optional[Path]:
        entry = self._load().get(str(artifact_id))
        if entry is None:
            return None
        return self._root / str(artifact_id) / entry["filename"]

    def get(self, artifact_id: int) -> Optional[ArtifactInfo]:
        entry = self._load().get(str(artifact_id))
        return ArtifactInfo(**entry) if entry is not None else None

    def list_for_record(self, record_id: int) -> list[ArtifactInfo]:
        infos = [ArtifactInfo(**entry) for entry in self._load().values() if entry["record_id"] == record_id]
        return sorted(infos, key=lambda info: info.artifact_id)

    async def create(
        self,
        *,
        source_path: Path,
        filename: str,
        record_id: int,
        field: str,
        comment: str,
    ) -> int:
        async with self._lock:
            artifacts = self._load()
            artifact_id = max((int(key) for key in artifacts), default=0) + 1
            target_dir = self._root / str(artifact_id)
            target_dir.mkdir(parents=True, exist_ok=False)
            shutil.copyfile(source_path, target_dir / filename)

            info = ArtifactInfo(
                artifact_id=artifact_id,
                record_id=record_id,
                field=field,
                filename=filename,
                comment=comment,
                created_at=format_timestamp(utc_now()),
            )
            artifacts[str(artifact_id)] = asdict(info)
            self._save(artifacts)

        logger.info(
            "Artifact created. artifact_id=%s record_id=%s filename=%s",
            artifact_id,
            record_id,
            filename,
        )
        return artifact_id

    async def delete(self, artifact_id: int) -> bool:
        async with self._lock:
            artifacts = self._load()
            if artifacts.pop(str(artifact_id), None) is None:
                return False
            shutil.rmtree(self._root / str(artifact_id), ignore_errors=True)
            self._save(artifacts)
        logger.info("Artifact deleted. artifact_id=%s", artifact_id)
        return True
