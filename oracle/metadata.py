"""
Off-ledger project metadata used by verification strategies.

The ledger only knows names, amounts and milestone percentages. What a
strategy needs to check real-world progress lives here, keyed by project id:

    {
      "0": {
        "category": "solar",
        "coordinates": {"lat": -1.9403, "lon": 29.8739},
        "sensor_id": "sensor-001",
        "milestones": [
          {"required_coverage": 25, "required_progress": 25, "target_output": 1000},
          ...
        ]
      }
    }
"""

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from oracle.errors import MetadataError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProjectMetadata:
    project_id: int
    category: Optional[str] = None
    coordinates: Optional[dict] = None
    sensor_id: Optional[str] = None
    milestones: tuple = field(default_factory=tuple)

    def threshold(self, milestone_index: int, key: str) -> Union[int, float]:
        """
        Per-milestone requirement, e.g. ``required_coverage``.

        Raises:
            MetadataError: No such milestone entry or key, or the value is not a number
        """
        if not 0 <= milestone_index < len(self.milestones):
            raise MetadataError(
                f"Project {self.project_id} has no metadata for milestone {milestone_index}"
            )
        requirements = self.milestones[milestone_index]
        if not isinstance(requirements, dict) or key not in requirements:
            raise MetadataError(
                f"Project {self.project_id} milestone {milestone_index} is missing {key!r}"
            )
        value = requirements[key]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise MetadataError(
                f"Project {self.project_id} milestone {milestone_index} {key!r} is not a number: {value!r}"
            )
        return value

    def require_coordinates(self) -> tuple[float, float]:
        if not self.coordinates or "lat" not in self.coordinates or "lon" not in self.coordinates:
            raise MetadataError(f"Project {self.project_id} has no coordinates")
        return self.coordinates["lat"], self.coordinates["lon"]

    def require_sensor_id(self) -> str:
        if not self.sensor_id:
            raise MetadataError(f"Project {self.project_id} has no sensor_id")
        return self.sensor_id

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "coordinates": self.coordinates,
            "sensor_id": self.sensor_id,
            "milestones": list(self.milestones),
        }

    @classmethod
    def from_dict(cls, project_id: int, data: dict) -> "ProjectMetadata":
        return cls(
            project_id=project_id,
            category=data.get("category"),
            coordinates=data.get("coordinates"),
            sensor_id=data.get("sensor_id"),
            milestones=tuple(data.get("milestones") or ()),
        )


class ProjectMetadataStore:
    """
    JSON-file backed metadata, re-read when the file changes on disk.

    Args:
        path: Metadata file; None keeps metadata in memory only
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self._path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._entries: dict[int, ProjectMetadata] = {}
        self._mtime: Optional[float] = None

    def get(self, project_id: int) -> Optional[ProjectMetadata]:
        with self._lock:
            self._refresh()
            return self._entries.get(project_id)

    def put(self, metadata: ProjectMetadata) -> None:
        with self._lock:
            self._refresh()
            self._entries[metadata.project_id] = metadata
            if self._path is not None:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(
                        {str(pid): m.to_dict() for pid, m in sorted(self._entries.items())},
                        f,
                        indent=2,
                    )
                os.replace(tmp_path, self._path)
                self._mtime = self._path.stat().st_mtime

    def _refresh(self) -> None:
        if self._path is None or not self._path.exists():
            return
        mtime = self._path.stat().st_mtime
        if mtime == self._mtime:
            return
        with open(self._path, encoding="utf-8") as f:
            raw = json.load(f)
        self._entries = {
            int(pid): ProjectMetadata.from_dict(int(pid), data) for pid, data in raw.items()
        }
        self._mtime = mtime
        logger.debug("Loaded metadata for %d projects from %s", len(self._entries), self._path)
