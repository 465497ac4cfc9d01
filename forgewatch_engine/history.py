import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict, Any

from .logger_setup import logger

DEFAULT_HISTORY_LIMIT = 100


class BuildStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class BuildRecord:
    id: str
    name: str
    method: str
    status: BuildStatus
    start_time: str  # ISO 8601
    job_id: Optional[str] = None
    end_time: Optional[str] = None
    duration: Optional[float] = None  # seconds
    commit_hash: Optional[str] = None
    branch: Optional[str] = None
    error: Optional[str] = None
    reason: Optional[str] = None
    log_file: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'BuildRecord':
        known = set(cls.__dataclass_fields__)
        values = {k: v for k, v in data.items() if k in known}
        values["status"] = BuildStatus(values.get("status", BuildStatus.FAILED.value))
        return cls(**values)


class HistoryManager(ABC):
    """Sink for build records. Strategies only ever talk to this interface."""

    @abstractmethod
    def add_history(self, record: BuildRecord):
        ...

    @abstractmethod
    def update_history(self, build_id: str, patch: Dict[str, Any]) -> Optional[BuildRecord]:
        ...

    @abstractmethod
    def list(self, limit: Optional[int] = None, job_id: Optional[str] = None) -> List[BuildRecord]:
        ...

    def get(self, build_id: str) -> Optional[BuildRecord]:
        return next((r for r in self.list() if r.id == build_id), None)


class JsonHistoryStore(HistoryManager):
    """Flat JSON file, newest record first, capped at ``limit`` records."""

    def __init__(self, history_file: Path, limit: int = DEFAULT_HISTORY_LIMIT):
        self.history_file = Path(history_file)
        self.limit = limit
        self._lock = threading.Lock()
        self.history_file.parent.mkdir(parents=True, exist_ok=True)

    def _read(self) -> List[dict]:
        if not self.history_file.exists():
            return []
        try:
            with open(self.history_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Could not read build history {self.history_file}: {e}")
            return []
        return data if isinstance(data, list) else []

    def _write(self, records: List[dict]):
        tmp_file = self.history_file.with_suffix(".tmp")
        with open(tmp_file, "w", encoding="utf-8") as f:
            json.dump(records[:self.limit], f, indent=2)
        tmp_file.replace(self.history_file)

    def add_history(self, record: BuildRecord):
        with self._lock:
            records = self._read()
            records.insert(0, record.to_dict())
            self._write(records)

    def update_history(self, build_id: str, patch: Dict[str, Any]) -> Optional[BuildRecord]:
        with self._lock:
            records = self._read()
            for data in records:
                if data.get("id") == build_id:
                    for key, value in patch.items():
                        data[key] = value.value if isinstance(value, Enum) else value
                    self._write(records)
                    return BuildRecord.from_dict(data)
        logger.warning(f"Build record {build_id} not found in history, update dropped")
        return None

    def list(self, limit: Optional[int] = None, job_id: Optional[str] = None) -> List[BuildRecord]:
        with self._lock:
            records = self._read()
        result = [BuildRecord.from_dict(r) for r in records if job_id is None or r.get("job_id") == job_id]
        return result[:limit] if limit else result
