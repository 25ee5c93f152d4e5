from __future__ import annotations

import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import redis
from pydantic import TypeAdapter, ValidationError

from widgetgen.models import GenerationRecord

log = logging.getLogger(__name__)

METRICS_FILE = os.getenv("METRICS_FILE", "").strip()
MAX_RECORDS = int(os.getenv("METRICS_MAX_RECORDS", "1000") or 1000)

REDIS_URL = os.getenv("REDIS_URL", "").strip()
REDIS_METRICS_PREFIX = os.getenv("REDIS_METRICS_PREFIX", "widgetgen:metrics")
try:
    REDIS_TIMEOUT = float(os.getenv("REDIS_COUNTER_TIMEOUT", "0.35") or 0.35)
except ValueError:
    REDIS_TIMEOUT = 0.35

_RECORDS = TypeAdapter(List[GenerationRecord])


def redis_client_from_env(url: str = REDIS_URL) -> Optional["redis.Redis"]:
    if not url:
        return None
    try:
        return redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=REDIS_TIMEOUT,
            socket_connect_timeout=REDIS_TIMEOUT,
        )
    except Exception as exc:
        log.warning("metrics: failed to initialize Redis client: %s", exc)
        return None


class MetricsStore:
    """Generation records in memory, optionally mirrored to a JSON file and Redis counters."""

    def __init__(
        self,
        path: Union[str, Path, None] = METRICS_FILE or None,
        redis_client: Any = None,
        max_records: int = MAX_RECORDS,
    ) -> None:
        self.path = Path(path) if path else None
        self.redis = redis_client
        self.max_records = max_records
        self._lock = threading.Lock()
        self._records: List[GenerationRecord] = self._read() if self.path else []

    def add_record(
        self,
        type: str,
        prompt_version_id: str,
        user_prompt: str,
        result: str,
        error_message: Optional[str] = None,
        quality_score: Optional[int] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> str:
        record = GenerationRecord(
            id=f"rec-{uuid.uuid4().hex[:12]}",
            type=type,  # type: ignore[arg-type]
            prompt_version_id=prompt_version_id,
            user_prompt=user_prompt,
            result=result,  # type: ignore[arg-type]
            error_message=error_message,
            quality_score=quality_score,
            metadata=dict(metadata or {}),
        )
        with self._lock:
            self._records.append(record)
            if len(self._records) > self.max_records:
                del self._records[: len(self._records) - self.max_records]
            if self.path:
                self._write()
        self._mirror(record)
        log.info(
            "metrics.record: id=%s type=%s result=%s quality=%s",
            record.id, record.type, record.result, record.quality_score,
        )
        return record.id

    def get_record(self, record_id: str) -> Optional[GenerationRecord]:
        with self._lock:
            for record in self._records:
                if record.id == record_id:
                    return record.model_copy(deep=True)
        return None

    def recent(self, last_n: Optional[int] = None) -> List[GenerationRecord]:
        with self._lock:
            records = list(self._records)
        if last_n is not None:
            records = records[-last_n:] if last_n > 0 else []
        return records

    def success_rate(self, last_n: Optional[int] = None) -> float:
        records = self.recent(last_n)
        if not records:
            return 0.0
        return sum(1 for r in records if r.result == "success") / len(records)

    def average_quality(self, last_n: Optional[int] = None) -> Optional[float]:
        scores = [r.quality_score for r in self.recent(last_n) if r.quality_score is not None]
        if not scores:
            return None
        return round(sum(scores) / len(scores), 1)

    def summary(self) -> Dict[str, Any]:
        records = self.recent()
        by_result: Dict[str, int] = {}
        by_prompt: Dict[str, int] = {}
        for r in records:
            by_result[r.result] = by_result.get(r.result, 0) + 1
            by_prompt[r.prompt_version_id] = by_prompt.get(r.prompt_version_id, 0) + 1
        return {
            "total": len(records),
            "by_result": by_result,
            "by_prompt_version": by_prompt,
            "success_rate": round(self.success_rate(), 3),
            "average_quality": self.average_quality(),
            "redis": self._redis_totals(),
        }

    def _mirror(self, record: GenerationRecord) -> None:
        if not self.redis:
            return
        try:
            self.redis.incrby(f"{REDIS_METRICS_PREFIX}:total", 1)
            self.redis.incrby(f"{REDIS_METRICS_PREFIX}:{record.result}", 1)
        except Exception as exc:
            log.warning("metrics: Redis increment failed: %s", exc)

    def _redis_totals(self) -> Optional[Dict[str, int]]:
        if not self.redis:
            return None
        try:
            out = {}
            for key in ("total", "success", "partial", "failure"):
                raw = self.redis.get(f"{REDIS_METRICS_PREFIX}:{key}")
                out[key] = max(0, int(raw)) if raw is not None else 0
            return out
        except Exception as exc:
            log.warning("metrics: Redis get failed: %s", exc)
            return None

    def _read(self) -> List[GenerationRecord]:
        assert self.path is not None
        if not self.path.exists():
            return []
        try:
            return _RECORDS.validate_json(self.path.read_text(encoding="utf-8") or "[]")
        except (OSError, ValidationError) as exc:
            log.warning("metrics: unreadable %s, starting empty: %s", self.path, exc)
            return []

    def _write(self) -> None:
        assert self.path is not None
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_bytes(_RECORDS.dump_json(self._records))
        tmp.replace(self.path)
