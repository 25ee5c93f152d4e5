from __future__ import annotations

import json
import logging
import os
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from widgetgen.models import DraftMetadata, DraftWidget, ValidationResult, WidgetManifest

log = logging.getLogger(__name__)

DRAFTS_DIR = os.getenv("DRAFTS_DIR", "").strip()

_PATCHABLE_FIELDS = {"manifest", "markup", "conversation_id", "metadata", "validation"}


class DraftStore:
    """Draft widgets keyed by id; JSON files under a directory, or memory only."""

    def __init__(self, directory: Union[str, Path, None] = DRAFTS_DIR or None) -> None:
        self.directory = Path(directory) if directory else None
        self._lock = threading.Lock()
        self._drafts: Dict[str, DraftWidget] = {}
        if self.directory is not None:
            self._load()

    def create_draft(
        self,
        manifest: Union[WidgetManifest, Mapping[str, Any]],
        markup: str,
        metadata: Union[DraftMetadata, Mapping[str, Any], None] = None,
        conversation_id: Optional[str] = None,
    ) -> DraftWidget:
        if not isinstance(manifest, WidgetManifest):
            manifest = WidgetManifest.model_validate(dict(manifest))
        if metadata is None:
            metadata = DraftMetadata()
        elif not isinstance(metadata, DraftMetadata):
            metadata = DraftMetadata.model_validate(dict(metadata))
        now = time.time()
        draft = DraftWidget(
            id=f"draft-{uuid.uuid4().hex[:12]}",
            manifest=manifest,
            markup=markup,
            conversation_id=conversation_id,
            metadata=metadata,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._drafts[draft.id] = draft
            self._persist(draft)
        log.info("drafts.create: id=%s manifest_id=%s", draft.id, manifest.id)
        return draft.model_copy(deep=True)

    def get_draft(self, draft_id: str) -> Optional[DraftWidget]:
        with self._lock:
            draft = self._drafts.get(draft_id)
            return draft.model_copy(deep=True) if draft else None

    def list_drafts(self) -> List[DraftWidget]:
        with self._lock:
            drafts = sorted(self._drafts.values(), key=lambda d: d.created_at)
            return [d.model_copy(deep=True) for d in drafts]

    def update_draft(self, draft_id: str, patch: Mapping[str, Any]) -> Optional[DraftWidget]:
        unknown = set(patch) - _PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot patch draft fields: {', '.join(sorted(unknown))}")
        with self._lock:
            current = self._drafts.get(draft_id)
            if current is None:
                return None
            data = current.model_dump()
            data.update(patch)
            data["updated_at"] = time.time()
            updated = DraftWidget.model_validate(data)
            self._drafts[draft_id] = updated
            self._persist(updated)
        log.debug("drafts.update: id=%s fields=%s", draft_id, ",".join(sorted(patch)))
        return updated.model_copy(deep=True)

    def set_validation_result(self, draft_id: str, validation: ValidationResult) -> Optional[DraftWidget]:
        return self.update_draft(draft_id, {"validation": validation})

    def _path(self, draft_id: str) -> Path:
        assert self.directory is not None
        return self.directory / f"{draft_id}.json"

    def _persist(self, draft: DraftWidget) -> None:
        if self.directory is None:
            return
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(draft.id)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(draft.model_dump_json(), encoding="utf-8")
        tmp.replace(path)

    def _load(self) -> None:
        assert self.directory is not None
        if not self.directory.exists():
            return
        for path in sorted(self.directory.glob("*.json")):
            try:
                draft = DraftWidget.model_validate(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError, ValidationError) as exc:
                log.warning("drafts.load: skipping unreadable %s: %s", path.name, exc)
                continue
            self._drafts[draft.id] = draft
        log.info("drafts.load: loaded=%d dir=%s", len(self._drafts), self.directory)
