from __future__ import annotations

import json
import os
from pathlib import Path

from pydantic import ValidationError

from .models import Checkpoint, ContentKind, ImportCounters
from .storage_sqlite import utc_now_iso


def checkpoint_path(out_dir: Path, kind: ContentKind) -> Path:
    return out_dir / f"import-{kind.value}-progress.json"


class ProgressTracker:
    """Resume cursor for full crawls, kept as a small JSON document next to the database.

    ``last_page`` is the last page whose records were fully processed; a resumed
    crawl starts at ``last_page + 1``.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> Checkpoint:
        if not self.path.exists():
            return Checkpoint()
        try:
            return Checkpoint.model_validate_json(self.path.read_text(encoding="utf-8"))
        except ValidationError as exc:
            raise RuntimeError(f"Corrupt checkpoint file {self.path}: {exc}") from exc

    def save(self, page: int, total_pages: int | None, counters: ImportCounters) -> Checkpoint:
        checkpoint = Checkpoint(
            last_page=page,
            total_pages=total_pages,
            total_imported=counters.imported,
            total_skipped=counters.skipped,
            total_errors=counters.errors,
            timestamp=utc_now_iso(),
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(checkpoint.model_dump(by_alias=True), handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, self.path)
        return checkpoint

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)

    @staticmethod
    def resume_page(checkpoint: Checkpoint) -> int:
        return max(1, checkpoint.last_page + 1)
