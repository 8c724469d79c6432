"""Persistence sink: extracted records as JSON lines, binaries as files on disk."""

import hashlib
import json
import logging
import mimetypes
import os
import re
import tempfile
import threading
from dataclasses import dataclass
from typing import Dict, Protocol, Sequence, Set
from urllib.parse import unquote, urlparse

from .models import Record, Stage

logger = logging.getLogger("docharvest")

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class BinaryWrite:
    path: str
    sha256: str
    size: int


class Sink(Protocol):
    def append_records(self, records: Sequence[Record], stage: Stage) -> int: ...

    def write_binary(self, unit_id: str, data: bytes, filename: str) -> BinaryWrite: ...

    def discard(self, path: str) -> None: ...


def filename_from_url(url: str, content_type: str = "") -> str:
    name = unquote(os.path.basename(urlparse(url).path))
    name = _UNSAFE_RE.sub("_", name).strip("._")
    if not name:
        name = "document"
    if not os.path.splitext(name)[1] and content_type:
        ext = mimetypes.guess_extension(content_type.split(";")[0].strip())
        if ext:
            name += ext
    return name[:150]


class FileSink:
    """Writes under `data_dir`:

    - records/<stage>.jsonl: one object per record, fields in extraction order.
      A record whose key is already in the file is skipped, so re-emitting a
      page or unit after a failure writes nothing twice.
    - documents/<unit id>__<filename>: fetched binaries
    """

    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        self.records_dir = os.path.join(data_dir, "records")
        self.documents_dir = os.path.join(data_dir, "documents")
        os.makedirs(self.records_dir, exist_ok=True)
        os.makedirs(self.documents_dir, exist_ok=True)
        self._lock = threading.Lock()
        self._keys: Dict[Stage, Set[str]] = {}

    def _records_path(self, stage: Stage) -> str:
        return os.path.join(self.records_dir, f"{stage.value}.jsonl")

    def _written_keys(self, stage: Stage) -> Set[str]:
        """Keys already in the stage's file. Loaded once; caller holds the lock."""
        if stage in self._keys:
            return self._keys[stage]
        keys: Set[str] = set()
        path = self._records_path(stage)
        if os.path.exists(path):
            with open(path, "rb+") as f:
                data = f.read()
                # torn final line from a crash mid-append
                end = data.rfind(b"\n") + 1
                if end < len(data):
                    logger.warning(f"Truncating partial line at end of {path}")
                    f.truncate(end)
            for line in data[:end].splitlines():
                key = json.loads(line).get("key")
                if key:
                    keys.add(key)
        self._keys[stage] = keys
        return keys

    def append_records(self, records: Sequence[Record], stage: Stage) -> int:
        """Append records whose key is not in the file yet. Returns how many were written."""
        if not records:
            return 0
        with self._lock:
            seen = self._written_keys(stage)
            lines = []
            batch = set()
            for r in records:
                if r.key and (r.key in seen or r.key in batch):
                    continue
                if r.key:
                    batch.add(r.key)
                lines.append(json.dumps({"key": r.key, "source_unit_id": r.source_unit_id,
                                         "fields": r.as_dict()}, ensure_ascii=False))
            if not lines:
                return 0
            with open(self._records_path(stage), "a", encoding="utf-8") as f:
                f.write("\n".join(lines) + "\n")
                f.flush()
                os.fsync(f.fileno())
            seen.update(batch)
        return len(lines)

    def write_binary(self, unit_id: str, data: bytes, filename: str) -> BinaryWrite:
        """Write `data` atomically (temp file + rename); a crash never leaves a partial file."""
        path = os.path.join(self.documents_dir, f"{unit_id}__{filename}")
        fd, tmp = tempfile.mkstemp(dir=self.documents_dir, prefix=".part-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise
        return BinaryWrite(path=path, sha256=hashlib.sha256(data).hexdigest(), size=len(data))

    def discard(self, path: str) -> None:
        if os.path.exists(path):
            os.remove(path)
