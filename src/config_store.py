"""
Durable mapping of stream id to StreamRecord.

The whole mapping is written as one JSON document
({"streams": {...}, "updated_at": ...}) via a temp file and os.replace, so a
crash mid-write never leaves a truncated config behind.
"""

import json
import logging
import os
import tempfile
from typing import Dict, Iterator, List, Optional

from models import StreamRecord, utc_now_iso

logger = logging.getLogger(__name__)


class ConfigStore:
    def __init__(self, path: str):
        self.path = path
        self._streams: Dict[str, StreamRecord] = {}

    def __contains__(self, stream_id: str) -> bool:
        return stream_id in self._streams

    def __len__(self) -> int:
        return len(self._streams)

    def __iter__(self) -> Iterator[StreamRecord]:
        return iter(list(self._streams.values()))

    def get(self, stream_id: str) -> Optional[StreamRecord]:
        return self._streams.get(stream_id)

    def all(self) -> List[StreamRecord]:
        return list(self._streams.values())

    def ids(self) -> List[str]:
        return list(self._streams.keys())

    def put(self, record: StreamRecord) -> None:
        self._streams[record.id] = record

    def remove(self, stream_id: str) -> Optional[StreamRecord]:
        return self._streams.pop(stream_id, None)

    def clear(self) -> None:
        self._streams.clear()

    def load(self) -> int:
        """
        Load records from disk, replacing the in-memory mapping.

        A missing or unreadable file degrades to an empty config. Returns the
        number of records loaded.
        """
        self._streams = {}
        if not os.path.exists(self.path):
            logger.info(f"No config at {self.path}, starting with an empty one")
            return 0

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except Exception as e:
            logger.error(f"Failed to read config {self.path}: {e}")
            return 0

        streams = data.get("streams") if isinstance(data, dict) else None
        if not isinstance(streams, dict):
            logger.error(f"Config {self.path} has no 'streams' mapping, ignoring")
            return 0

        for stream_id, raw in streams.items():
            try:
                raw = dict(raw)
                raw.setdefault("id", stream_id)
                record = StreamRecord.from_dict(raw)
                self._streams[record.id] = record
            except Exception as e:
                logger.warning(f"Skipping unreadable stream entry {stream_id}: {e}")

        logger.info(f"Loaded {len(self._streams)} streams from {self.path}")
        return len(self._streams)

    def save(self) -> bool:
        """Persist every record atomically. Returns False (and logs) on failure."""
        payload = {
            "streams": self.to_dict(),
            "updated_at": utc_now_iso(),
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        tmp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=".streams_", suffix=".json", dir=directory)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, self.path)
            return True
        except Exception as e:
            logger.error(f"Failed to save config {self.path}: {e}")
            if tmp_path and os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError as cleanup_error:
                    logger.warning(
                        f"Could not remove temp config {tmp_path}: {cleanup_error}")
            return False

    def to_dict(self) -> Dict[str, dict]:
        return {stream_id: record.to_dict()
                for stream_id, record in self._streams.items()}
