from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .file_lock import FileLock

logger = logging.getLogger(__name__)

# Fields that describe what the provider reported; guarded by `observed_at`.
OBSERVATION_FIELDS = ("status", "status_detail", "date_approved", "raw_provider_payload")


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class ChargeStore:
    """
    Charge records keyed by payment id, persisted as one JSON object in `path`.

    Every write re-reads the whole file, merges, and replaces it atomically.
    Writers inside this process queue on an asyncio lock; other processes are
    kept out by `FileLock`. File I/O runs in a worker thread.
    """

    def __init__(self, path: Path | str, *, lock_timeout: float = 5.0) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock_timeout = lock_timeout
        self._write_lock = asyncio.Lock()

    # ---------- public API ----------

    async def get(self, charge_id: str) -> dict[str, Any] | None:
        records = await asyncio.to_thread(self._read_all)
        record = records.get(str(charge_id))
        return dict(record) if record is not None else None

    async def list_charges(self) -> list[dict[str, Any]]:
        records = await asyncio.to_thread(self._read_all)
        return [dict(record) for record in records.values()]

    async def upsert(
        self,
        charge_id: str,
        fields: dict[str, Any],
        *,
        observed_at: int | None = None,
    ) -> dict[str, Any]:
        """
        Merge `fields` into the record for `charge_id` and return the merged record.

        `observed_at` is the dispatch time (ns) of the provider fetch that produced
        `fields`. An observation older than the stored one keeps its non-status
        fields but its status fields are dropped.
        """
        async with self._write_lock:
            return await asyncio.to_thread(
                self._upsert_sync, str(charge_id), dict(fields), observed_at
            )

    async def mark_print_forwarded(self, charge_id: str) -> bool:
        """Set `print_forwarded_at` once. Returns False when it was already set."""
        async with self._write_lock:
            return await asyncio.to_thread(self._mark_forwarded_sync, str(charge_id))

    # ---------- file helpers ----------

    def _read_all(self, *, quarantine: bool = False) -> dict[str, dict[str, Any]]:
        """
        Load every record. A file that does not hold a JSON object reads as empty.

        Writers pass `quarantine=True`: the unreadable file is then renamed to
        `<name>.corrupt-<timestamp>` before the store starts over, so the next
        write cannot overwrite the records it still holds.
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        if not raw.strip():
            return {}
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            payload = None
        if not isinstance(payload, dict):
            if quarantine:
                self._quarantine()
            else:
                logger.warning("Charge store %s is not a JSON object; reading as empty", self.path)
            return {}
        return {str(key): value for key, value in payload.items() if isinstance(value, dict)}

    def _quarantine(self) -> Path:
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
        target = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
        os.replace(self.path, target)
        logger.error("Charge store %s is not a JSON object; moved it to %s", self.path, target)
        return target

    def _write_all(self, records: dict[str, dict[str, Any]]) -> None:
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(records, handle, ensure_ascii=False, indent=2, default=str)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _upsert_sync(
        self, charge_id: str, fields: dict[str, Any], observed_at: int | None
    ) -> dict[str, Any]:
        with FileLock(self.path, timeout=self._lock_timeout):
            records = self._read_all(quarantine=True)
            existing = records.get(charge_id)
            now = _now_iso()
            record: dict[str, Any] = dict(existing) if existing else {"id": charge_id, "created_at": now}

            if observed_at is not None:
                stored_at = record.get("observed_at")
                if isinstance(stored_at, int) and stored_at > observed_at:
                    logger.info(
                        "stale_observation_ignored charge_id=%s incoming_status=%s stored_status=%s",
                        charge_id,
                        fields.get("status"),
                        record.get("status"),
                    )
                    fields = {k: v for k, v in fields.items() if k not in OBSERVATION_FIELDS}
                else:
                    record["observed_at"] = observed_at

            fields.pop("id", None)
            fields.pop("created_at", None)
            record.update(fields)
            record["updated_at"] = now
            records[charge_id] = record
            self._write_all(records)
            return dict(record)

    def _mark_forwarded_sync(self, charge_id: str) -> bool:
        with FileLock(self.path, timeout=self._lock_timeout):
            records = self._read_all(quarantine=True)
            record = records.get(charge_id)
            if record is None or record.get("print_forwarded_at"):
                return False
            now = _now_iso()
            record["print_forwarded_at"] = now
            record["updated_at"] = now
            self._write_all(records)
            return True


__all__ = ["ChargeStore", "OBSERVATION_FIELDS"]
