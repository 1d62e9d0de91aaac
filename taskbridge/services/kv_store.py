"""Durable key-value store backed by the kv_entries table"""
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from taskbridge.models.kv_entry import KVEntry, utcnow

logger = logging.getLogger(__name__)

TASK_KEY_PREFIX = "task:"


class KVStore:
    """get/put/delete over KVEntry rows; expired rows read as missing."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, key: str) -> Optional[str]:
        row = self.db.get(KVEntry, key)
        if row is None or row.is_expired(utcnow()):
            return None
        return row.value

    def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = utcnow() + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        row = self.db.get(KVEntry, key)
        if row is None:
            row = KVEntry(key=key, value=value, expires_at=expires_at)
            self.db.add(row)
        else:
            row.value = value
            row.expires_at = expires_at
        self.db.commit()

    def delete(self, key: str) -> None:
        row = self.db.get(KVEntry, key)
        if row is not None:
            self.db.delete(row)
            self.db.commit()


class TaskLinkStore:
    """task:<id> -> issue URL mirror of the link kept in the task description."""

    def __init__(self, kv: KVStore, ttl_days: int = 365, verify_retries: int = 2):
        self.kv = kv
        self.ttl_seconds = ttl_days * 24 * 60 * 60
        self.verify_retries = verify_retries

    @staticmethod
    def _key(task_id: str) -> str:
        return f"{TASK_KEY_PREFIX}{task_id}"

    def get(self, task_id: str) -> Optional[str]:
        return self.kv.get(self._key(task_id))

    def store(self, task_id: str, issue_url: str) -> bool:
        """Write the link and read it back; returns False if it never verified."""
        key = self._key(task_id)
        for attempt in range(self.verify_retries + 1):
            try:
                self.kv.put(key, issue_url, ttl_seconds=self.ttl_seconds)
                if self.kv.get(key) == issue_url:
                    return True
                logger.warning(f"Link for task {task_id} did not verify (attempt {attempt + 1})")
            except Exception as e:
                self.kv.db.rollback()
                logger.warning(f"Failed to store link for task {task_id} (attempt {attempt + 1}): {e}")
        logger.error(f"Giving up storing link task {task_id} -> {issue_url}")
        return False

    def delete(self, task_id: str) -> None:
        """Best-effort removal."""
        try:
            self.kv.delete(self._key(task_id))
        except Exception as e:
            self.kv.db.rollback()
            logger.warning(f"Failed to delete link for task {task_id}: {e}")
