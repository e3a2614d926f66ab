import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import redis

from .config import config


logger = logging.getLogger(__name__)

KEY_PREFIX = "naar:auth:"


class RedisTokenStore:
    """Auth records (token, login phone, user) keyed by device id"""

    def __init__(self, host: Optional[str] = None, port: Optional[int] = None,
                 db: Optional[int] = None, client: Optional[redis.Redis] = None):
        if client is not None:
            self.client = client
            return

        host = host or config.session.redis_host
        port = int(port or config.session.redis_port)
        db = int(db if db is not None else config.session.redis_db)
        try:
            self.client = redis.Redis(host=host, port=port, db=db, decode_responses=True)
            self.client.ping()
            logger.info(f"Connected to Redis for token storage. db={db}")
        except redis.exceptions.ConnectionError as e:
            logger.error(f"Could not connect to Redis: {e}. Login state will not be persisted.")
            self.client = None

    @staticmethod
    def _key(device_id: str) -> str:
        return f"{KEY_PREFIX}{device_id}"

    def get_record(self, device_id: str) -> Optional[Dict[str, Any]]:
        if not self.client:
            return None
        raw = self.client.get(self._key(device_id))
        if not raw:
            return None
        record = json.loads(raw)
        if isinstance(record.get('stored_at'), str):
            record['stored_at'] = datetime.fromisoformat(record['stored_at'])
        return record

    def set_record(self, device_id: str, record: Dict[str, Any], ex: Optional[int] = None):
        if not self.client:
            return
        payload = dict(record)
        if isinstance(payload.get('stored_at'), datetime):
            payload['stored_at'] = payload['stored_at'].isoformat()
        self.client.set(self._key(device_id), json.dumps(payload), ex=ex)

    def delete_record(self, device_id: str):
        if not self.client:
            return
        self.client.delete(self._key(device_id))

    def exists_record(self, device_id: str) -> bool:
        if not self.client:
            return False
        return self.client.exists(self._key(device_id)) > 0


_token_store = None


def get_token_store() -> RedisTokenStore:
    """Return the global RedisTokenStore instance, creating it if necessary."""
    global _token_store
    if _token_store is None or not _token_store.client:
        _token_store = RedisTokenStore()
    return _token_store
