"""
Audit Store
===========

Durable storage of pipeline execution records and high/critical safety
alerts.

Backends:
- redis: records stored as JSON with a TTL, indexed per session
- memory: process-local dicts (development, tests, or Redis unavailable)

The orchestrator never reads from this store; it only writes through the
executor, which swallows every failure raised here.
"""

import json
import logging
import uuid
from typing import Dict, List, Optional

import redis.asyncio as aioredis

from config import Settings, get_settings
from models import AlertRecord, ExecutionRecord


logger = logging.getLogger(__name__)


class AuditStore:
    """
    Persist execution records and safety alerts.

    Call ``connect()`` once (the API lifespan does) to pick the backend. An
    unconnected store writes to memory.
    """

    def __init__(self, settings: Optional[Settings] = None, redis_client=None):
        self.settings = settings or get_settings()
        self.record_ttl = self.settings.audit_record_ttl_seconds
        self.redis_client = redis_client
        self._records: Dict[str, ExecutionRecord] = {}
        self._alerts: Dict[str, AlertRecord] = {}
        self._session_index: Dict[str, List[str]] = {}

    @property
    def backend(self) -> str:
        return "redis" if self.redis_client is not None else "memory"

    async def connect(self) -> str:
        """
        Connect to Redis when configured, falling back to memory.

        Returns:
            The backend in use ("redis" or "memory")
        """
        if self.settings.audit_backend != "redis" or self.redis_client is not None:
            return self.backend

        client = aioredis.Redis(
            host=self.settings.redis_host,
            port=self.settings.redis_port,
            db=self.settings.redis_db,
            password=self.settings.redis_password or None,
            decode_responses=True,
            socket_connect_timeout=2
        )
        try:
            await client.ping()
        except (aioredis.RedisError, OSError) as e:
            logger.warning(f"Redis unavailable for audit store, using in-memory fallback: {e}")
            await client.aclose()
            return self.backend

        self.redis_client = client
        logger.info(
            f"Audit store connected to Redis at {self.settings.redis_host}:{self.settings.redis_port}"
        )
        return self.backend

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None

    async def ping(self) -> bool:
        if self.redis_client is None:
            return False
        return bool(await self.redis_client.ping())

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def persist_execution_record(self, record: ExecutionRecord) -> str:
        """
        Store one execution record.

        Returns:
            record_id: Unique record identifier
        """
        record_id = record.record_id or str(uuid.uuid4())
        record = record.model_copy(update={"record_id": record_id})

        if self.redis_client is not None:
            await self.redis_client.setex(
                f"execution:{record_id}",
                self.record_ttl,
                record.model_dump_json()
            )
            await self._index(record.session_id, "executions", record_id)
        else:
            self._records[record_id] = record
            self._session_index.setdefault(record.session_id, []).append(record_id)

        logger.debug(f"[{record.session_id}] Stored {record.kind.value} execution record {record_id}")
        return record_id

    async def persist_alert(self, alert: AlertRecord) -> str:
        """
        Store one safety alert, keyed by session and alert id.

        Returns:
            The stored alert's key
        """
        key = f"{alert.session_id}:{alert.alert_id}"

        if self.redis_client is not None:
            await self.redis_client.setex(
                f"alert:{key}",
                self.record_ttl,
                alert.model_dump_json()
            )
            await self._index(alert.session_id, "alerts", key)
        else:
            self._alerts[key] = alert

        logger.info(f"[{alert.session_id}] Stored {alert.severity.value} safety alert {alert.alert_id}")
        return key

    async def _index(self, session_id: str, collection: str, item_id: str) -> None:
        index_key = f"session:{session_id}:{collection}"
        await self.redis_client.rpush(index_key, item_id)
        await self.redis_client.expire(index_key, self.record_ttl)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_execution_records(self, session_id: str) -> List[ExecutionRecord]:
        if self.redis_client is None:
            return [self._records[i] for i in self._session_index.get(session_id, [])]

        record_ids = await self.redis_client.lrange(f"session:{session_id}:executions", 0, -1)
        records = []
        for record_id in record_ids:
            data = await self.redis_client.get(f"execution:{record_id}")
            if data:
                records.append(ExecutionRecord.model_validate(json.loads(data)))
        return records

    async def get_alerts(self, session_id: str) -> List[AlertRecord]:
        if self.redis_client is None:
            return [a for a in self._alerts.values() if a.session_id == session_id]

        keys = await self.redis_client.lrange(f"session:{session_id}:alerts", 0, -1)
        alerts = []
        for key in keys:
            data = await self.redis_client.get(f"alert:{key}")
            if data:
                alerts.append(AlertRecord.model_validate(json.loads(data)))
        return alerts


def create_audit_store(settings: Optional[Settings] = None) -> AuditStore:
    """Factory: an unconnected store. Await ``connect()`` before first use with Redis."""
    return AuditStore(settings=settings)
