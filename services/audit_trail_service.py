"""
Audit Trail Service - append-only record of lifecycle and on-chain events
Recording is best-effort: failures are logged and reported, never raised
"""

import logging
from datetime import datetime
from typing import Dict, Any, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import async_managed_session, get_session_factory
from models import AuditLog
from utils.helpers import isoformat_utc, to_naive_utc

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class AuditTrailService:
    """Service for audit trail recording and retrieval"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory or get_session_factory()

    async def record(
        self,
        actor_id: str,
        entity: str,
        entity_id: str,
        action: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Append an audit entry
        Returns: {'logged': bool, 'audit_id': int} or {'logged': False, 'error': str}
        """
        try:
            async with async_managed_session(self.session_factory) as session:
                audit_log = AuditLog(
                    actor_id=actor_id,
                    entity=entity,
                    entity_id=entity_id,
                    action=action,
                    extra_data=metadata or {},
                )
                session.add(audit_log)
                await session.flush()
                audit_id = audit_log.id

            logger.debug(f"📝 Audit {entity}.{action} for {entity_id} by {actor_id}")
            return {"logged": True, "audit_id": audit_id}

        except Exception as e:
            logger.error(f"❌ Error recording audit {entity}.{action} for {entity_id}: {e}")
            return {"logged": False, "error": str(e)}

    async def find_logs(
        self,
        entity: Optional[str] = None,
        entity_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """
        Retrieve audit entries with filtering options, newest first
        Returns: {'audit_logs': list, 'total_count': int, 'filters_applied': dict}
        """
        conditions = []
        filters_applied: Dict[str, Any] = {}

        if entity:
            conditions.append(AuditLog.entity == entity)
            filters_applied["entity"] = entity
        if entity_id:
            conditions.append(AuditLog.entity_id == entity_id)
            filters_applied["entity_id"] = entity_id
        if actor_id:
            conditions.append(AuditLog.actor_id == actor_id)
            filters_applied["actor_id"] = actor_id
        if start_time:
            conditions.append(AuditLog.created_at >= to_naive_utc(start_time))
            filters_applied["start_time"] = isoformat_utc(start_time)
        if end_time:
            conditions.append(AuditLog.created_at <= to_naive_utc(end_time))
            filters_applied["end_time"] = isoformat_utc(end_time)

        async with async_managed_session(self.session_factory) as session:
            total_count = (
                await session.execute(select(func.count(AuditLog.id)).where(*conditions))
            ).scalar_one()

            audit_logs = (
                await session.execute(
                    select(AuditLog)
                    .where(*conditions)
                    .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
                    .offset(offset)
                    .limit(limit)
                )
            ).scalars().all()

        formatted_logs = [
            {
                "id": log.id,
                "actor_id": log.actor_id,
                "entity": log.entity,
                "entity_id": log.entity_id,
                "action": log.action,
                "event": log.event_name,
                "metadata": log.extra_data or {},
                "created_at": isoformat_utc(log.created_at),
            }
            for log in audit_logs
        ]

        return {
            "audit_logs": formatted_logs,
            "total_count": total_count,
            "filters_applied": filters_applied,
            "page_info": {
                "limit": limit,
                "offset": offset,
                "returned_count": len(formatted_logs),
            },
        }
