"""
Append-only audit trail for permission-affecting administrative actions.

Entries are written in their own session after the mutation they describe
has committed. A failed write is logged and swallowed: the authorization
change already happened and stays in effect.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple
from fastapi import Request
from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import config
from app.core.database.engine import bounded
from app.core.errors import StoreUnavailable
from app.features.permissions.models import AuditAction, AuditLog
from app.features.permissions.schemas import AuditLogFilter
from app.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class AuditContext:
    """Who performed an administrative write, and from where."""
    actor_user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_request(cls, request: Request, actor_user_id: Optional[str]) -> "AuditContext":
        user_agent = request.headers.get("user-agent")
        return cls(
            actor_user_id=actor_user_id,
            ip_address=request.client.host if request.client else None,
            user_agent=user_agent[:255] if user_agent else None,
        )


SYSTEM_CONTEXT = AuditContext()


@dataclass
class AuditLogEntry:
    action: AuditAction
    actor_user_id: Optional[str] = None
    target_user_id: Optional[str] = None
    role_id: Optional[str] = None
    permission_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def build(cls, action: AuditAction, context: AuditContext, **kwargs: Any) -> "AuditLogEntry":
        return cls(
            action=action,
            actor_user_id=context.actor_user_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            **kwargs,
        )


class AuditRecorder:
    """Writes and queries audit_logs rows."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timeout: float = config.STORE_TIMEOUT_SECONDS,
    ):
        self._session_factory = session_factory
        self._timeout = timeout

    async def record(self, entry: AuditLogEntry) -> bool:
        """
        Append one entry. Returns False (after logging a warning) if the
        write failed; never raises for store errors.
        """
        try:
            await bounded("audit.record", self._insert(entry), self._timeout)
        except (StoreUnavailable, SQLAlchemyError) as e:
            log.warning(
                "Audit write failed action=%s actor=%s role=%s target=%s: %s",
                entry.action.value, entry.actor_user_id, entry.role_id, entry.target_user_id, e,
            )
            return False

        log.info(
            "Audit: actor=%s action=%s role=%s permission=%s target=%s",
            entry.actor_user_id, entry.action.value, entry.role_id, entry.permission_id, entry.target_user_id,
        )
        return True

    async def _insert(self, entry: AuditLogEntry) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(AuditLog(
                    actor_user_id=entry.actor_user_id,
                    action=entry.action.value,
                    target_user_id=entry.target_user_id,
                    role_id=entry.role_id,
                    permission_id=entry.permission_id,
                    details=entry.details or None,
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                ))

    async def list_entries(self, filters: AuditLogFilter) -> Tuple[list[AuditLog], int]:
        """Return one page of entries (newest first) and the total match count."""
        return await bounded("audit.list_entries", self._select(filters), self._timeout)

    async def _select(self, filters: AuditLogFilter) -> Tuple[list[AuditLog], int]:
        stmt = select(AuditLog)
        if filters.actor_user_id:
            stmt = stmt.where(AuditLog.actor_user_id == filters.actor_user_id)
        if filters.target_user_id:
            stmt = stmt.where(AuditLog.target_user_id == filters.target_user_id)
        if filters.role_id:
            stmt = stmt.where(AuditLog.role_id == filters.role_id)
        if filters.action:
            stmt = stmt.where(AuditLog.action == filters.action)

        async with self._session_factory() as session:
            total = (await session.execute(select(func.count()).select_from(stmt.subquery()))).scalar() or 0
            page = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(filters.skip).limit(filters.limit)
            result = await session.execute(page)
            return list(result.scalars().all()), total
