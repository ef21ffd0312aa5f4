"""
SQLAlchemy repository implementations
"""
import asyncio
import logging
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional

from sqlalchemy import delete, select, update, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from ..core.parser import FlowParser
from ..exceptions import PersistenceUnavailableError
from ..models.execution import (
    Execution, ExecutionStatus, StepLogEntry, StepStatus, TERMINAL_STATUSES,
)
from ..models.flow import BotFlow
from ..models.lead import LeadMutation, MutationType
from .repository import ExecutionRepository, FlowRepository, RotationCursorRepository
from .sqlalchemy_models import (
    Base,
    ExecutionRecord,
    FlowRecord,
    FlowVersionRecord,
    RotationCursorRecord,
    RotationPickRecord,
    StepLogRecord,
    StepMutationRecord,
)


logger = logging.getLogger(__name__)


class DatabaseManager:
    """Owns the async engine and hands out transactional sessions"""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine: Optional[AsyncEngine] = None
        self.async_session_maker = None

    async def initialize(self):
        options = {"echo": False, "pool_pre_ping": True}
        if not self.database_url.startswith("sqlite"):
            options.update(pool_size=20, max_overflow=10)
        self.engine = create_async_engine(self.database_url, **options)

        self.async_session_maker = sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        if self.engine:
            await self.engine.dispose()

    @asynccontextmanager
    async def get_session(self):
        """Session committed on success, rolled back on any error"""
        async with self.async_session_maker() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Database operation failed: {e}")
                raise PersistenceUnavailableError(str(e)) from e
            except Exception:
                await session.rollback()
                raise


class SQLAlchemyFlowRepository(FlowRepository):

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager
        self.parser = FlowParser()

    async def publish(self, flow: BotFlow) -> int:
        async with self.db.get_session() as session:
            record = await session.get(FlowRecord, flow.id, with_for_update=True)
            if record is None:
                record = FlowRecord(id=flow.id, workspace_id=flow.workspace_id, latest_version=0)
                session.add(record)
            version = record.latest_version + 1
            record.latest_version = version
            record.is_active = True
            await session.flush()

            definition = self.parser.to_dict(flow)
            definition["version"] = version
            session.add(FlowVersionRecord(
                flow_id=flow.id,
                version=version,
                name=flow.name,
                definition=definition,
            ))
            return version

    async def get(self, flow_id: str, version: Optional[int] = None) -> Optional[BotFlow]:
        async with self.db.get_session() as session:
            record = await session.get(FlowRecord, flow_id)
            if record is None:
                return None
            version = version or record.latest_version
            version_record = await session.get(FlowVersionRecord, (flow_id, version))
            if version_record is None:
                return None
            return self._to_flow(version_record, record)

    async def set_active(self, flow_id: str, active: bool) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(FlowRecord).where(FlowRecord.id == flow_id).values(is_active=active)
            )
            return result.rowcount > 0

    async def list_active(self, workspace_id: Optional[str] = None) -> List[BotFlow]:
        async with self.db.get_session() as session:
            query = (
                select(FlowRecord, FlowVersionRecord)
                .join(FlowVersionRecord, (FlowVersionRecord.flow_id == FlowRecord.id)
                      & (FlowVersionRecord.version == FlowRecord.latest_version))
                .where(FlowRecord.is_active.is_(True))
            )
            if workspace_id is not None:
                query = query.where(FlowRecord.workspace_id == workspace_id)
            result = await session.execute(query)
            return [self._to_flow(version, record) for record, version in result.all()]

    async def record_execution(self, flow_id: str) -> None:
        async with self.db.get_session() as session:
            await session.execute(
                update(FlowRecord)
                .where(FlowRecord.id == flow_id)
                .values(executions_count=FlowRecord.executions_count + 1)
            )

    def _to_flow(self, version_record: FlowVersionRecord, record: FlowRecord) -> BotFlow:
        definition = dict(version_record.definition)
        definition["version"] = version_record.version
        definition["is_active"] = record.is_active
        flow = self.parser.parse_dict(definition)
        flow.executions_count = record.executions_count or 0
        return flow


class SQLAlchemyExecutionRepository(ExecutionRepository):

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, execution: Execution) -> str:
        async with self.db.get_session() as session:
            await self._upsert(session, execution)
            return execution.id

    async def get(self, execution_id: str) -> Optional[Execution]:
        async with self.db.get_session() as session:
            record = await session.get(ExecutionRecord, execution_id)
            return Execution.from_dict(record.state) if record else None

    async def commit_step(
        self,
        execution: Execution,
        mutations: List[LeadMutation],
        log: Optional[StepLogEntry] = None,
    ) -> None:
        async with self.db.get_session() as session:
            await self._upsert(session, execution)
            await session.flush()
            for mutation in mutations:
                session.add(StepMutationRecord(
                    execution_id=execution.id,
                    lead_id=mutation.lead_id,
                    mutation_type=mutation.type.value,
                    value=mutation.value,
                    step_key=mutation.key,
                ))
            if log is not None:
                session.add(StepLogRecord(
                    execution_id=execution.id,
                    step_sequence=log.step_sequence,
                    node_id=log.node_id,
                    node_type=log.node_type,
                    status=log.status.value,
                    message=log.message,
                    created_at=log.created_at,
                ))

    async def list_mutations(self, execution_id: str) -> List[LeadMutation]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(StepMutationRecord)
                .where(StepMutationRecord.execution_id == execution_id)
                .order_by(StepMutationRecord.id)
            )
            return [
                LeadMutation(
                    lead_id=row.lead_id,
                    type=MutationType(row.mutation_type),
                    value=row.value,
                    key=row.step_key or "",
                )
                for row in result.scalars()
            ]

    async def list_step_logs(self, execution_id: str) -> List[StepLogEntry]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(StepLogRecord)
                .where(StepLogRecord.execution_id == execution_id)
                .order_by(StepLogRecord.id)
            )
            return [
                StepLogEntry(
                    execution_id=row.execution_id,
                    step_sequence=row.step_sequence,
                    node_id=row.node_id,
                    status=StepStatus(row.status),
                    message=row.message or "",
                    node_type=row.node_type,
                    created_at=row.created_at,
                )
                for row in result.scalars()
            ]

    async def find_active(self, lead_id: str, flow_id: str) -> Optional[Execution]:
        active = [s.value for s in ExecutionStatus if s not in TERMINAL_STATUSES]
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ExecutionRecord).where(
                    ExecutionRecord.lead_id == lead_id,
                    ExecutionRecord.flow_id == flow_id,
                    ExecutionRecord.status.in_(active),
                ).limit(1)
            )
            record = result.scalar_one_or_none()
            return Execution.from_dict(record.state) if record else None

    async def list_by_status(self, status: ExecutionStatus) -> List[Execution]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ExecutionRecord).where(ExecutionRecord.status == status.value)
            )
            return [Execution.from_dict(record.state) for record in result.scalars()]

    async def list_by_lead(self, lead_id: str) -> List[Execution]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ExecutionRecord)
                .where(ExecutionRecord.lead_id == lead_id)
                .order_by(ExecutionRecord.created_at)
            )
            return [Execution.from_dict(record.state) for record in result.scalars()]

    async def acquire_lease(self, execution_id: str, owner: str, ttl: float) -> bool:
        now = time.time()
        async with self.db.get_session() as session:
            result = await session.execute(
                update(ExecutionRecord)
                .where(
                    ExecutionRecord.id == execution_id,
                    or_(
                        ExecutionRecord.lease_owner.is_(None),
                        ExecutionRecord.lease_owner == owner,
                        ExecutionRecord.lease_expires_at < now,
                    ),
                )
                .values(lease_owner=owner, lease_expires_at=now + ttl)
            )
            return result.rowcount == 1

    async def release_lease(self, execution_id: str, owner: str) -> None:
        async with self.db.get_session() as session:
            await session.execute(
                update(ExecutionRecord)
                .where(ExecutionRecord.id == execution_id, ExecutionRecord.lease_owner == owner)
                .values(lease_owner=None, lease_expires_at=None)
            )

    async def _upsert(self, session: AsyncSession, execution: Execution):
        record = await session.get(ExecutionRecord, execution.id)
        if record is None:
            record = ExecutionRecord(id=execution.id)
            session.add(record)
        record.flow_id = execution.flow_id
        record.flow_version = execution.flow_version
        record.workspace_id = execution.workspace_id
        record.lead_id = execution.lead_id
        record.status = execution.status.value
        record.current_node_id = execution.current_node_id
        record.step_sequence = execution.step_sequence
        record.state = execution.to_dict()


class SQLAlchemyRotationCursorRepository(RotationCursorRepository):
    """Cursor row updated in one transaction, serialized per workspace"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get_cursor(self, workspace_id: str) -> Optional[str]:
        async with self.db.get_session() as session:
            record = await session.get(RotationCursorRecord, workspace_id)
            return record.last_user_id if record else None

    async def rotate(
        self,
        workspace_id: str,
        key: str,
        choose: Callable[[Optional[str]], str],
    ) -> str:
        async with self._locks[workspace_id]:
            async with self.db.get_session() as session:
                pick = await session.get(RotationPickRecord, key)
                if pick is not None:
                    return pick.user_id

                cursor = await session.get(RotationCursorRecord, workspace_id, with_for_update=True)
                if cursor is None:
                    cursor = RotationCursorRecord(workspace_id=workspace_id)
                    session.add(cursor)
                chosen = choose(cursor.last_user_id)
                cursor.last_user_id = chosen
                session.add(RotationPickRecord(step_key=key, workspace_id=workspace_id, user_id=chosen))
                return chosen

    async def forget(self, key: str) -> None:
        async with self.db.get_session() as session:
            await session.execute(delete(RotationPickRecord).where(RotationPickRecord.step_key == key))
