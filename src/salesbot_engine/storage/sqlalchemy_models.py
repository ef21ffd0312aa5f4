"""
SQLAlchemy table definitions
"""
from sqlalchemy import (
    Column, String, Text, Boolean, Integer, Float, DateTime, ForeignKey,
    JSON, Index, UniqueConstraint, CheckConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func


Base = declarative_base()


class FlowRecord(Base):
    """Publication state of a flow across its versions"""
    __tablename__ = 'bot_flows'

    id = Column(String(255), primary_key=True)
    workspace_id = Column(String(255), nullable=False)
    latest_version = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True)
    executions_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('idx_bot_flows_workspace', 'workspace_id'),
        Index('idx_bot_flows_active', 'is_active'),
    )


class FlowVersionRecord(Base):
    """One immutable published version"""
    __tablename__ = 'bot_flow_versions'

    flow_id = Column(String(255), ForeignKey('bot_flows.id', ondelete='CASCADE'), primary_key=True)
    version = Column(Integer, primary_key=True)
    name = Column(String(255))
    definition = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class ExecutionRecord(Base):
    __tablename__ = 'bot_executions'

    id = Column(String(36), primary_key=True)
    flow_id = Column(String(255), nullable=False)
    flow_version = Column(Integer, nullable=False)
    workspace_id = Column(String(255), nullable=False)
    lead_id = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False)
    current_node_id = Column(String(255))
    step_sequence = Column(Integer, nullable=False, default=0)
    state = Column(JSON, nullable=False)
    lease_owner = Column(String(255))
    lease_expires_at = Column(Float)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(
            "status IN ('running', 'waiting', 'completed', 'stopped', 'failed')",
            name='check_bot_execution_status'
        ),
        Index('idx_bot_executions_lead_flow', 'lead_id', 'flow_id'),
        Index('idx_bot_executions_status', 'status'),
    )


class StepMutationRecord(Base):
    """Lead mutations committed with an execution step"""
    __tablename__ = 'bot_step_mutations'

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String(36), ForeignKey('bot_executions.id', ondelete='CASCADE'), nullable=False)
    lead_id = Column(String(255), nullable=False)
    mutation_type = Column(String(50), nullable=False)
    value = Column(Text)
    step_key = Column(String(255))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index('idx_bot_step_mutations_execution', 'execution_id'),
    )


class StepLogRecord(Base):
    """Per-node execution log"""
    __tablename__ = 'bot_execution_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String(36), ForeignKey('bot_executions.id', ondelete='CASCADE'), nullable=False)
    step_sequence = Column(Integer, nullable=False)
    node_id = Column(String(255))
    node_type = Column(String(50))
    status = Column(String(20), nullable=False)
    message = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('success', 'waiting', 'skipped', 'error')",
            name='check_bot_execution_log_status'
        ),
        Index('idx_bot_execution_logs_execution', 'execution_id'),
    )


class RotationCursorRecord(Base):
    __tablename__ = 'rotation_cursors'

    workspace_id = Column(String(255), primary_key=True)
    last_user_id = Column(String(255))
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class RotationPickRecord(Base):
    """Member chosen for a step key, so retried steps pick the same member"""
    __tablename__ = 'rotation_picks'

    step_key = Column(String(255), primary_key=True)
    workspace_id = Column(String(255), nullable=False)
    user_id = Column(String(255), nullable=False)

    __table_args__ = (
        UniqueConstraint('step_key', name='unique_rotation_pick'),
    )
