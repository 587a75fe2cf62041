"""Sync run log and conflict models."""

from sqlalchemy import Column, Integer, String, DateTime, JSON, Index

from rostersync.core.database import Base, utcnow


class SyncRun(Base):
    """One execution of a sync operation."""

    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # No foreign key: runs are kept for audit after their config is deleted
    config_id = Column(Integer, nullable=False, index=True)
    organization_id = Column(Integer, nullable=False, index=True)
    sync_type = Column(String, nullable=False)  # "players", "teams", "seasons", "full"
    status = Column(String, nullable=False, default="running")  # "running", "success", "partial", "failed"
    records_fetched = Column(Integer, nullable=False, default=0)
    records_created = Column(Integer, nullable=False, default=0)
    records_updated = Column(Integer, nullable=False, default=0)
    records_skipped = Column(Integer, nullable=False, default=0)
    records_conflicted = Column(Integer, nullable=False, default=0)
    errors = Column(JSON, nullable=True)
    details = Column(JSON, nullable=True)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    __table_args__ = (Index("ix_sync_runs_org_started", "organization_id", "started_at"),)


class SyncConflict(Base):
    """An ambiguous remote-to-local match awaiting a human decision."""

    __tablename__ = "sync_conflicts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    config_id = Column(Integer, nullable=False, index=True)
    organization_id = Column(Integer, nullable=False)
    entity_type = Column(String, nullable=False)  # "player", "team", "season"
    local_id = Column(Integer, nullable=False)
    remote_id = Column(String, nullable=False)
    conflict_type = Column(String, nullable=False, default="duplicate")
    local_data = Column(JSON, nullable=True)
    remote_data = Column(JSON, nullable=True)
    resolution = Column(String, nullable=False, default="pending")  # "pending", "local_wins", "remote_wins"
    resolved_by = Column(String, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_conflicts_pending", "organization_id", "entity_type", "remote_id", "resolution"),
    )
