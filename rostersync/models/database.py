from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    String,
    Date,
    DateTime,
    Index,
    UniqueConstraint,
)
from rostersync.core.database import Base, utcnow


class OrganizationSyncConfig(Base):
    """Per-organization registry credentials and sync settings."""

    __tablename__ = "organization_sync_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, nullable=False, unique=True, index=True)
    organization_name = Column(String, nullable=True)
    api_username = Column(String, nullable=False)
    api_password_encrypted = Column(String, nullable=False)
    sync_enabled = Column(Boolean, nullable=False, default=False)
    auto_sync_frequency = Column(String, nullable=False, default="manual")  # manual, hourly, daily, weekly
    sync_in_progress = Column(Boolean, nullable=False, default=False)
    last_sync_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class EntityMapping(Base):
    """Persisted correspondence between one local record and one remote record."""

    __tablename__ = "entity_mappings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, nullable=False)
    entity_type = Column(String, nullable=False)  # "player", "team", "season"
    local_id = Column(Integer, nullable=False)
    remote_id = Column(String, nullable=False)
    remote_name = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    last_synced_at = Column(DateTime, nullable=True, default=utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "entity_type", "remote_id", name="uix_mapping_org_type_remote"),
        Index("ix_mapping_local", "entity_type", "local_id"),
    )


class Team(Base):
    """Local team (the registry calls these groups)."""

    __tablename__ = "teams"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, nullable=False, index=True)
    name = Column(String, nullable=False)
    sync_source = Column(String, nullable=False, default="manual")  # "manual", "registry"
    last_synced_at = Column(DateTime, nullable=True)


class Player(Base):
    """Local player (the registry calls these contacts)."""

    __tablename__ = "players"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, nullable=False, index=True)
    team_id = Column(Integer, nullable=True, index=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False, default="")
    jersey_number = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    sync_source = Column(String, nullable=False, default="manual")
    last_synced_at = Column(DateTime, nullable=True)


class Season(Base):
    """Local season."""

    __tablename__ = "seasons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, nullable=False, index=True)
    name = Column(String, nullable=False)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    is_current = Column(Boolean, nullable=False, default=False)
    sync_source = Column(String, nullable=False, default="manual")
    last_synced_at = Column(DateTime, nullable=True)
