"""
Session-Tiers: hot/cold lifecycle for chat conversations.

Hot tier (Redis):
  HotStore, RedisHotStore, InMemoryHotStore, create_redis_client
  SessionMessage, SessionMetadata

Cold tier (PostgreSQL via SQLAlchemy async):
  Base, ArchiveRecord, ArchiveIndex, SessionStatus, ColdStore, Page, ArchiveSummary, ArchiveDetail
  set_database_url, get_engine, get_session_factory, init_db, session_scope, dispose_engine

Lifecycle:
  SessionArchiver, SessionReactivator, ConsistencyChecker, BacklogMonitor, LifecycleScheduler
  SessionLifecycle, DashboardSnapshot

Configuration, logging and metrics:
  Settings, get_settings, configure_logging, MetricsRegistry, get_registry

In Python: help(session_tiers.SessionLifecycle) etc.
"""

from session_tiers.archiver import ArchiveRunResult, SessionArchiver
from session_tiers.base import Base
from session_tiers.cold_store import ArchiveDetail, ArchiveSummary, ColdStore, Page
from session_tiers.config import Settings, get_settings
from session_tiers.consistency import ConsistencyChecker, ConsistencyReport
from session_tiers.db import (
    dispose_engine,
    get_engine,
    get_session_factory,
    init_db,
    session_scope,
    set_database_url,
)
from session_tiers.errors import (
    BacklogThresholdExceeded,
    ColdStoreUnavailable,
    DualExistenceViolation,
    HotStoreUnavailable,
    OrphanViolation,
    RaceDetected,
    SerializationFault,
    SessionTiersError,
)
from session_tiers.hot_store import HotStore, InMemoryHotStore, RedisHotStore, create_redis_client
from session_tiers.log import configure_logging
from session_tiers.messages import SessionMessage, SessionMetadata
from session_tiers.metrics import MetricsRegistry, get_registry
from session_tiers.models import ArchiveIndex, ArchiveRecord, SessionStatus
from session_tiers.monitor import BacklogMonitor, parse_group_lag
from session_tiers.reactivation import SessionReactivator
from session_tiers.scheduler import LifecycleScheduler
from session_tiers.service import DashboardSnapshot, SessionLifecycle

__all__ = [
    "ArchiveDetail",
    "ArchiveIndex",
    "ArchiveRecord",
    "ArchiveRunResult",
    "ArchiveSummary",
    "BacklogMonitor",
    "BacklogThresholdExceeded",
    "Base",
    "ColdStore",
    "ColdStoreUnavailable",
    "ConsistencyChecker",
    "ConsistencyReport",
    "DashboardSnapshot",
    "DualExistenceViolation",
    "HotStore",
    "HotStoreUnavailable",
    "InMemoryHotStore",
    "LifecycleScheduler",
    "MetricsRegistry",
    "OrphanViolation",
    "Page",
    "RaceDetected",
    "RedisHotStore",
    "SerializationFault",
    "SessionArchiver",
    "SessionLifecycle",
    "SessionMessage",
    "SessionMetadata",
    "SessionReactivator",
    "SessionStatus",
    "SessionTiersError",
    "Settings",
    "configure_logging",
    "create_redis_client",
    "dispose_engine",
    "get_engine",
    "get_registry",
    "get_session_factory",
    "get_settings",
    "init_db",
    "parse_group_lag",
    "session_scope",
    "set_database_url",
]
