"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  campaign = await store.get_campaign("c1")
"""
from database.models import (
    Base, JobRow, CampaignRow, CampaignStepRow, CampaignRecipientRow,
    ContactAttemptRow, ContactRow, LeadRow, ChannelConfigRow, TemplateRow,
    TenantRow, UserRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseOutreachStore
from database.store import SqlOutreachStore
from database.store_memory import InMemoryOutreachStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "JobRow", "CampaignRow", "CampaignStepRow", "CampaignRecipientRow",
    "ContactAttemptRow", "ContactRow", "LeadRow", "ChannelConfigRow", "TemplateRow",
    "TenantRow", "UserRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseOutreachStore",
    # Store backends
    "SqlOutreachStore", "InMemoryOutreachStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
