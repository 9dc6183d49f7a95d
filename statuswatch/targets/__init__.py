"""Monitored target records — models, SQLite store, YAML seeding."""

from .models import CHECK_STATE_FIELDS, GlobalSettings, MonitoringSettings, ServiceStatus, Target
from .store import EligibilityFilter, SQLiteTargetStore, TargetStore
