"""
账户调度

Usage:
    from gemini_relay.scheduler import UnifiedScheduler, AccountKind
"""
from .account_types import (
    AccountCandidate,
    AccountKind,
    AccountSelection,
    CLAUDE_KINDS,
    GEMINI_KINDS,
)
from .repositories import AccountRepository, GroupRepository, RedisAccountRepository
from .session_store import SessionAffinityStore, SESSION_MAPPING_PREFIX
from .unified_scheduler import UnifiedScheduler

__all__ = [
    "AccountCandidate",
    "AccountKind",
    "AccountSelection",
    "CLAUDE_KINDS",
    "GEMINI_KINDS",
    "AccountRepository",
    "GroupRepository",
    "RedisAccountRepository",
    "SessionAffinityStore",
    "SESSION_MAPPING_PREFIX",
    "UnifiedScheduler",
]
