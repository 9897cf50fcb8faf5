"""
Monitoring Layer - Audit trail of oracle decisions.

Public API:
    AuditSink - Interface for decision audit backends
    AuditError - Reading the audit store failed
    SupabaseAuditSink, SupabaseConfig - Supabase/PostgREST backend
    NullAuditSink - No-op backend
    DecisionRecord - One audited decision
    build_audit_sink - Factory from configuration
"""
from market_settler.monitoring.audit import (
    AuditError,
    AuditSink,
    DecisionRecord,
    NullAuditSink,
    SupabaseAuditSink,
    SupabaseConfig,
    build_audit_sink,
)

__all__ = [
    "AuditError",
    "AuditSink",
    "DecisionRecord",
    "NullAuditSink",
    "SupabaseAuditSink",
    "SupabaseConfig",
    "build_audit_sink",
]
