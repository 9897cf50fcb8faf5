"""
Core Layer - Settlement orchestration.

Public API:
    SettlementPipeline, SettlementConfig - One settlement attempt per market
    SettlementState, SettlementResult - Pipeline states and outcomes
    reset_failed_market, ResetResult - Administrative retry reset
    BackgroundTasksManager, BackgroundTaskConfig, JobGate - Periodic jobs
    PerplexityOracle, OracleConfig, DecisionOracle, OracleAnswer, OracleError
        - AI decision oracle
"""
from market_settler.core.background_tasks import (
    BackgroundTaskConfig,
    BackgroundTasksManager,
    JobGate,
)
from market_settler.core.oracle import (
    DecisionOracle,
    OracleAnswer,
    OracleConfig,
    OracleError,
    PerplexityOracle,
    parse_oracle_response,
)
from market_settler.core.settlement import (
    ResetResult,
    SettlementConfig,
    SettlementPipeline,
    SettlementResult,
    SettlementState,
    reset_failed_market,
)

__all__ = [
    # Settlement
    "SettlementPipeline",
    "SettlementConfig",
    "SettlementState",
    "SettlementResult",
    "reset_failed_market",
    "ResetResult",
    # Background tasks
    "BackgroundTasksManager",
    "BackgroundTaskConfig",
    "JobGate",
    # Oracle
    "PerplexityOracle",
    "OracleConfig",
    "DecisionOracle",
    "OracleAnswer",
    "OracleError",
    "parse_oracle_response",
]
