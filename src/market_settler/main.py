"""
PNP Market Settler - Main Entry Point

Watches the PNP factory contract for new markets, records them in a local
SQLite store and settles each one after it ends, using an AI oracle to
pick the winning outcome.

Usage:
    market-settler                          # Run the service (default)
    market-settler run
    market-settler reset-market <condition_id>
    market-settler list-markets [--status pending|settled|exhausted]
    market-settler recover                  # Replay pending journal entries
    market-settler analyze-markets <condition_id>... [--output report.json]
    market-settler check-market <condition_id>   # Print the audited decision

Configuration:
    The settler reads configuration from:
    1. Environment variables
    2. A .env file in the working directory (existing variables win)
    3. Command line arguments

Environment Variables:
    RPC_URL                       JSON-RPC endpoint (required)
    PRIVATE_KEY                   Reader wallet key (required)
    SETTLER_PRIVATE_KEY           Wallet that signs settleMarket (required)
    PNP_FACTORY_CONTRACT_ADDRESS  Factory contract address (required)
    PPLX_API_KEY                  Perplexity API key (required)
    PNP_FACTORY_ABI_PATH          ABI JSON file (default: embedded ABI)
    POA_CHAIN                     Inject the POA extraData middleware (default: false)
    PPLX_MODEL                    Oracle model (default: sonar)
    SUPABASE_URL                  Audit store URL (audit disabled if unset)
    SUPABASE_ANON_KEY             Audit store key
    SUPABASE_TABLE_NAME           Audit table (default: market_ai_reasoning)
    DB_FILE_PATH                  SQLite file (default: ./data/market_data.sqlite3)
    DB_BACKUP_INTERVAL_HOURS      Backup interval, 0 disables (default: 6)
    DB_BACKUP_KEEP                Backups to keep (default: 5)
    SETTLEMENT_DELAY_MINUTES      Wait after market end (default: 2)
    MAX_RETRIES                   Failed attempts before a market is exhausted (default: 3)
    SETTLEMENT_INTERVAL_SECONDS   Settlement job interval (default: 60)
    SETTLEMENT_PAUSE_SECONDS      Pause between markets in one run (default: 1)
    BACKFILL_INTERVAL_SECONDS     Metadata backfill interval (default: 120)
    BACKFILL_BATCH_SIZE           Markets per backfill run (default: 50)
    BACKFILL_PAUSE_SECONDS        Pause between backfill reads (default: 0.2)
    START_BLOCK                   First block of the historical sync (default: 0)
    SYNC_HISTORY_ON_STARTUP       Replay past events before going live (default: false)
    EVENT_POLL_INTERVAL_SECONDS   Live feed poll interval (default: 15)
    LOG_CHUNK_SIZE                Blocks per log query (default: 5000)
    CONFIRMATION_TIMEOUT_SECONDS  settleMarket receipt timeout (default: 300)
    LOG_LEVEL                     Logging level (DEBUG/INFO/WARNING/ERROR)
"""

from __future__ import annotations

import argparse
import asyncio
import atexit
import fcntl
import json
import logging
import os
import signal
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Generator, Optional, Sequence

# Configure logging before imports
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

from market_settler.core import (  # noqa: E402
    BackgroundTaskConfig,
    BackgroundTasksManager,
    DecisionOracle,
    OracleConfig,
    OracleError,
    PerplexityOracle,
    SettlementConfig,
    SettlementPipeline,
    reset_failed_market,
)
from market_settler.core.settlement import match_outcome  # noqa: E402
from market_settler.ingestion import (  # noqa: E402
    IngestionConfig,
    LedgerConfig,
    LedgerError,
    LedgerReader,
    MarketIngestor,
    Web3Ledger,
    normalize_condition_id,
)
from market_settler.monitoring import (  # noqa: E402
    AuditError,
    AuditSink,
    SupabaseAuditSink,
    SupabaseConfig,
    build_audit_sink,
)
from market_settler.storage import (  # noqa: E402
    Database,
    DatabaseConfig,
    MarketRepository,
    MarketStatus,
    RecoveryManager,
    RecoveryReport,
)

REQUIRED_ENV = (
    "RPC_URL",
    "PRIVATE_KEY",
    "SETTLER_PRIVATE_KEY",
    "PNP_FACTORY_CONTRACT_ADDRESS",
    "PPLX_API_KEY",
)

DEFAULT_DB_FILE = "./data/market_data.sqlite3"

READ_ONLY_COMMANDS = ("list-markets", "analyze-markets", "check-market")


class ConfigError(Exception):
    """Configuration is missing or malformed."""
    pass


class SingletonLockError(Exception):
    """Raised when another settler instance already owns the store."""
    pass


@contextmanager
def singleton_lock(pid_file: str) -> Generator[None, None, None]:
    """
    Context manager that ensures only one settler process uses a store.

    Uses file locking (fcntl.LOCK_EX | fcntl.LOCK_NB) on a PID file next to
    the database. The lock is released when the block exits or the process
    dies.

    Raises:
        SingletonLockError: If another instance holds the lock
    """
    pid_path = Path(pid_file)
    pid_path.parent.mkdir(parents=True, exist_ok=True)

    # Read existing PID before opening (which would truncate)
    existing_pid = None
    try:
        existing_pid = pid_path.read_text().strip()
    except FileNotFoundError:
        pass

    # "a+" so the file is not truncated before we have the lock
    fp = open(pid_path, "a+")

    try:
        fcntl.flock(fp.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        fp.close()
        if existing_pid:
            raise SingletonLockError(
                f"Another settler instance is already running (PID: {existing_pid}). "
                f"Stop it with: kill {existing_pid}"
            )
        raise SingletonLockError(
            f"Another settler instance is already running (lock file: {pid_file})"
        )

    fp.seek(0)
    fp.truncate()
    fp.write(str(os.getpid()))
    fp.flush()

    def cleanup():
        if fp.closed:
            return
        try:
            fcntl.flock(fp.fileno(), fcntl.LOCK_UN)
            fp.close()
            pid_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to release singleton lock {pid_file}: {e}")

    atexit.register(cleanup)

    try:
        logger.info(f"Acquired singleton lock (PID: {os.getpid()}, file: {pid_file})")
        yield
    finally:
        cleanup()
        atexit.unregister(cleanup)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


@dataclass
class SettlerConfig:
    """Complete settler configuration."""

    # Ledger
    rpc_url: str = ""
    private_key: str = ""
    settler_private_key: str = ""
    contract_address: str = ""
    abi_path: Optional[str] = None
    poa_chain: bool = False
    confirmation_timeout_seconds: float = 300
    log_chunk_size: int = 5000

    # Oracle
    pplx_api_key: str = ""
    pplx_model: str = "sonar"

    # Audit (disabled when url or key is empty)
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    supabase_table: Optional[str] = None

    # Store
    db_file_path: str = DEFAULT_DB_FILE
    backup_interval_hours: float = 6
    backup_keep: int = 5

    # Settlement
    settlement_delay_minutes: float = 2
    max_retries: int = 3
    settlement_interval_seconds: float = 60
    settlement_pause_seconds: float = 1.0

    # Backfill
    backfill_interval_seconds: float = 120
    backfill_batch_size: int = 50
    backfill_pause_seconds: float = 0.2

    # Ingestion
    start_block: int = 0
    sync_history_on_startup: bool = False
    event_poll_interval_seconds: float = 15

    @classmethod
    def from_env(cls) -> "SettlerConfig":
        """Load configuration from environment variables."""
        return cls(
            rpc_url=os.environ.get("RPC_URL", ""),
            private_key=os.environ.get("PRIVATE_KEY", ""),
            settler_private_key=os.environ.get("SETTLER_PRIVATE_KEY", ""),
            contract_address=os.environ.get("PNP_FACTORY_CONTRACT_ADDRESS", ""),
            abi_path=os.environ.get("PNP_FACTORY_ABI_PATH") or None,
            poa_chain=_env_bool("POA_CHAIN", False),
            confirmation_timeout_seconds=_env_float("CONFIRMATION_TIMEOUT_SECONDS", 300),
            log_chunk_size=_env_int("LOG_CHUNK_SIZE", 5000),
            pplx_api_key=os.environ.get("PPLX_API_KEY", ""),
            pplx_model=os.environ.get("PPLX_MODEL") or "sonar",
            supabase_url=os.environ.get("SUPABASE_URL") or None,
            supabase_key=os.environ.get("SUPABASE_ANON_KEY") or None,
            supabase_table=os.environ.get("SUPABASE_TABLE_NAME") or None,
            db_file_path=os.environ.get("DB_FILE_PATH") or DEFAULT_DB_FILE,
            backup_interval_hours=_env_float("DB_BACKUP_INTERVAL_HOURS", 6),
            backup_keep=_env_int("DB_BACKUP_KEEP", 5),
            settlement_delay_minutes=_env_float("SETTLEMENT_DELAY_MINUTES", 2),
            max_retries=_env_int("MAX_RETRIES", 3),
            settlement_interval_seconds=_env_float("SETTLEMENT_INTERVAL_SECONDS", 60),
            settlement_pause_seconds=_env_float("SETTLEMENT_PAUSE_SECONDS", 1.0),
            backfill_interval_seconds=_env_float("BACKFILL_INTERVAL_SECONDS", 120),
            backfill_batch_size=_env_int("BACKFILL_BATCH_SIZE", 50),
            backfill_pause_seconds=_env_float("BACKFILL_PAUSE_SECONDS", 0.2),
            start_block=_env_int("START_BLOCK", 0),
            sync_history_on_startup=_env_bool("SYNC_HISTORY_ON_STARTUP", False),
            event_poll_interval_seconds=_env_float("EVENT_POLL_INTERVAL_SECONDS", 15),
        )

    def validate(self) -> list[str]:
        """Names of required environment variables that are not set."""
        values = {
            "RPC_URL": self.rpc_url,
            "PRIVATE_KEY": self.private_key,
            "SETTLER_PRIVATE_KEY": self.settler_private_key,
            "PNP_FACTORY_CONTRACT_ADDRESS": self.contract_address,
            "PPLX_API_KEY": self.pplx_api_key,
        }
        return [name for name in REQUIRED_ENV if not values[name]]

    @property
    def pid_file(self) -> str:
        """Lock file guarding the store, next to the database file."""
        return f"{Path(self.db_file_path)}.pid"

    def database_config(self) -> DatabaseConfig:
        return DatabaseConfig(path=self.db_file_path, backup_keep=self.backup_keep)

    def ledger_config(self) -> LedgerConfig:
        return LedgerConfig(
            rpc_url=self.rpc_url,
            contract_address=self.contract_address,
            settler_private_key=self.settler_private_key or None,
            reader_private_key=self.private_key or None,
            abi_path=self.abi_path,
            poa_chain=self.poa_chain,
            confirmation_timeout=self.confirmation_timeout_seconds,
            log_chunk_size=self.log_chunk_size,
        )

    def oracle_config(self) -> OracleConfig:
        return OracleConfig(api_key=self.pplx_api_key, model=self.pplx_model)

    def ingestion_config(self) -> IngestionConfig:
        return IngestionConfig(
            log_chunk_size=self.log_chunk_size,
            poll_interval_seconds=self.event_poll_interval_seconds,
            backfill_batch_size=self.backfill_batch_size,
            backfill_pause_seconds=self.backfill_pause_seconds,
        )

    def settlement_config(self) -> SettlementConfig:
        return SettlementConfig(max_retries=self.max_retries)

    def task_config(self) -> BackgroundTaskConfig:
        return BackgroundTaskConfig(
            settlement_interval_seconds=self.settlement_interval_seconds,
            settlement_delay_seconds=int(self.settlement_delay_minutes * 60),
            settlement_pause_seconds=self.settlement_pause_seconds,
            max_retries=self.max_retries,
            backfill_interval_seconds=self.backfill_interval_seconds,
            backfill_batch_size=self.backfill_batch_size,
            backfill_pause_seconds=self.backfill_pause_seconds,
            backup_interval_hours=self.backup_interval_hours,
        )


async def open_store(
    config: SettlerConfig, recover: bool = True
) -> tuple[Database, RecoveryReport]:
    """Open the database and, unless told otherwise, replay pending journal entries."""
    db = Database(config.database_config())
    await db.initialize()
    if not await db.health_check():
        await db.close()
        raise RuntimeError("Database health check failed")
    report = RecoveryReport()
    if recover:
        try:
            report = await RecoveryManager(db).recover()
        except Exception:
            await db.close()
            raise
    return db, report


class SettlerApp:
    """
    Main settler orchestrator.

    Manages the lifecycle of all components:
    - Database (opened first, journal recovered before anything else)
    - Ledger connection
    - Ingestion (historical sync, live feed)
    - Background jobs (settlement, metadata backfill, backups)

    Ledger, oracle and audit sink may be injected; otherwise they are
    built from the configuration.
    """

    def __init__(
        self,
        config: SettlerConfig,
        ledger: Optional[Web3Ledger] = None,
        oracle: Optional[DecisionOracle] = None,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], float] = time.time,
        status_interval_seconds: float = 300,
    ):
        self.config = config
        self._clock = clock
        self._status_interval = status_interval_seconds
        self._running = False
        self._shutdown_event = asyncio.Event()

        self._ledger = ledger
        self._oracle = oracle
        self._audit = audit

        # Components (initialized on start)
        self._db: Optional[Database] = None
        self._repo: Optional[MarketRepository] = None
        self._ingestor: Optional[MarketIngestor] = None
        self._pipeline: Optional[SettlementPipeline] = None
        self._background_tasks: Optional[BackgroundTasksManager] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def repo(self) -> Optional[MarketRepository]:
        return self._repo

    @property
    def ingestor(self) -> Optional[MarketIngestor]:
        return self._ingestor

    @property
    def background_tasks(self) -> Optional[BackgroundTasksManager]:
        return self._background_tasks

    async def start(self) -> None:
        """Bring up every component, in dependency order."""
        logger.info("=" * 60)
        logger.info("PNP MARKET SETTLER")
        logger.info("=" * 60)
        logger.info(f"Store: {self.config.db_file_path}")
        logger.info(
            f"Settlement delay: {self.config.settlement_delay_minutes} min, "
            f"max retries: {self.config.max_retries}"
        )
        logger.info("=" * 60)

        self._running = True
        self._shutdown_event.clear()

        # Recovery runs before any job is armed
        self._db, _ = await open_store(self.config)
        self._repo = MarketRepository(self._db)
        await self._repo.sync_retry_status(self.config.max_retries)
        logger.info("Database: Connected, journal recovered")

        await self._init_ledger()
        await self._init_ingestion()
        await self._init_background_tasks()

        logger.info("Market settler started successfully and is running.")

    async def run(self) -> None:
        """Start, block until shutdown is requested, then stop."""
        self._setup_signal_handlers()
        try:
            await self.start()
            await self._run_loop()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the settler gracefully."""
        if self._db is None and self._ledger is None:
            return

        logger.info("Shutting down...")
        self._running = False
        self._shutdown_event.set()

        # Stop components in reverse order
        if self._background_tasks:
            try:
                await self._background_tasks.stop()
            except Exception as e:
                logger.warning(f"Error stopping background tasks: {e}")

        if self._ingestor:
            try:
                await self._ingestor.stop()
            except Exception as e:
                logger.warning(f"Error stopping ingestion: {e}")

        for name, client in (("oracle", self._oracle), ("audit sink", self._audit)):
            close = getattr(client, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.warning(f"Error closing {name} session: {e}")

        if self._ledger:
            try:
                await self._ledger.close()
            except Exception as e:
                logger.warning(f"Error closing ledger connection: {e}")

        if self._db:
            try:
                await self._db.close()
            except Exception as e:
                logger.warning(f"Error closing database: {e}")
            self._db = None

        logger.info("Shutdown complete")

    def request_shutdown(self, reason: str = "manual") -> None:
        """Ask the run loop to exit."""
        logger.warning(f"Shutdown requested: {reason}")
        self._running = False
        self._shutdown_event.set()

    async def _init_ledger(self) -> None:
        if self._ledger is None:
            self._ledger = Web3Ledger(self.config.ledger_config())
        await self._ledger.connect()
        logger.info("Ledger: Connected")

    async def _init_ingestion(self) -> None:
        self._ingestor = MarketIngestor(
            self._repo,
            self._ledger,
            self._ledger,
            config=self.config.ingestion_config(),
            clock=self._clock,
        )

        if self.config.sync_history_on_startup:
            await self._ingestor.sync_historical(self.config.start_block)
        else:
            logger.info("Skipped syncing past market events (SYNC_HISTORY_ON_STARTUP=false)")

        markets = await self._repo.get_all()
        logger.info(f"Markets in store: {len(markets)}")
        for market in markets:
            question = market.question or "[NO QUESTION STORED]"
            logger.debug(f"{market.condition_id}: end={market.end_time} {question[:150]}")

        await self._ingestor.start()
        logger.info("Now listening for live PNP_MarketCreated events")

    async def _init_background_tasks(self) -> None:
        if self._oracle is None:
            self._oracle = PerplexityOracle(self.config.oracle_config())
        if self._audit is None:
            self._audit = build_audit_sink(
                self.config.supabase_url,
                self.config.supabase_key,
                self.config.supabase_table,
            )

        self._pipeline = SettlementPipeline(
            self._repo,
            self._ledger,
            self._ledger,
            self._oracle,
            audit=self._audit,
            config=self.config.settlement_config(),
            clock=self._clock,
        )
        self._background_tasks = BackgroundTasksManager(
            repo=self._repo,
            pipeline=self._pipeline,
            ingestor=self._ingestor,
            db=self._db,
            config=self.config.task_config(),
            clock=self._clock,
        )
        await self._background_tasks.start()

    async def _run_loop(self) -> None:
        """Main run loop."""
        while self._running:
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._status_interval,
                )
                break  # Shutdown requested
            except asyncio.TimeoutError:
                pass

            if self._ingestor:
                logger.info(
                    f"Stats: events_applied={self._ingestor.events_applied}, "
                    f"next_block={self._ingestor.next_block}"
                )

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def handle_signal(sig):
            logger.info(f"Received signal {sig}")
            self._running = False
            self._shutdown_event.set()

        try:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))
        except (NotImplementedError, RuntimeError):
            # Not on the main thread, or unsupported platform
            pass


# =============================================================================
# COMMANDS
# =============================================================================


async def run_service(config: SettlerConfig) -> int:
    missing = config.validate()
    if missing:
        logger.error(f"Missing required environment variables: {', '.join(missing)}")
        return 1

    app = SettlerApp(config)
    try:
        await app.run()
        return 0
    except Exception as e:
        logger.exception(f"Failed to start the market settler: {e}")
        return 1


async def reset_market_command(config: SettlerConfig, condition_id: str) -> int:
    try:
        condition_id = normalize_condition_id(condition_id)
    except ValueError as e:
        logger.error(f"Invalid condition id: {e}")
        return 1

    logger.info(f"Attempting to reset failed market {condition_id}...")
    db, _ = await open_store(config)
    try:
        result = await reset_failed_market(MarketRepository(db), condition_id)
    finally:
        await db.close()

    if result.success:
        logger.info(f"Market reset successful: {result.message}")
        return 0
    logger.error(f"Failed to reset market: {result.error}")
    return 1


async def list_markets_command(config: SettlerConfig, status: Optional[str] = None) -> int:
    # Read-only: journal replay belongs to the process owning the store
    db, _ = await open_store(config, recover=False)
    try:
        repo = MarketRepository(db)
        markets = await repo.get_all()
        counts = await repo.count_by_status()
    finally:
        await db.close()

    if status:
        markets = [m for m in markets if m.settlement_status.value == status]

    for market in markets:
        question = market.question or "[NO QUESTION STORED]"
        if len(question) > 80:
            question = question[:77] + "..."
        print(
            f"{market.condition_id}  {market.settlement_status.value:<9}  "
            f"end={market.end_time if market.end_time_known else '-':<10}  "
            f"retries={market.retry_count}  token={market.winning_token or '-'}  "
            f"{question}"
        )
    print(", ".join(f"{s.value}={n}" for s, n in counts.items()))
    return 0


async def recover_command(config: SettlerConfig) -> int:
    db, report = await open_store(config)
    await db.close()
    print(f"scanned={report.scanned} replayed={report.replayed} failed={report.failed}")
    return 0 if report.failed == 0 else 1


def _utc_iso(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat().replace("+00:00", "Z")


async def analyze_markets(
    reader: LedgerReader,
    oracle: DecisionOracle,
    condition_ids: Sequence[str],
    outcomes: Sequence[str] = ("YES", "NO"),
    pause_seconds: float = 0,
    clock: Callable[[], float] = time.time,
) -> dict[str, Any]:
    """
    Ask the oracle about each market and build a resolution report.

    Read-only: nothing is settled and nothing is written to the store. A
    market is resolvable when the oracle names one of the outcomes. Ledger
    and oracle failures are recorded per market and do not stop the batch.
    """
    results: list[dict[str, Any]] = []

    for index, condition_id in enumerate(condition_ids, start=1):
        logger.info(f"[{index}/{len(condition_ids)}] Analyzing {condition_id}")
        result: dict[str, Any] = {"condition_id": condition_id, "success": False, "error": None}

        try:
            question = await reader.get_question(condition_id)
            if not question:
                raise LedgerError("Market question is empty or not found")
            end_time = await reader.get_end_time(condition_id)
            if not end_time:
                raise LedgerError("Market end time is zero or invalid")
            result["question"] = question
            result["end_time"] = _utc_iso(end_time)
            result["is_settled"] = await reader.is_settled(condition_id)

            answer = await oracle.ask(question, list(outcomes))
        except (LedgerError, OracleError) as e:
            logger.error(f"Analysis failed for {condition_id}: {e}")
            result["error"] = str(e)
        else:
            resolvable = answer.answer is not None and match_outcome(answer.answer, outcomes) is not None
            result.update(
                success=True,
                answer=answer.answer,
                resolvable=resolvable,
                reasoning=answer.reasoning,
            )

        result["timestamp"] = _utc_iso(clock())
        results.append(result)

        if pause_seconds > 0 and index < len(condition_ids):
            await asyncio.sleep(pause_seconds)

    analyzed = [r for r in results if r["success"]]
    return {
        "timestamp": _utc_iso(clock()),
        "total_processed": len(results),
        "successful": len(analyzed),
        "failed": len(results) - len(analyzed),
        "resolvable_count": sum(1 for r in analyzed if r["resolvable"]),
        "unresolvable_count": sum(1 for r in analyzed if not r["resolvable"]),
        "results": results,
    }


async def analyze_markets_command(
    config: SettlerConfig,
    condition_ids: Sequence[str],
    output: Optional[str] = None,
    pause_seconds: float = 3.0,
    ledger: Optional[Web3Ledger] = None,
    oracle: Optional[DecisionOracle] = None,
) -> int:
    try:
        condition_ids = [normalize_condition_id(c) for c in condition_ids]
    except ValueError as e:
        logger.error(f"Invalid condition id: {e}")
        return 1

    missing = []
    if ledger is None:
        if not config.rpc_url:
            missing.append("RPC_URL")
        if not config.contract_address:
            missing.append("PNP_FACTORY_CONTRACT_ADDRESS")
    if oracle is None and not config.pplx_api_key:
        missing.append("PPLX_API_KEY")
    if missing:
        logger.error(f"Missing required environment variables: {', '.join(missing)}")
        return 1

    if ledger is None:
        # Reads only: the settler wallet is never loaded
        ledger_config = config.ledger_config()
        ledger_config.settler_private_key = None
        ledger = Web3Ledger(ledger_config)
    if oracle is None:
        oracle = PerplexityOracle(config.oracle_config())

    try:
        await ledger.connect()
        report = await analyze_markets(ledger, oracle, condition_ids, pause_seconds=pause_seconds)
    finally:
        await ledger.close()
        close = getattr(oracle, "close", None)
        if close is not None:
            await close()

    if output is None:
        stamp = report["timestamp"].replace(":", "-").replace(".", "-")
        output = f"batch-resolution-report-{stamp}.json"
    Path(output).write_text(json.dumps(report, indent=2))

    print(
        f"processed={report['total_processed']} successful={report['successful']} "
        f"failed={report['failed']} resolvable={report['resolvable_count']} "
        f"unresolvable={report['unresolvable_count']}"
    )
    print(f"Report saved to: {output}")
    return 0 if report["failed"] == 0 else 1


async def check_market_command(
    config: SettlerConfig,
    condition_id: str,
    sink: Optional[SupabaseAuditSink] = None,
) -> int:
    try:
        condition_id = normalize_condition_id(condition_id)
    except ValueError as e:
        logger.error(f"Invalid condition id: {e}")
        return 1

    if sink is None:
        if not config.supabase_url or not config.supabase_key:
            logger.error("SUPABASE_URL and SUPABASE_ANON_KEY are required to read the audit store")
            return 1
        supabase = SupabaseConfig(url=config.supabase_url, api_key=config.supabase_key)
        if config.supabase_table:
            supabase.table_name = config.supabase_table
        sink = SupabaseAuditSink(supabase)

    try:
        row = await sink.fetch(condition_id)
    except AuditError as e:
        logger.error(f"Failed to read audit record for {condition_id}: {e}")
        return 1
    finally:
        await sink.close()

    if row is None:
        print(f"No audit record for {condition_id}")
        return 1
    print(json.dumps(row, indent=2))
    return 0


def load_env_file(path: str = ".env") -> None:
    """Load environment variables from .env file if it exists."""
    env_path = Path(path)
    if env_path.exists():
        logger.info(f"Loading environment from {env_path}")
        with open(env_path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, _, value = line.partition("=")
                    value = value.strip().strip('"').strip("'")
                    os.environ.setdefault(key.strip(), value)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="market-settler",
        description="PNP Market Settler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Path to a .env file (default: .env)",
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("run", help="Run the settler service (default)")

    reset = subparsers.add_parser("reset-market", help="Make a failed market eligible again")
    reset.add_argument("condition_id", help="Market condition id (0x-prefixed hex)")

    listing = subparsers.add_parser("list-markets", help="Print stored markets")
    listing.add_argument(
        "--status",
        choices=[s.value for s in MarketStatus],
        help="Only show markets with this status",
    )

    subparsers.add_parser("recover", help="Replay pending journal entries and exit")

    analyze = subparsers.add_parser(
        "analyze-markets",
        help="Ask the oracle about markets and write a JSON report (no settlement)",
    )
    analyze.add_argument("condition_ids", nargs="+", metavar="condition_id", help="Market condition ids")
    analyze.add_argument("--output", help="Report file (default: batch-resolution-report-<time>.json)")
    analyze.add_argument(
        "--pause",
        type=float,
        default=3.0,
        help="Seconds to wait between markets (default: 3)",
    )

    check = subparsers.add_parser("check-market", help="Print the audited oracle decision for a market")
    check.add_argument("condition_id", help="Market condition id (0x-prefixed hex)")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "run"
    return args


async def main_async(args: argparse.Namespace, config: SettlerConfig) -> int:
    """Async main function."""
    try:
        if args.command == "run":
            return await run_service(config)
        if args.command == "reset-market":
            return await reset_market_command(config, args.condition_id)
        if args.command == "list-markets":
            return await list_markets_command(config, args.status)
        if args.command == "recover":
            return await recover_command(config)
        if args.command == "analyze-markets":
            return await analyze_markets_command(
                config, args.condition_ids, output=args.output, pause_seconds=args.pause
            )
        if args.command == "check-market":
            return await check_market_command(config, args.condition_id)
    except Exception as e:
        logger.exception(f"{args.command} failed: {e}")
        return 1
    logger.error(f"Unknown command: {args.command}")
    return 1


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    load_env_file(args.env_file)

    if args.log_level:
        logging.getLogger().setLevel(getattr(logging, args.log_level))

    try:
        config = SettlerConfig.from_env()
    except ConfigError as e:
        logger.error(str(e))
        return 1

    # Commands that never write the store do not need to own it
    if args.command in READ_ONLY_COMMANDS:
        return asyncio.run(main_async(args, config))

    try:
        with singleton_lock(config.pid_file):
            try:
                return asyncio.run(main_async(args, config))
            except KeyboardInterrupt:
                return 0
    except SingletonLockError as e:
        logger.error(str(e))
        print(f"\n{e}\n", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
