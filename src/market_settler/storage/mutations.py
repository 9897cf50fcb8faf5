"""
Mutation table for the markets store.

Every state change to the markets table is one named operation with a JSON
payload. The same functions are used by MarketRepository for live writes and
by RecoveryManager when replaying pending journal rows, so a replayed
operation has exactly the effect of the original call.

Each function runs inside a transaction owned by the caller and returns the
number of changed rows.
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable

import aiosqlite

MutationFn = Callable[[aiosqlite.Connection, str, dict[str, Any]], Awaitable[int]]


class UnknownOperationError(Exception):
    """Raised when a journal operation tag has no mutation function."""


async def _run(conn: aiosqlite.Connection, query: str, *args: Any) -> int:
    async with conn.execute(query, args) as cursor:
        return cursor.rowcount


async def upsert(conn: aiosqlite.Connection, condition_id: str, payload: dict[str, Any]) -> int:
    # Creator is the only mutable field reported by the event source
    query = """
        INSERT INTO markets (condition_id, creator)
        VALUES (?, ?)
        ON CONFLICT (condition_id) DO UPDATE
        SET creator = excluded.creator
        WHERE markets.creator IS NOT excluded.creator
    """
    return await _run(conn, query, condition_id, payload["creator"])


async def set_end_time(conn: aiosqlite.Connection, condition_id: str, payload: dict[str, Any]) -> int:
    query = """
        UPDATE markets
        SET end_time = ?, end_time_known = 1
        WHERE condition_id = ?
          AND (end_time IS NOT ? OR end_time_known = 0)
    """
    return await _run(conn, query, int(payload["end_time"]), condition_id, int(payload["end_time"]))


async def set_question(conn: aiosqlite.Connection, condition_id: str, payload: dict[str, Any]) -> int:
    query = """
        UPDATE markets SET question = ?
        WHERE condition_id = ? AND question IS NOT ?
    """
    return await _run(conn, query, payload["question"], condition_id, payload["question"])


async def mark_processed(conn: aiosqlite.Connection, condition_id: str, payload: dict[str, Any]) -> int:
    # Processed requires ledger settlement or a recorded winning token
    query = """
        UPDATE markets
        SET processed_for_settlement = 1, settlement_status = 'settled'
        WHERE condition_id = ?
          AND processed_for_settlement = 0
          AND (settled_on_ledger = 1 OR winning_token IS NOT NULL)
    """
    return await _run(conn, query, condition_id)


async def set_ledger_status(conn: aiosqlite.Connection, condition_id: str, payload: dict[str, Any]) -> int:
    query = """
        UPDATE markets
        SET settled_on_ledger = ?, last_ledger_check = ?
        WHERE condition_id = ?
    """
    return await _run(
        conn, query, 1 if payload["settled"] else 0, int(payload["checked_at"]), condition_id
    )


async def set_winning_token(conn: aiosqlite.Connection, condition_id: str, payload: dict[str, Any]) -> int:
    query = """
        UPDATE markets SET winning_token = ?
        WHERE condition_id = ? AND winning_token IS NOT ?
    """
    token = str(payload["winning_token"])
    return await _run(conn, query, token, condition_id, token)


async def increment_retry(conn: aiosqlite.Connection, condition_id: str, payload: dict[str, Any]) -> int:
    query = """
        UPDATE markets
        SET retry_count = retry_count + 1,
            settlement_status = CASE
                WHEN retry_count + 1 >= ? THEN 'exhausted'
                ELSE 'pending'
            END
        WHERE condition_id = ? AND processed_for_settlement = 0
    """
    return await _run(conn, query, int(payload["max_retries"]), condition_id)


async def reset_retry(conn: aiosqlite.Connection, condition_id: str, payload: dict[str, Any]) -> int:
    query = """
        UPDATE markets
        SET retry_count = 0, processed_for_settlement = 0, settlement_status = 'pending'
        WHERE condition_id = ?
    """
    return await _run(conn, query, condition_id)


async def sync_retry_status(conn: aiosqlite.Connection, condition_id: str, payload: dict[str, Any]) -> int:
    # Re-derive pending/exhausted from retry_count against the current ceiling
    query = """
        UPDATE markets
        SET settlement_status = CASE
                WHEN retry_count >= ? THEN 'exhausted'
                ELSE 'pending'
            END
        WHERE condition_id = ?
          AND processed_for_settlement = 0
          AND settlement_status IN ('pending', 'exhausted')
          AND settlement_status IS NOT CASE
                WHEN retry_count >= ? THEN 'exhausted'
                ELSE 'pending'
            END
    """
    max_retries = int(payload["max_retries"])
    return await _run(conn, query, max_retries, condition_id, max_retries)


async def record_decision(conn: aiosqlite.Connection, condition_id: str, payload: dict[str, Any]) -> int:
    query = """
        UPDATE markets SET decided_outcome = ?, decision_reasoning = ?
        WHERE condition_id = ?
    """
    return await _run(conn, query, payload["outcome"], payload.get("reasoning"), condition_id)


async def record_settlement(conn: aiosqlite.Connection, condition_id: str, payload: dict[str, Any]) -> int:
    token = payload.get("winning_token")
    query = """
        UPDATE markets
        SET settled_on_ledger = 1,
            processed_for_settlement = 1,
            settlement_status = 'settled',
            winning_token = COALESCE(?, winning_token),
            last_ledger_check = COALESCE(?, last_ledger_check)
        WHERE condition_id = ?
    """
    return await _run(
        conn,
        query,
        None if token is None else str(token),
        payload.get("checked_at"),
        condition_id,
    )


MUTATIONS: dict[str, MutationFn] = {
    "upsert": upsert,
    "set_end_time": set_end_time,
    "set_question": set_question,
    "mark_processed": mark_processed,
    "set_ledger_status": set_ledger_status,
    "set_winning_token": set_winning_token,
    "increment_retry": increment_retry,
    "reset_retry": reset_retry,
    "sync_retry_status": sync_retry_status,
    "record_decision": record_decision,
    "record_settlement": record_settlement,
}


async def apply_mutation(
    conn: aiosqlite.Connection,
    operation: str,
    condition_id: str,
    payload: Any,
) -> int:
    """
    Apply one named operation inside the caller's transaction.

    Raises:
        UnknownOperationError: operation has no mutation function
        ValueError: payload is not a JSON object or misses a field
    """
    fn = MUTATIONS.get(operation)
    if fn is None:
        raise UnknownOperationError(f"Unknown operation: {operation!r}")
    if not isinstance(payload, dict):
        raise ValueError(f"Malformed payload for {operation}: {payload!r}")
    try:
        return await fn(conn, condition_id, payload)
    except KeyError as e:
        raise ValueError(f"Payload for {operation} is missing field {e}") from e
