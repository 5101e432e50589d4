"""Translate lookup filters into bounded reads over a catalog table."""

from __future__ import annotations

import json
import logging
import math
import sqlite3
from typing import Any, List, Mapping, Optional, Tuple, Union

from clawdbot_overlay.model import (
    MAX_LOOKUP_RESULTS,
    AgentLookupQuery,
    OutputRef,
    ServiceLookupQuery,
    Topic,
)
from clawdbot_overlay.validator import MAX_AMOUNT_SATS

logger = logging.getLogger(__name__)

AGENTS_TABLE = "clawdbot_agents"
SERVICES_TABLE = "clawdbot_services"

#: SQL function registered on every catalog connection; see ``index_store``.
CASEFOLD_FUNCTION = "overlay_casefold"

AgentQueryInput = Optional[Union[AgentLookupQuery, Mapping[str, Any]]]
ServiceQueryInput = Optional[Union[ServiceLookupQuery, Mapping[str, Any]]]


class LookupQueryError(ValueError):
    """Raised when a lookup question carries a field of the wrong type."""


def _pick(mapping: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if mapping.get(key) is not None:
            return mapping[key]
    return None


def _optional_text(value: Any, field_name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise LookupQueryError(f"{field_name} must be a string")
    # Empty strings filter nothing.
    return value or None


def coerce_agent_query(query: AgentQueryInput) -> AgentLookupQuery:
    """Accept a typed query, a host-style camelCase mapping, or ``None``."""

    if query is None:
        return AgentLookupQuery()
    if isinstance(query, AgentLookupQuery):
        raw: Mapping[str, Any] = {
            "identity_key": query.identity_key,
            "name": query.name,
            "capability": query.capability,
        }
    elif isinstance(query, Mapping):
        raw = query
    else:
        raise LookupQueryError(f"Unsupported agent query type: {type(query).__name__}")

    return AgentLookupQuery(
        identity_key=_optional_text(_pick(raw, "identityKey", "identity_key"), "identityKey"),
        name=_optional_text(_pick(raw, "name"), "name"),
        capability=_optional_text(_pick(raw, "capability"), "capability"),
    )


def coerce_service_query(query: ServiceQueryInput) -> ServiceLookupQuery:
    if query is None:
        return ServiceLookupQuery()
    if isinstance(query, ServiceLookupQuery):
        raw: Mapping[str, Any] = {
            "service_type": query.service_type,
            "max_price_sats": query.max_price_sats,
            "provider": query.provider,
        }
    elif isinstance(query, Mapping):
        raw = query
    else:
        raise LookupQueryError(f"Unsupported service query type: {type(query).__name__}")

    max_price = _pick(raw, "maxPriceSats", "max_price_sats")
    if max_price is not None and (
        isinstance(max_price, bool) or not isinstance(max_price, (int, float))
    ):
        raise LookupQueryError("maxPriceSats must be a number")
    if max_price is not None and (
        (isinstance(max_price, float) and not math.isfinite(max_price))
        or not -MAX_AMOUNT_SATS - 1 <= max_price <= MAX_AMOUNT_SATS
    ):
        # SQLite binds INTEGER parameters as signed 64-bit.
        raise LookupQueryError("maxPriceSats must be a finite 64-bit value")

    return ServiceLookupQuery(
        service_type=_optional_text(_pick(raw, "serviceType", "service_type"), "serviceType"),
        max_price_sats=max_price,
        provider=_optional_text(_pick(raw, "provider"), "provider"),
    )


def build_agent_select(
    query: AgentLookupQuery, limit: int = MAX_LOOKUP_RESULTS
) -> Tuple[str, List[Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if query.identity_key:
        clauses.append("identity_key = ?")
        params.append(query.identity_key)
    if query.name:
        clauses.append(f"instr({CASEFOLD_FUNCTION}(name), ?) > 0")
        params.append(query.name.casefold())
    if query.capability:
        # Substring match on the stored JSON list; a crafted capability that
        # embeds quotes can still produce false positives.
        clauses.append("instr(capabilities, ?) > 0")
        params.append(json.dumps(query.capability))
    return _select(AGENTS_TABLE, clauses, params, limit)


def build_service_select(
    query: ServiceLookupQuery, limit: int = MAX_LOOKUP_RESULTS
) -> Tuple[str, List[Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if query.service_type:
        clauses.append("service_id = ?")
        params.append(query.service_type)
    if query.provider:
        clauses.append("identity_key = ?")
        params.append(query.provider)
    if query.max_price_sats is not None:
        clauses.append("pricing_sats <= ?")
        params.append(query.max_price_sats)
    return _select(SERVICES_TABLE, clauses, params, limit)


def _select(table: str, clauses: List[str], params: List[Any], limit: int) -> Tuple[str, List[Any]]:
    sql = f"SELECT txid, output_index FROM {table}"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " LIMIT ?"
    return sql, params + [limit]


class QueryEngine:
    """Run filtered, capped reads for one topic's catalog table.

    Results are ``(txid, output_index)`` references only; resolving them to
    full transactions is up to the caller.  No ordering is guaranteed.
    """

    def __init__(self, topic: Topic, limit: int = MAX_LOOKUP_RESULTS) -> None:
        if not 0 < limit <= MAX_LOOKUP_RESULTS:
            raise ValueError(f"limit must be between 1 and {MAX_LOOKUP_RESULTS}")
        self.topic = topic
        self.limit = limit

    def build(self, query: Any) -> Tuple[str, List[Any]]:
        if self.topic is Topic.IDENTITY:
            return build_agent_select(coerce_agent_query(query), self.limit)
        return build_service_select(coerce_service_query(query), self.limit)

    def run(self, conn: sqlite3.Connection, query: Any) -> List[OutputRef]:
        sql, params = self.build(query)
        logger.debug("Lookup on %s: %s %s", self.topic.value, sql, params)
        rows = conn.execute(sql, params).fetchall()
        return [OutputRef(txid=row[0], output_index=row[1]) for row in rows]


__all__ = [
    "AGENTS_TABLE",
    "CASEFOLD_FUNCTION",
    "LookupQueryError",
    "QueryEngine",
    "SERVICES_TABLE",
    "build_agent_select",
    "build_service_select",
    "coerce_agent_query",
    "coerce_service_query",
]
