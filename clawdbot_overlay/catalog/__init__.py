"""Persistent catalogs of live overlay records and their lookup services."""

from clawdbot_overlay.catalog.index_store import (
    AgentCatalogIndex,
    CatalogIndex,
    ServiceCatalogIndex,
    connect_catalog,
)
from clawdbot_overlay.catalog.lookup import AgentLookupService, LookupService, ServiceLookupService
from clawdbot_overlay.catalog.query import LookupQueryError, QueryEngine

__all__ = [
    "AgentCatalogIndex",
    "AgentLookupService",
    "CatalogIndex",
    "LookupQueryError",
    "LookupService",
    "QueryEngine",
    "ServiceCatalogIndex",
    "ServiceLookupService",
    "connect_catalog",
]
