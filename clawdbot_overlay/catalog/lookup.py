"""Host-facing lookup services over the catalog indexes.

The hosting engine notifies lookup services about outputs admitted to,
spent from, or evicted from a topic, and forwards lookup questions to them.
These classes translate those callbacks onto a :class:`CatalogIndex` and
ignore notifications for topics they do not own.
"""

from __future__ import annotations

import logging
from typing import Any, List

from clawdbot_overlay.catalog.index_store import (
    AgentCatalogIndex,
    CatalogIndex,
    ServiceCatalogIndex,
)
from clawdbot_overlay.model import LookupServiceName, OutputRef, Topic
from clawdbot_overlay.script_codec import Script
from clawdbot_overlay.topic_managers import VERSION

logger = logging.getLogger(__name__)


def _topic_value(topic: Topic | str) -> str:
    return topic.value if isinstance(topic, Topic) else str(topic)


class LookupService:
    service_name: LookupServiceName
    display_name: str = ""
    short_description: str = ""
    admission_mode = "locking-script"
    spend_notification_mode = "none"

    def __init__(self, index: CatalogIndex) -> None:
        self.index = index

    @property
    def topic(self) -> Topic:
        return self.index.topic

    def _owns(self, topic: Topic | str) -> bool:
        return _topic_value(topic) == self.topic.value

    def output_admitted(
        self, topic: Topic | str, txid: str, output_index: int, script: Script | bytes
    ) -> None:
        if not self._owns(topic):
            return
        self.index.on_admitted(txid, output_index, script)

    def output_spent(self, topic: Topic | str, txid: str, output_index: int) -> None:
        if not self._owns(topic):
            return
        self.index.on_spent(txid, output_index)

    def output_evicted(self, txid: str, output_index: int) -> None:
        self.index.on_evicted(txid, output_index)

    def lookup(self, query: Any = None) -> List[OutputRef]:
        return self.index.lookup(query)

    def metadata(self) -> dict[str, Any]:
        return {
            "name": self.display_name,
            "shortDescription": self.short_description,
            "version": VERSION,
        }

    def documentation(self) -> str:
        raise NotImplementedError


class AgentLookupService(LookupService):
    service_name = LookupServiceName.AGENTS
    display_name = "Clawdbot Agent Lookup Service"
    short_description = "Search for Clawdbot agents by identity key, name, or capability"

    def __init__(self, index: AgentCatalogIndex) -> None:
        super().__init__(index)

    def documentation(self) -> str:
        return f"""# {self.service_name.value}: agent lookup

Queries identity records indexed from {Topic.IDENTITY.value}.

## Query
    {{"identityKey": "02ab...", "name": "researcher", "capability": "code-review"}}

All fields are optional and combine with AND; omit them all to list agents.

- identityKey: exact match on the agent's compressed public key
- name: case-insensitive substring of the agent name
- capability: agents advertising the given capability

## Response
Up to 100 {{"txid", "outputIndex"}} references to matching identity outputs.
"""


class ServiceLookupService(LookupService):
    service_name = LookupServiceName.SERVICES
    display_name = "Clawdbot Service Catalog Lookup"
    short_description = "Search for Clawdbot agent services by type, price, or provider"

    def __init__(self, index: ServiceCatalogIndex) -> None:
        super().__init__(index)

    def documentation(self) -> str:
        return f"""# {self.service_name.value}: service catalog lookup

Queries service offers indexed from {Topic.SERVICES.value}.

## Query
    {{"serviceType": "paper-analysis", "maxPriceSats": 1000, "provider": "02ab..."}}

All fields are optional and combine with AND; omit them all to list services.

- serviceType: exact match on serviceId
- maxPriceSats: maximum price in satoshis, inclusive
- provider: exact match on the provider's identity key

## Response
Up to 100 {{"txid", "outputIndex"}} references to matching service outputs.
"""


__all__ = ["AgentLookupService", "LookupService", "ServiceLookupService"]
