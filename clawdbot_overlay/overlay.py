"""Wire the topic managers and lookup services into one overlay.

:class:`ClawdbotOverlay` is what a hosting engine talks to.  It routes
admission questions to the topic manager for a topic, forwards output
lifecycle notifications to every lookup service (each ignores topics it does
not own), and answers lookups by lookup service name.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Sequence

from .catalog.index_store import AgentCatalogIndex, ServiceCatalogIndex
from .catalog.lookup import AgentLookupService, LookupService, ServiceLookupService
from .config import OverlayConfig, load_overlay_config
from .model import AdmittanceInstructions, LookupServiceName, OutputRef, RawOutput, Topic
from .script_codec import Script
from .topic_managers import IdentityTopicManager, ServicesTopicManager, TopicManager

logger = logging.getLogger(__name__)


class ClawdbotOverlay:
    """Both overlay topics and both catalogs behind one object."""

    def __init__(self, config: OverlayConfig) -> None:
        self.config = config
        options = {
            "protocol_id": config.protocol_id,
            "verify_identity_keys": config.verify_identity_keys,
        }
        self.topic_managers: Dict[Topic, TopicManager] = {
            Topic.IDENTITY: IdentityTopicManager(**options),
            Topic.SERVICES: ServicesTopicManager(**options),
        }
        self.lookup_services: Dict[LookupServiceName, LookupService] = {
            LookupServiceName.AGENTS: AgentLookupService(
                AgentCatalogIndex(config.db_path, **options)
            ),
            LookupServiceName.SERVICES: ServiceLookupService(
                ServiceCatalogIndex(config.db_path, **options)
            ),
        }
        logger.debug("Overlay catalog opened at %s", config.db_path)

    @classmethod
    def from_config_file(cls, config_path: str | Path | None = None) -> "ClawdbotOverlay":
        return cls(load_overlay_config(config_path=config_path))

    def close(self) -> None:
        for service in self.lookup_services.values():
            service.index.close()

    def __enter__(self) -> "ClawdbotOverlay":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # pragma: no cover - convenience
        self.close()

    def topic_manager(self, topic: Topic | str) -> TopicManager:
        return self.topic_managers[Topic.coerce(topic)]

    def lookup_service(self, name: LookupServiceName | str) -> LookupService:
        if not isinstance(name, LookupServiceName):
            name = LookupServiceName(name)
        return self.lookup_services[name]

    def identify_admissible_outputs(
        self,
        topic: Topic | str,
        outputs: Iterable[RawOutput],
        previous_coins: Sequence[int] = (),
    ) -> AdmittanceInstructions:
        return self.topic_manager(topic).identify_admissible_outputs(outputs, previous_coins)

    def output_admitted(
        self, topic: Topic | str, txid: str, output_index: int, script: Script | bytes
    ) -> None:
        for service in self.lookup_services.values():
            service.output_admitted(topic, txid, output_index, script)

    def output_spent(self, topic: Topic | str, txid: str, output_index: int) -> None:
        for service in self.lookup_services.values():
            service.output_spent(topic, txid, output_index)

    def output_evicted(self, txid: str, output_index: int) -> None:
        for service in self.lookup_services.values():
            service.output_evicted(txid, output_index)

    def lookup(self, service: LookupServiceName | str, query: Any = None) -> List[OutputRef]:
        return self.lookup_service(service).lookup(query)

    def stats(self) -> dict[str, int]:
        stats: dict[str, int] = {}
        for service in self.lookup_services.values():
            stats.update(service.index.stats())
        return stats


__all__ = ["ClawdbotOverlay"]
