"""Discover overlay outputs in node-provided blocks and transactions.

The scanner is a read-only companion to the catalog: it feeds verbose node
transactions through the topic managers and reports which outputs each topic
would admit.  It never writes to a catalog; delivering admissions and spends
remains the hosting engine's job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .model import PROTOCOL_ID, ParsedPayload, RawOutput, Topic
from .topic_managers import IdentityTopicManager, ServicesTopicManager, TopicManager
from .validator import decode_record

logger = logging.getLogger(__name__)


@dataclass
class OverlayScanConfig:
    """Block range and limits for a scan."""

    start_height: Optional[int] = None
    end_height: Optional[int] = None
    limit: Optional[int] = None
    topics: Sequence[Topic] = field(default_factory=lambda: (Topic.IDENTITY, Topic.SERVICES))


@dataclass
class OverlayCandidate:
    """An output some topic manager would admit."""

    txid: str
    output_index: int
    topic: Topic
    height: Optional[int]
    record: Optional[ParsedPayload] = None


def outputs_from_transaction(tx_json: Dict[str, Any]) -> List[RawOutput]:
    """Convert a verbose node transaction into :class:`RawOutput` values."""

    outputs: List[RawOutput] = []
    for position, vout in enumerate(tx_json.get("vout", [])):
        script_hex = (vout.get("scriptPubKey") or {}).get("hex")
        script: Optional[bytes] = None
        if isinstance(script_hex, str):
            try:
                script = bytes.fromhex(script_hex)
            except ValueError:
                logger.debug("Non-hex scriptPubKey in %s:%s", tx_json.get("txid"), position)
        outputs.append(RawOutput(script=script, output_index=vout.get("n", position)))
    return outputs


class OverlayScanner:
    """Walk blocks or single transactions looking for overlay records."""

    def __init__(
        self,
        rpc_client,
        topic_managers: Optional[Iterable[TopicManager]] = None,
        *,
        protocol_id: str = PROTOCOL_ID,
    ) -> None:
        self.rpc_client = rpc_client
        self.protocol_id = protocol_id
        managers = (
            list(topic_managers)
            if topic_managers is not None
            else [
                IdentityTopicManager(protocol_id=protocol_id),
                ServicesTopicManager(protocol_id=protocol_id),
            ]
        )
        self.topic_managers: Dict[Topic, TopicManager] = {m.topic: m for m in managers}

    def scan_transaction(
        self,
        tx_json: Dict[str, Any],
        height: Optional[int] = None,
        topics: Optional[Sequence[Topic]] = None,
    ) -> List[OverlayCandidate]:
        txid = tx_json.get("txid") or tx_json.get("hash")
        if txid is None:
            return []
        outputs = outputs_from_transaction(tx_json)
        scripts = {output.output_index: output.script for output in outputs}

        candidates: List[OverlayCandidate] = []
        for topic, manager in self.topic_managers.items():
            if topics is not None and topic not in topics:
                continue
            instructions = manager.identify_admissible_outputs(outputs)
            for index in instructions.outputs_to_admit:
                result = decode_record(
                    scripts[index],
                    topic,
                    protocol_id=manager.protocol_id,
                    verify_key_point=manager.verify_identity_keys,
                )
                candidates.append(
                    OverlayCandidate(
                        txid=txid,
                        output_index=index,
                        topic=topic,
                        height=height,
                        record=result.record,
                    )
                )
        return candidates

    def scan_block(self, block_json: Dict[str, Any], config: OverlayScanConfig) -> List[OverlayCandidate]:
        candidates: List[OverlayCandidate] = []
        height = block_json.get("height")
        for tx in block_json.get("tx", []):
            if not isinstance(tx, dict):
                # verbosity=1 blocks only list txids
                continue
            candidates.extend(self.scan_transaction(tx, height=height, topics=config.topics))
            if config.limit is not None and len(candidates) >= config.limit:
                return candidates[: config.limit]
        return candidates

    def scan_range(self, config: OverlayScanConfig) -> List[OverlayCandidate]:
        """Scan ``start_height..end_height`` inclusive (defaults: genesis to tip)."""

        best_height = self.rpc_client.get_best_height()
        start_height = config.start_height if config.start_height is not None else 0
        end_height = config.end_height if config.end_height is not None else best_height

        candidates: List[OverlayCandidate] = []
        for height in range(start_height, end_height + 1):
            if config.limit is not None and len(candidates) >= config.limit:
                break
            block_json = self.rpc_client.getblock_by_height(height)
            candidates.extend(self.scan_block(block_json, config))
            logger.debug("Scanned block %s: %d overlay outputs so far", height, len(candidates))

        if config.limit is not None:
            candidates = candidates[: config.limit]
        return candidates

    def scan_tx(self, txid: str) -> List[OverlayCandidate]:
        verbose_tx = self.rpc_client.get_raw_transaction(txid, verbose=True)
        return self.scan_transaction(verbose_tx, height=verbose_tx.get("height"))


__all__ = [
    "OverlayCandidate",
    "OverlayScanConfig",
    "OverlayScanner",
    "outputs_from_transaction",
]
