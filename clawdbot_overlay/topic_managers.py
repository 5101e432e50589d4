"""Topic managers deciding which transaction outputs join an overlay topic.

A topic manager is a pure function over a transaction's outputs: each output
is decoded and validated on its own, and the indices that pass are returned in
ascending order.  Malformed outputs are simply left out; a transaction is
never rejected as a whole and no previous coins are retained.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Sequence

from .model import PROTOCOL_ID, AdmittanceInstructions, RawOutput, Topic
from .validator import decode_record

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


class TopicManager:
    """Admit outputs whose payload validates for :attr:`topic`."""

    topic: Topic
    display_name: str = ""
    short_description: str = ""

    def __init__(self, *, protocol_id: str = PROTOCOL_ID, verify_identity_keys: bool = False) -> None:
        self.protocol_id = protocol_id
        self.verify_identity_keys = verify_identity_keys

    def is_admissible(self, output: RawOutput) -> bool:
        if output.script is None:
            return False
        result = decode_record(
            output.script,
            self.topic,
            protocol_id=self.protocol_id,
            verify_key_point=self.verify_identity_keys,
        )
        if not result.ok:
            logger.debug(
                "%s skipped output %s: %s", self.topic.value, output.output_index, result.reason
            )
        return result.ok

    def identify_admissible_outputs(
        self,
        outputs: Iterable[RawOutput],
        previous_coins: Sequence[int] = (),
    ) -> AdmittanceInstructions:
        admitted = sorted(
            output.output_index for output in outputs if self.is_admissible(output)
        )
        return AdmittanceInstructions(outputs_to_admit=admitted, coins_to_retain=[])

    def metadata(self) -> dict[str, Any]:
        return {
            "name": self.display_name,
            "shortDescription": self.short_description,
            "version": VERSION,
        }

    def documentation(self) -> str:
        raise NotImplementedError


class IdentityTopicManager(TopicManager):
    topic = Topic.IDENTITY
    display_name = "Clawdbot Identity Topic Manager"
    short_description = "Manages Clawdbot agent identity records on the overlay network"

    def documentation(self) -> str:
        return f"""# {self.topic.value}: agent identity topic

## Output format
    OP_FALSE OP_RETURN <"{self.protocol_id}"> <JSON payload>

## Payload
    {{"protocol": "{self.protocol_id}", "type": "identity", "identityKey": "02ab...",
     "name": "researcher-bot", "description": "...", "channels": {{"telegram": "@bot"}},
     "capabilities": ["research"], "timestamp": "2026-01-30T23:00:00Z"}}

## Admittance rules
1. Output is an OP_FALSE OP_RETURN script.
2. The first push is the protocol tag "{self.protocol_id}".
3. The second push is a JSON object with type "identity".
4. identityKey is a 33-byte compressed public key (66 hex characters).
5. name is a non-empty string and capabilities is an array of strings.

## Updates
An agent updates its identity by spending the previous identity output and
publishing a new one; the old record leaves the catalog when it is spent.
"""


class ServicesTopicManager(TopicManager):
    topic = Topic.SERVICES
    display_name = "Clawdbot Services Topic Manager"
    short_description = "Manages Clawdbot agent service catalog entries on the overlay network"

    def documentation(self) -> str:
        return f"""# {self.topic.value}: agent service catalog topic

## Output format
    OP_FALSE OP_RETURN <"{self.protocol_id}"> <JSON payload>

## Payload
    {{"protocol": "{self.protocol_id}", "type": "service", "identityKey": "02ab...",
     "serviceId": "paper-analysis", "name": "Academic Paper Analysis",
     "description": "...", "pricing": {{"model": "per-task", "amountSats": 500}},
     "timestamp": "2026-01-30T23:00:00Z"}}

## Admittance rules
1. Output is an OP_FALSE OP_RETURN script.
2. The first push is the protocol tag "{self.protocol_id}".
3. The second push is a JSON object with type "service".
4. identityKey is a 33-byte compressed public key (66 hex characters).
5. serviceId and name are non-empty strings.
6. pricing has a non-empty model and a non-negative integer amountSats.

## Updates
Only the latest offer per (identityKey, serviceId) stays in the catalog. An
agent may publish several services in separate outputs.
"""


TOPIC_MANAGERS = {
    Topic.IDENTITY: IdentityTopicManager,
    Topic.SERVICES: ServicesTopicManager,
}


__all__ = [
    "IdentityTopicManager",
    "ServicesTopicManager",
    "TOPIC_MANAGERS",
    "TopicManager",
]
