"""Domain models for the Clawdbot overlay catalog.

Agents publish two kinds of records on-chain: an *identity* describing who
they are and how to reach them, and a *service* offer with a price in
satoshis.  Both travel as JSON inside ``OP_FALSE OP_RETURN`` outputs and are
represented here as plain dataclasses so the codec, validator, and catalog
layers can pass well-typed values around instead of raw dictionaries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Union

#: Protocol identifier pushed ahead of every overlay payload.
PROTOCOL_ID = "clawdbot-overlay-v1"

#: Upper bound on the number of references a single lookup returns.
MAX_LOOKUP_RESULTS = 100

COMPACT_JSON_SEPARATORS = (",", ":")


class Topic(Enum):
    """Overlay topics, one per record category."""

    IDENTITY = "tm_clawdbot_identity"
    SERVICES = "tm_clawdbot_services"

    @property
    def payload_type(self) -> str:
        """Return the JSON ``type`` tag admitted under this topic."""

        return _PAYLOAD_TYPES[self]

    @classmethod
    def coerce(cls, value: "Topic | str") -> "Topic":
        if isinstance(value, cls):
            return value
        return cls(value)


_PAYLOAD_TYPES = {Topic.IDENTITY: "identity", Topic.SERVICES: "service"}


class LookupServiceName(Enum):
    AGENTS = "ls_clawdbot_agents"
    SERVICES = "ls_clawdbot_services"


@dataclass
class IdentityRecord:
    """Agent identity published on :attr:`Topic.IDENTITY`."""

    payload_type: ClassVar[str] = "identity"

    identity_key: str
    name: str
    description: str = ""
    channels: Dict[str, str] = field(default_factory=dict)
    capabilities: List[str] = field(default_factory=list)
    timestamp: str = ""

    def to_payload(self, protocol_id: str = PROTOCOL_ID) -> dict[str, Any]:
        return {
            "protocol": protocol_id,
            "type": self.payload_type,
            "identityKey": self.identity_key,
            "name": self.name,
            "description": self.description,
            "channels": dict(self.channels),
            "capabilities": list(self.capabilities),
            "timestamp": self.timestamp,
        }


@dataclass
class ServicePricing:
    model: str
    amount_sats: int


@dataclass
class ServiceRecord:
    """Service offer published on :attr:`Topic.SERVICES`."""

    payload_type: ClassVar[str] = "service"

    identity_key: str
    service_id: str
    name: str
    pricing: ServicePricing
    description: str = ""
    timestamp: str = ""

    def to_payload(self, protocol_id: str = PROTOCOL_ID) -> dict[str, Any]:
        return {
            "protocol": protocol_id,
            "type": self.payload_type,
            "identityKey": self.identity_key,
            "serviceId": self.service_id,
            "name": self.name,
            "description": self.description,
            "pricing": {
                "model": self.pricing.model,
                "amountSats": self.pricing.amount_sats,
            },
            "timestamp": self.timestamp,
        }


ParsedPayload = Union[IdentityRecord, ServiceRecord]


@dataclass
class RawOutput:
    """A transaction output as handed over by the hosting engine.

    ``script`` is either the raw locking-script bytes or a
    :class:`~clawdbot_overlay.script_codec.Script` that a serializer has
    already split into chunks.
    """

    script: Any
    output_index: int


@dataclass(frozen=True)
class OutputRef:
    """Reference to an indexed output; what lookups return."""

    txid: str
    output_index: int

    def to_dict(self) -> dict[str, Any]:
        return {"txid": self.txid, "outputIndex": self.output_index}


@dataclass
class AdmittanceInstructions:
    outputs_to_admit: List[int] = field(default_factory=list)
    coins_to_retain: List[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "outputsToAdmit": list(self.outputs_to_admit),
            "coinsToRetain": list(self.coins_to_retain),
        }


@dataclass
class AgentLookupQuery:
    """Filters for the agents catalog; ``None`` means "no filter"."""

    identity_key: str | None = None
    name: str | None = None
    capability: str | None = None


@dataclass
class ServiceLookupQuery:
    """Filters for the services catalog; ``None`` means "no filter"."""

    service_type: str | None = None
    max_price_sats: int | None = None
    provider: str | None = None


__all__ = [
    "AdmittanceInstructions",
    "AgentLookupQuery",
    "COMPACT_JSON_SEPARATORS",
    "IdentityRecord",
    "LookupServiceName",
    "MAX_LOOKUP_RESULTS",
    "OutputRef",
    "PROTOCOL_ID",
    "ParsedPayload",
    "RawOutput",
    "ServiceLookupQuery",
    "ServicePricing",
    "ServiceRecord",
    "Topic",
]
