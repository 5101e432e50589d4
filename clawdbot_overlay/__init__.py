"""Clawdbot overlay: agent identity and service catalogs indexed from OP_RETURN outputs."""

from .model import (
    PROTOCOL_ID,
    AdmittanceInstructions,
    AgentLookupQuery,
    IdentityRecord,
    LookupServiceName,
    OutputRef,
    RawOutput,
    ServiceLookupQuery,
    ServicePricing,
    ServiceRecord,
    Topic,
)
from .script_codec import (
    Script,
    ScriptChunk,
    ScriptDecodeError,
    build_overlay_script,
    encode_record,
    extract_pushes,
    parse_script,
)
from .validator import RejectionReason, ValidationResult, decode_record, validate_pushes
from .topic_managers import IdentityTopicManager, ServicesTopicManager, TopicManager
from .catalog import (
    AgentCatalogIndex,
    AgentLookupService,
    LookupQueryError,
    ServiceCatalogIndex,
    ServiceLookupService,
)
from .config import ConfigurationError, OverlayConfig, load_overlay_config
from .overlay import ClawdbotOverlay

__all__ = [
    "PROTOCOL_ID",
    "AdmittanceInstructions",
    "AgentCatalogIndex",
    "AgentLookupQuery",
    "AgentLookupService",
    "ClawdbotOverlay",
    "ConfigurationError",
    "IdentityRecord",
    "IdentityTopicManager",
    "LookupQueryError",
    "LookupServiceName",
    "OutputRef",
    "OverlayConfig",
    "RawOutput",
    "RejectionReason",
    "Script",
    "ScriptChunk",
    "ScriptDecodeError",
    "ServiceCatalogIndex",
    "ServiceLookupQuery",
    "ServiceLookupService",
    "ServicePricing",
    "ServiceRecord",
    "Topic",
    "TopicManager",
    "ServicesTopicManager",
    "ValidationResult",
    "build_overlay_script",
    "decode_record",
    "encode_record",
    "extract_pushes",
    "load_overlay_config",
    "parse_script",
    "validate_pushes",
]
