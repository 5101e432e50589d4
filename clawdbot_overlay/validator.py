"""Schema checks for decoded overlay payloads.

Validation is all-or-nothing: a payload either becomes a fully populated
:class:`~clawdbot_overlay.model.IdentityRecord` /
:class:`~clawdbot_overlay.model.ServiceRecord`, or it is rejected with a
single machine-readable :class:`RejectionReason`.  Nothing here raises for bad
input; callers branch on :attr:`ValidationResult.ok`.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Sequence

from cryptography.hazmat.primitives.asymmetric import ec

from .model import (
    PROTOCOL_ID,
    IdentityRecord,
    ParsedPayload,
    ServicePricing,
    ServiceRecord,
    Topic,
)
from .script_codec import Script, extract_pushes

logger = logging.getLogger(__name__)

IDENTITY_KEY_PATTERN = re.compile(r"[0-9a-fA-F]{66}")

#: Largest price SQLite can store in an INTEGER column.
MAX_AMOUNT_SATS = 2**63 - 1


class RejectionReason(Enum):
    NOT_OVERLAY_SCRIPT = "not_overlay_script"
    PROTOCOL_MISMATCH = "protocol_mismatch"
    MALFORMED_JSON = "malformed_json"
    DUPLICATE_KEY = "duplicate_key"
    NOT_AN_OBJECT = "not_an_object"
    TYPE_MISMATCH = "type_mismatch"
    INVALID_IDENTITY_KEY = "invalid_identity_key"
    MISSING_NAME = "missing_name"
    INVALID_DESCRIPTION = "invalid_description"
    INVALID_CHANNELS = "invalid_channels"
    INVALID_CAPABILITIES = "invalid_capabilities"
    INVALID_TIMESTAMP = "invalid_timestamp"
    MISSING_SERVICE_ID = "missing_service_id"
    INVALID_PRICING_MODEL = "invalid_pricing_model"
    INVALID_PRICE = "invalid_price"


@dataclass
class ValidationResult:
    """Outcome of validating one payload: a record, or the reason it failed."""

    record: Optional[ParsedPayload] = None
    reason: Optional[RejectionReason] = None

    @property
    def ok(self) -> bool:
        return self.record is not None


class PayloadRejected(ValueError):
    """Internal signal carrying the first failed check."""

    def __init__(self, reason: RejectionReason, detail: str = "") -> None:
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)
        self.reason = reason


def _reject_duplicate_keys(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            raise PayloadRejected(RejectionReason.DUPLICATE_KEY, key)
        result[key] = value
    return result


def _load_json_object(raw: bytes) -> dict[str, Any]:
    try:
        text = raw.decode("utf-8")
        decoded = json.loads(text, object_pairs_hook=_reject_duplicate_keys)
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as exc:
        raise PayloadRejected(RejectionReason.MALFORMED_JSON, str(exc)) from exc
    if not isinstance(decoded, dict):
        raise PayloadRejected(RejectionReason.NOT_AN_OBJECT, type(decoded).__name__)
    return decoded


def is_compressed_secp256k1_point(identity_key: str) -> bool:
    """Return True if ``identity_key`` decodes to a point on secp256k1."""

    try:
        ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), bytes.fromhex(identity_key))
    except ValueError:
        return False
    return identity_key[:2] in {"02", "03"}


def _require_identity_key(data: dict[str, Any], verify_key_point: bool) -> str:
    value = data.get("identityKey")
    if not isinstance(value, str) or not IDENTITY_KEY_PATTERN.fullmatch(value):
        raise PayloadRejected(RejectionReason.INVALID_IDENTITY_KEY)
    if verify_key_point and not is_compressed_secp256k1_point(value):
        raise PayloadRejected(RejectionReason.INVALID_IDENTITY_KEY, "not a secp256k1 point")
    return value


def _is_text(value: Any) -> bool:
    """True for strings that survive a UTF-8 round trip.

    JSON ``\\ud800``-style escapes decode to lone surrogates, which SQLite
    refuses to bind.
    """

    if not isinstance(value, str):
        return False
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def _require_non_empty_str(data: dict[str, Any], key: str, reason: RejectionReason) -> str:
    value = data.get(key)
    if not _is_text(value) or not value:
        raise PayloadRejected(reason, key)
    return value


def _optional_str(data: dict[str, Any], key: str, reason: RejectionReason) -> str:
    value = data.get(key, "")
    if not _is_text(value):
        raise PayloadRejected(reason, key)
    return value


def _require_timestamp(data: dict[str, Any]) -> str:
    value = data.get("timestamp")
    if not _is_text(value):
        raise PayloadRejected(RejectionReason.INVALID_TIMESTAMP)
    return value


def _parse_identity(data: dict[str, Any], verify_key_point: bool) -> IdentityRecord:
    identity_key = _require_identity_key(data, verify_key_point)
    name = _require_non_empty_str(data, "name", RejectionReason.MISSING_NAME)
    description = _optional_str(data, "description", RejectionReason.INVALID_DESCRIPTION)

    channels = data.get("channels", {})
    if not isinstance(channels, dict) or not all(
        _is_text(k) and _is_text(v) for k, v in channels.items()
    ):
        raise PayloadRejected(RejectionReason.INVALID_CHANNELS)

    capabilities = data.get("capabilities")
    if not isinstance(capabilities, list) or not all(_is_text(c) for c in capabilities):
        raise PayloadRejected(RejectionReason.INVALID_CAPABILITIES)

    return IdentityRecord(
        identity_key=identity_key,
        name=name,
        description=description,
        channels=dict(channels),
        capabilities=list(capabilities),
        timestamp=_require_timestamp(data),
    )


def _parse_amount_sats(value: Any) -> int:
    # bool is an int subclass and JSON true/false is never a price.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PayloadRejected(RejectionReason.INVALID_PRICE, "amountSats must be a number")
    if isinstance(value, float):
        if not value.is_integer():
            raise PayloadRejected(RejectionReason.INVALID_PRICE, "amountSats must be integral")
        value = int(value)
    if value < 0:
        raise PayloadRejected(RejectionReason.INVALID_PRICE, "amountSats must be non-negative")
    if value > MAX_AMOUNT_SATS:
        raise PayloadRejected(RejectionReason.INVALID_PRICE, "amountSats exceeds 2**63 - 1")
    return value


def _parse_service(data: dict[str, Any], verify_key_point: bool) -> ServiceRecord:
    identity_key = _require_identity_key(data, verify_key_point)
    service_id = _require_non_empty_str(data, "serviceId", RejectionReason.MISSING_SERVICE_ID)
    name = _require_non_empty_str(data, "name", RejectionReason.MISSING_NAME)
    description = _optional_str(data, "description", RejectionReason.INVALID_DESCRIPTION)

    pricing = data.get("pricing")
    if not isinstance(pricing, dict):
        raise PayloadRejected(RejectionReason.INVALID_PRICING_MODEL, "pricing must be an object")
    model = _require_non_empty_str(pricing, "model", RejectionReason.INVALID_PRICING_MODEL)
    amount_sats = _parse_amount_sats(pricing.get("amountSats"))

    return ServiceRecord(
        identity_key=identity_key,
        service_id=service_id,
        name=name,
        description=description,
        pricing=ServicePricing(model=model, amount_sats=amount_sats),
        timestamp=_require_timestamp(data),
    )


def check_payload(
    data: dict[str, Any],
    topic: Topic,
    *,
    protocol_id: str = PROTOCOL_ID,
    verify_key_point: bool = False,
) -> ParsedPayload:
    """Validate an already-decoded JSON object for ``topic``.

    Raises :class:`PayloadRejected` on the first failed check.
    """

    if data.get("protocol") != protocol_id:
        raise PayloadRejected(RejectionReason.PROTOCOL_MISMATCH, "payload protocol field")
    if data.get("type") != topic.payload_type:
        raise PayloadRejected(RejectionReason.TYPE_MISMATCH, str(data.get("type")))
    if topic is Topic.IDENTITY:
        return _parse_identity(data, verify_key_point)
    return _parse_service(data, verify_key_point)


def validate_pushes(
    pushes: Sequence[bytes],
    topic: Topic,
    *,
    protocol_id: str = PROTOCOL_ID,
    verify_key_point: bool = False,
) -> ValidationResult:
    """Validate a ``[protocol tag, JSON]`` push pair for ``topic``."""

    try:
        if len(pushes) < 2:
            raise PayloadRejected(RejectionReason.NOT_OVERLAY_SCRIPT, "fewer than two pushes")
        if pushes[0] != protocol_id.encode("utf-8"):
            raise PayloadRejected(RejectionReason.PROTOCOL_MISMATCH, "protocol tag push")
        data = _load_json_object(pushes[1])
        record = check_payload(
            data, topic, protocol_id=protocol_id, verify_key_point=verify_key_point
        )
    except PayloadRejected as exc:
        logger.debug("Rejected %s payload: %s", topic.payload_type, exc)
        return ValidationResult(reason=exc.reason)
    return ValidationResult(record=record)


def decode_record(
    script: Script | bytes,
    topic: Topic,
    *,
    protocol_id: str = PROTOCOL_ID,
    verify_key_point: bool = False,
) -> ValidationResult:
    """Decode a locking script and validate its payload for ``topic``."""

    pushes = extract_pushes(script)
    if pushes is None:
        return ValidationResult(reason=RejectionReason.NOT_OVERLAY_SCRIPT)
    return validate_pushes(
        pushes, topic, protocol_id=protocol_id, verify_key_point=verify_key_point
    )


__all__ = [
    "IDENTITY_KEY_PATTERN",
    "MAX_AMOUNT_SATS",
    "PayloadRejected",
    "RejectionReason",
    "ValidationResult",
    "check_payload",
    "decode_record",
    "is_compressed_secp256k1_point",
    "validate_pushes",
]
