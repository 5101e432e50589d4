from __future__ import annotations

from typing import Any

import pytest

from clawdbot_overlay.model import PROTOCOL_ID

IDENTITY_KEY = "02" + "ab" * 32
OTHER_IDENTITY_KEY = "03" + "cd" * 32


def identity_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "protocol": PROTOCOL_ID,
        "type": "identity",
        "identityKey": IDENTITY_KEY,
        "name": "researcher-bot",
        "description": "Specializes in academic paper analysis",
        "channels": {"telegram": "@researcher_bot"},
        "capabilities": ["research", "code-review"],
        "timestamp": "2026-01-30T23:00:00Z",
    }
    payload.update(overrides)
    return payload


def service_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "protocol": PROTOCOL_ID,
        "type": "service",
        "identityKey": IDENTITY_KEY,
        "serviceId": "paper-analysis",
        "name": "Academic Paper Analysis",
        "description": "Deep analysis of academic papers",
        "pricing": {"model": "per-task", "amountSats": 500},
        "timestamp": "2026-01-30T23:00:00Z",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_identity():
    return identity_payload


@pytest.fixture
def make_service():
    return service_payload
