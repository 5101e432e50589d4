from __future__ import annotations

import threading
from pathlib import Path

import pytest

from clawdbot_overlay.catalog import (
    AgentCatalogIndex,
    LookupQueryError,
    ServiceCatalogIndex,
)
from clawdbot_overlay.model import (
    AgentLookupQuery,
    IdentityRecord,
    OutputRef,
    ServiceLookupQuery,
    ServicePricing,
    ServiceRecord,
)
from clawdbot_overlay.script_codec import build_overlay_script

from conftest import IDENTITY_KEY, OTHER_IDENTITY_KEY, identity_payload, service_payload


def _agents(tmp_path: Path) -> AgentCatalogIndex:
    return AgentCatalogIndex(tmp_path / "overlay.sqlite")


def _services(tmp_path: Path) -> ServiceCatalogIndex:
    return ServiceCatalogIndex(tmp_path / "overlay.sqlite")


def _refs(results) -> set[tuple[str, int]]:
    return {(ref.txid, ref.output_index) for ref in results}


def test_identity_lifecycle(tmp_path: Path) -> None:
    index = _agents(tmp_path)
    script = build_overlay_script(identity_payload())

    assert index.on_admitted("tx1", 0, script)
    assert index.lookup({"identityKey": IDENTITY_KEY}) == [OutputRef("tx1", 0)]

    assert index.on_spent("tx1", 0)
    assert index.lookup({"identityKey": IDENTITY_KEY}) == []


def test_spend_is_idempotent(tmp_path: Path) -> None:
    index = _agents(tmp_path)
    index.on_admitted("tx1", 0, build_overlay_script(identity_payload()))

    assert index.on_spent("tx1", 0)
    assert not index.on_spent("tx1", 0)
    assert not index.on_spent("never-seen", 3)


def test_eviction_removes_row(tmp_path: Path) -> None:
    index = _services(tmp_path)
    index.on_admitted("tx1", 1, build_overlay_script(service_payload()))

    assert index.on_evicted("tx1", 1)
    assert index.count() == 0


def test_invalid_script_is_not_indexed(tmp_path: Path) -> None:
    index = _agents(tmp_path)

    assert not index.on_admitted("tx1", 0, b"\x00\x6a\x04junk")
    assert not index.on_admitted("tx2", 0, build_overlay_script(service_payload()))
    assert index.count() == 0


def test_readmission_overwrites_same_output(tmp_path: Path) -> None:
    index = _agents(tmp_path)
    index.on_admitted("tx1", 0, build_overlay_script(identity_payload(name="first")))
    index.on_admitted("tx1", 0, build_overlay_script(identity_payload(name="second")))

    record = index.get("tx1", 0)

    assert index.count() == 1
    assert isinstance(record, IdentityRecord)
    assert record.name == "second"


def test_get_round_trips_identity_fields(tmp_path: Path) -> None:
    index = _agents(tmp_path)
    payload = identity_payload(channels={"telegram": "@bot", "matrix": "@bot:example.org"})
    index.on_admitted("tx1", 2, build_overlay_script(payload))

    record = index.get("tx1", 2)

    assert record.to_payload() == payload
    assert index.get("tx1", 3) is None


def test_name_search_is_case_insensitive_substring(tmp_path: Path) -> None:
    index = _agents(tmp_path)
    index.on_admitted("tx1", 0, build_overlay_script(identity_payload(name="Researcher-Bot")))
    index.on_admitted("tx2", 0, build_overlay_script(identity_payload(name="joke-bot")))

    assert index.lookup({"name": "RESEARCH"}) == [OutputRef("tx1", 0)]
    assert _refs(index.lookup({"name": "bot"})) == {("tx1", 0), ("tx2", 0)}


def test_name_search_treats_wildcards_literally(tmp_path: Path) -> None:
    index = _agents(tmp_path)
    index.on_admitted("tx1", 0, build_overlay_script(identity_payload(name="100% uptime")))
    index.on_admitted("tx2", 0, build_overlay_script(identity_payload(name="100x faster")))
    index.on_admitted("tx3", 0, build_overlay_script(identity_payload(name="under-score")))

    assert index.lookup({"name": "100%"}) == [OutputRef("tx1", 0)]
    assert index.lookup({"name": "r_s"}) == []


def test_capability_filter_matches_whole_entries(tmp_path: Path) -> None:
    index = _agents(tmp_path)
    index.on_admitted("tx1", 0, build_overlay_script(identity_payload(capabilities=["research", "code-review"])))
    index.on_admitted("tx2", 0, build_overlay_script(identity_payload(capabilities=["jokes"])))

    assert index.lookup(AgentLookupQuery(capability="code-review")) == [OutputRef("tx1", 0)]
    assert index.lookup(AgentLookupQuery(capability="code")) == []


def test_agent_filters_are_conjunctive(tmp_path: Path) -> None:
    index = _agents(tmp_path)
    index.on_admitted("tx1", 0, build_overlay_script(identity_payload(name="alpha", capabilities=["jokes"])))
    index.on_admitted(
        "tx2",
        0,
        build_overlay_script(
            identity_payload(identityKey=OTHER_IDENTITY_KEY, name="alpha", capabilities=["research"])
        ),
    )

    results = index.lookup({"name": "alpha", "capability": "research"})
    by_key = index.lookup({"identityKey": OTHER_IDENTITY_KEY, "capability": "jokes"})

    assert results == [OutputRef("tx2", 0)]
    assert by_key == []


def test_empty_filter_is_capped_at_one_hundred(tmp_path: Path) -> None:
    index = _agents(tmp_path)
    script = build_overlay_script(identity_payload())
    for n in range(150):
        index.on_admitted(f"tx{n:03d}", 0, script)

    assert index.count() == 150
    assert len(index.lookup()) == 100
    assert len(index.lookup({})) == 100


def test_empty_strings_do_not_filter(tmp_path: Path) -> None:
    index = _agents(tmp_path)
    index.on_admitted("tx1", 0, build_overlay_script(identity_payload()))

    assert index.lookup({"name": "", "capability": ""}) == [OutputRef("tx1", 0)]


def test_service_offer_is_replaced_by_newer_output(tmp_path: Path) -> None:
    index = _services(tmp_path)
    index.on_admitted("tx1", 0, build_overlay_script(service_payload()))
    newer = service_payload(pricing={"model": "per-task", "amountSats": 800})
    index.on_admitted("tx2", 0, build_overlay_script(newer))

    assert index.lookup({"serviceType": "paper-analysis"}) == [OutputRef("tx2", 0)]
    assert index.get("tx1", 0) is None
    assert index.get("tx2", 0).pricing.amount_sats == 800


def test_distinct_services_from_one_provider_coexist(tmp_path: Path) -> None:
    index = _services(tmp_path)
    index.on_admitted("tx1", 0, build_overlay_script(service_payload()))
    index.on_admitted("tx1", 1, build_overlay_script(service_payload(serviceId="code-review")))
    index.on_admitted(
        "tx2", 0, build_overlay_script(service_payload(identityKey=OTHER_IDENTITY_KEY))
    )

    assert index.count() == 3
    assert index.stats() == {"serviceCount": 3, "providerCount": 2}


def test_price_bound_is_inclusive(tmp_path: Path) -> None:
    index = _services(tmp_path)
    for n, price in enumerate([0, 500, 501]):
        payload = service_payload(serviceId=f"svc-{n}", pricing={"model": "per-task", "amountSats": price})
        index.on_admitted(f"tx{n}", 0, build_overlay_script(payload))

    assert _refs(index.lookup({"maxPriceSats": 500})) == {("tx0", 0), ("tx1", 0)}
    assert _refs(index.lookup({"maxPriceSats": 0})) == {("tx0", 0)}


def test_price_bound_accepts_the_int64_ceiling(tmp_path: Path) -> None:
    index = _services(tmp_path)
    payload = service_payload(pricing={"model": "per-task", "amountSats": 2**63 - 1})
    index.on_admitted("tx1", 0, build_overlay_script(payload))

    assert _refs(index.lookup({"maxPriceSats": 2**63 - 1})) == {("tx1", 0)}
    assert index.lookup({"maxPriceSats": -(2**63)}) == []


def test_service_filters_combine(tmp_path: Path) -> None:
    index = _services(tmp_path)
    index.on_admitted("tx1", 0, build_overlay_script(service_payload()))
    index.on_admitted(
        "tx2", 0, build_overlay_script(service_payload(identityKey=OTHER_IDENTITY_KEY))
    )

    typed = index.lookup(ServiceLookupQuery(service_type="paper-analysis", provider=OTHER_IDENTITY_KEY))
    camel = index.lookup({"serviceType": "paper-analysis", "provider": IDENTITY_KEY, "maxPriceSats": 100})

    assert typed == [OutputRef("tx2", 0)]
    assert camel == []


@pytest.mark.parametrize(
    "query",
    [
        {"maxPriceSats": "cheap"},
        {"maxPriceSats": True},
        {"maxPriceSats": 2**70},
        {"maxPriceSats": -(2**70)},
        {"maxPriceSats": float("nan")},
        {"maxPriceSats": float("inf")},
        {"max_price_sats": 1e19},
        {"serviceType": 7},
        {"provider": ["02ab"]},
        "paper-analysis",
    ],
)
def test_malformed_service_queries_raise(tmp_path: Path, query) -> None:
    with pytest.raises(LookupQueryError):
        _services(tmp_path).lookup(query)


def test_malformed_agent_query_raises(tmp_path: Path) -> None:
    with pytest.raises(LookupQueryError):
        _agents(tmp_path).lookup({"name": 5})


def test_latest_collapses_multiple_identity_outputs(tmp_path: Path) -> None:
    index = _agents(tmp_path)
    index.on_admitted("tx1", 0, build_overlay_script(identity_payload(name="old-name")))
    index.on_admitted("tx2", 0, build_overlay_script(identity_payload(name="new-name")))
    index.on_admitted(
        "tx3", 0, build_overlay_script(identity_payload(identityKey=OTHER_IDENTITY_KEY))
    )

    latest = index.latest()
    by_key = {entry["identityKey"]: entry for entry in latest}

    assert len(latest) == 2
    assert by_key[IDENTITY_KEY]["name"] == "new-name"
    assert by_key[IDENTITY_KEY]["txid"] == "tx2"
    assert by_key[OTHER_IDENTITY_KEY]["outputIndex"] == 0
    assert index.stats() == {"agentCount": 2, "recordCount": 3}


def test_catalogs_share_one_database_file(tmp_path: Path) -> None:
    agents = _agents(tmp_path)
    services = _services(tmp_path)
    agents.on_admitted("tx1", 0, build_overlay_script(identity_payload()))
    services.on_admitted("tx1", 1, build_overlay_script(service_payload()))

    reopened = ServiceCatalogIndex(tmp_path / "overlay.sqlite")

    assert isinstance(reopened.get("tx1", 1), ServiceRecord)
    assert agents.count() == 1
    assert services.count() == 1


def test_in_memory_catalog() -> None:
    index = AgentCatalogIndex(":memory:")
    index.on_admitted("tx1", 0, build_overlay_script(identity_payload()))

    assert index.lookup() == [OutputRef("tx1", 0)]


def _admit_concurrently(indexes, scripts) -> None:
    barrier = threading.Barrier(len(scripts))
    errors = []

    def admit(n: int) -> None:
        barrier.wait()
        try:
            indexes[n % len(indexes)].on_admitted(f"tx{n}", 0, scripts[n])
        except Exception as exc:  # surfaced below
            errors.append(exc)

    threads = [threading.Thread(target=admit, args=(n,)) for n in range(len(scripts))]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert errors == []


def test_concurrent_offers_for_one_service_leave_one_row(tmp_path: Path) -> None:
    index = _services(tmp_path)
    scripts = [
        build_overlay_script(service_payload(pricing={"model": "per-task", "amountSats": n}))
        for n in range(8)
    ]

    _admit_concurrently([index], scripts)

    results = index.lookup({"serviceType": "paper-analysis"})
    assert index.count() == 1
    assert len(results) == 1
    assert results[0].txid in {f"tx{n}" for n in range(8)}
    assert index.get(results[0].txid, 0).pricing.amount_sats == int(results[0].txid[2:])


def test_concurrent_offers_across_connections_leave_one_row(tmp_path: Path) -> None:
    indexes = [_services(tmp_path) for _ in range(4)]
    scripts = [build_overlay_script(service_payload()) for _ in range(8)]

    _admit_concurrently(indexes, scripts)

    fresh = _services(tmp_path)
    results = fresh.lookup()
    assert fresh.count() == 1
    assert results[0].txid in {f"tx{n}" for n in range(8)}
    assert fresh.stats() == {"serviceCount": 1, "providerCount": 1}


def test_catalog_refuses_records_of_the_other_topic() -> None:
    identity = IdentityRecord(
        identity_key=IDENTITY_KEY, name="bot", description="", channels={}, capabilities=[], timestamp=""
    )
    service = ServiceRecord(
        identity_key=IDENTITY_KEY,
        service_id="svc",
        name="Service",
        description="",
        pricing=ServicePricing(model="per-task", amount_sats=1),
        timestamp="",
    )

    with pytest.raises(TypeError):
        AgentCatalogIndex(":memory:")._row_params("tx1", 0, service)
    with pytest.raises(TypeError):
        ServiceCatalogIndex(":memory:")._row_params("tx1", 0, identity)
