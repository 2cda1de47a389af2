from datetime import datetime, timezone

import pytest

import lead_sync
from leads import LeadSync, SyncSummary, env_flag
from lead_sync import SyncRegistry, skip_reasons_frame, summaries_frame

from conftest import FakeStore, ListSource, meta_record

NOW = datetime(2025, 3, 2, tzinfo=timezone.utc)


def make_registry(store, pages):
    built = []

    def build(s):
        built.append(s)
        return LeadSync(ListSource(pages), s)

    return SyncRegistry(store_factory=lambda: store, builders={"meta": build}), built


def test_registry_caches_engine_and_store():
    store = FakeStore()
    registry, built = make_registry(store, [[meta_record(1)]])

    assert registry.engine("meta") is registry.engine("meta")
    assert built == [store]
    assert registry.store() is store


def test_registry_rejects_unknown_source():
    registry, _ = make_registry(FakeStore(), [])
    with pytest.raises(ValueError, match="Unknown lead source"):
        registry.sync("carrier-pigeon")


def test_module_sync_uses_process_registry(monkeypatch):
    store = FakeStore()
    registry, _ = make_registry(store, [[meta_record(1), meta_record(2)]])
    monkeypatch.setattr(lead_sync, "_registry", registry)

    summary = lead_sync.sync("meta", now=NOW)

    assert summary.inserted == 2
    assert len(store.rows) == 2


def test_batch_dedup_flag(monkeypatch):
    monkeypatch.setenv("SYNC_BATCH_DEDUP", "yes")
    assert lead_sync.batch_dedup_enabled() is True
    monkeypatch.setenv("SYNC_BATCH_DEDUP", "0")
    assert lead_sync.batch_dedup_enabled() is False


def test_blank_flag_falls_back_to_default(monkeypatch):
    monkeypatch.setenv("META_FORM_AUTO_DISCOVER", "  ")
    assert env_flag("META_FORM_AUTO_DISCOVER", True) is True
    monkeypatch.setenv("META_FORM_AUTO_DISCOVER", "off")
    assert env_flag("META_FORM_AUTO_DISCOVER", True) is False


def test_report_frames():
    meta = SyncSummary(source="meta", start_time=NOW, end_time=NOW, checked=3, inserted=1)
    meta.skip("1", "Duplicate")
    meta.skip("2", "Duplicate")
    calls = SyncSummary(source="knowlarity", start_time=NOW, end_time=NOW, checked=1)
    calls.skip("c-1", "Missing required fields: phone_number")

    frame = summaries_frame([meta, calls])
    reasons = skip_reasons_frame([meta, calls])

    assert list(frame["source"]) == ["meta", "knowlarity"]
    assert list(frame["skipped"]) == [2, 1]
    assert "details" not in frame.columns
    counts = {(r.source, r.reason): r.count for r in reasons.itertuples()}
    assert counts == {("meta", "Duplicate"): 2, ("knowlarity", "Missing required fields: phone_number"): 1}


def test_skip_reasons_frame_empty():
    summary = SyncSummary(source="meta", start_time=NOW, end_time=NOW)
    assert skip_reasons_frame([summary]).empty


def test_cli_prints_summary(monkeypatch, capsys):
    store = FakeStore()
    registry, _ = make_registry(store, [[meta_record(1)]])
    monkeypatch.setattr(lead_sync, "_registry", registry)

    exit_code = lead_sync._cli(["meta", "--since", "2025-03-01T00:00:00Z"])

    assert exit_code == 0
    out = capsys.readouterr().out
    assert "meta" in out
    assert len(store.rows) == 1


def test_cli_reports_failures(monkeypatch):
    registry, _ = make_registry(FakeStore(), [[]])
    monkeypatch.setattr(lead_sync, "_registry", registry)

    assert lead_sync._cli(["meta", "--since", "not-a-date"]) == 1
