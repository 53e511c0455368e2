import pytest

from sentiment_fusion.core.config import settings_from_dict
from sentiment_fusion.core.types import AlertType, NoData, SnapshotValue, Window
from sentiment_fusion.engine.pipeline import DUPLICATE, OUT_OF_ORDER, EntityPipeline

from .factories import MIN, SEC, T0, obs


def test_out_of_order_observation_is_ignored(settings_fixture):
    p = EntityPipeline(settings_fixture)
    p.process(obs("news", 0.2, T0 + 10 * SEC), settings_fixture)
    before = p.signal_state("AAPL", "sentiment").to_dict()
    r = p.process(obs("news", -0.9, T0 + 5 * SEC), settings_fixture)
    assert r.rejected_reason == OUT_OF_ORDER
    assert r.alerts == [] and r.snapshots == []
    assert p.signal_state("AAPL", "sentiment").to_dict() == before
    assert p.counters[OUT_OF_ORDER] == 1


def test_older_reading_from_another_source_does_not_rewind_signal(settings_fixture):
    p = EntityPipeline(settings_fixture)
    p.process(obs("news", 0.2, T0 + 10 * SEC), settings_fixture)
    before = p.signal_state("AAPL", "sentiment").to_dict()
    r = p.process(obs("social", -0.9, T0 + 5 * SEC), settings_fixture)
    assert not r.rejected
    assert r.stale == ["sentiment"]
    assert r.alerts == [] and r.snapshots == []
    assert p.signal_state("AAPL", "sentiment").to_dict() == before
    assert p.counters["stale_updates"] == 1
    assert p.last_ts("AAPL") == T0 + 10 * SEC


def test_late_daily_snapshot_still_fires_its_alert(settings_fixture):
    p = EntityPipeline(settings_fixture)
    p.process(obs("news", 0.1, T0 + 3 * MIN), settings_fixture)
    # fear & greed stamped 00:00 arrives after a news tick stamped 00:03
    r = p.process(obs("fear_greed", 10, T0), settings_fixture)
    assert not r.rejected
    assert r.stale == ["sentiment"]
    (alert,) = r.alerts
    assert alert.alert_type == AlertType.FEAR_GREED_EXTREME
    assert alert.current_value == 10.0
    assert p.snapshot("AAPL", Window.DAILY, signal="fear_greed").value == 10.0

    # the stored reading joins the composite on the next sentiment update
    r = p.process(obs("news", 0.1, T0 + 4 * MIN), settings_fixture)
    assert set(r.snapshots[0].fusion.included) == {"news", "fear_greed"}


def test_duplicate_observation_is_a_noop(settings_fixture):
    p = EntityPipeline(settings_fixture)
    o = obs("news", 0.2)
    assert not p.process(o, settings_fixture).rejected
    r = p.process(o, settings_fixture)
    assert r.rejected_reason == DUPLICATE
    assert p.signal_state("AAPL", "sentiment").updates == 1


def test_sources_fuse_across_cadences(settings_fixture):
    p = EntityPipeline(settings_fixture)
    p.process(obs("news", 0.4, T0), settings_fixture)
    r = p.process(obs("order_book", -0.2, T0 + 30 * SEC), settings_fixture)
    (snap,) = r.snapshots
    assert snap.signal == "sentiment"
    assert snap.fusion.included == ("news", "order_book")
    assert snap.raw == pytest.approx((0.30 * 0.4 + 0.15 * -0.2) / 0.45)
    # order_book goes stale after 60s; the next news update fuses news alone
    r = p.process(obs("news", 0.1, T0 + 3 * MIN), settings_fixture)
    assert r.snapshots[0].fusion.included == ("news",)
    assert r.snapshots[0].raw == pytest.approx(0.1)


def test_no_data_skips_smoothing():
    s = settings_from_dict({"sources": {"news": {"enabled": False}}})
    p = EntityPipeline(s)
    r = p.process(obs("news", 0.5), s)
    assert r.no_data == ["sentiment"]
    assert r.snapshots == []
    assert p.counters["no_data"] == 1
    res = p.snapshot("AAPL", "fast")
    assert isinstance(res, NoData)


def test_fear_greed_updates_two_signals(settings_fixture):
    p = EntityPipeline(settings_fixture)
    r = p.process(obs("fear_greed", 60), settings_fixture)
    assert sorted(s.signal for s in r.snapshots) == ["fear_greed", "sentiment"]
    assert p.snapshot("AAPL", Window.DAILY, signal="fear_greed").value == 60.0
    assert p.snapshot("AAPL", "fast").value == pytest.approx(0.2)


def test_snapshot_read_path(settings_fixture):
    p = EntityPipeline(settings_fixture)
    p.process(obs("news", 0.3, T0), settings_fixture)
    p.process(obs("news", 0.6, T0 + MIN), settings_fixture)
    snap = p.snapshot("AAPL", "medium")
    assert isinstance(snap, SnapshotValue)
    assert snap.updated_ts == T0 + MIN
    assert snap.value == pytest.approx(0.3 + (2 / 21) * 0.3)
    assert p.snapshot("NOPE", "fast") == NoData(signal="sentiment", reason="unknown_entity")

    everything = p.snapshot_all("AAPL")
    assert set(everything["sentiment"]) == {"fast", "medium", "slow", "daily"}
    assert everything["sentiment"]["daily"].value == pytest.approx(0.45)


def test_evict_inactive(settings_fixture):
    p = EntityPipeline(settings_fixture)
    p.process(obs("news", 0.1, T0, entity="OLD"), settings_fixture)
    p.process(obs("news", 0.1, T0 + 5 * 3600 * SEC, entity="NEW"), settings_fixture)
    evicted = p.evict_inactive(horizon_ms=6 * 3600 * SEC, now_ts=T0 + 7 * 3600 * SEC)
    assert evicted == ["OLD"]
    assert p.entities() == ["NEW"]
    assert isinstance(p.snapshot("OLD", "fast"), NoData)
