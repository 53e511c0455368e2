import asyncio
import json

import pytest
from loguru import logger

from sentiment_fusion.apps import replay_cli
from sentiment_fusion.live.service import SentimentFusionService

from .factories import MIN, T0


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    # main() points loguru at the captured stderr of the current test
    logger.remove()


def _write_jsonl(path, rows, extra_lines=()):
    lines = [json.dumps(r) for r in rows] + list(extra_lines)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def _alerts(out):
    return [json.loads(line) for line in out.splitlines() if line.strip()]


@pytest.mark.parametrize("inline", [True, False])
def test_replay_emits_alert_json(tmp_path, capsys, inline):
    path = _write_jsonl(tmp_path / "obs.jsonl", [
        {"entity": "AAPL", "source": "news", "value": 0.78, "ts": T0},
        {"entity": "MSFT", "source": "social", "value": 0.05, "ts": T0 + MIN},
    ])
    argv = ["--input", str(path), "--log-level", "ERROR"] + (["--inline"] if inline else [])
    assert replay_cli.main(argv) == 0
    alerts = _alerts(capsys.readouterr().out)
    assert [a["alert_type"] for a in alerts] == ["SENTIMENT_SPIKE"]
    assert alerts[0]["entity"] == "AAPL"
    assert alerts[0]["metadata"]["contributing_sources"] == ["news"]


def test_replay_skips_bad_lines(tmp_path, capsys):
    path = _write_jsonl(
        tmp_path / "obs.jsonl",
        [{"entity": "AAPL", "source": "news", "value": 5.0, "ts": T0}],
        extra_lines=["# comment", "", "{not json"],
    )
    assert replay_cli.main(["--input", str(path), "--inline", "--log-level", "ERROR"]) == 0
    assert _alerts(capsys.readouterr().out) == []


def test_missing_input_returns_2(tmp_path):
    assert replay_cli.main(["--input", str(tmp_path / "nope.jsonl"), "--log-level", "ERROR"]) == 2


def test_bad_config_returns_2(tmp_path):
    cfg = tmp_path / "settings.yaml"
    cfg.write_text("signals: [1, 2\n", encoding="utf-8")
    path = _write_jsonl(tmp_path / "obs.jsonl", [])
    assert replay_cli.main(["--config", str(cfg), "--input", str(path)]) == 2


def test_metrics_flag_prints_prometheus(tmp_path, capsys):
    path = _write_jsonl(tmp_path / "obs.jsonl", [{"entity": "AAPL", "source": "news", "value": 0.1, "ts": T0}])
    assert replay_cli.main(["--input", str(path), "--inline", "--metrics", "--log-level", "ERROR"]) == 0
    assert "sentiment_fusion_accepted_total 1" in capsys.readouterr().err


def test_service_is_built_inside_the_event_loop(tmp_path, monkeypatch):
    loops = []

    class RecordingService(SentimentFusionService):
        def __init__(self, *args, **kwargs):
            loops.append(asyncio.get_running_loop())
            super().__init__(*args, **kwargs)

    monkeypatch.setattr(replay_cli, "SentimentFusionService", RecordingService)
    path = _write_jsonl(tmp_path / "obs.jsonl", [{"entity": "AAPL", "source": "news", "value": 0.1, "ts": T0}])
    assert replay_cli.main(["--input", str(path), "--log-level", "ERROR"]) == 0
    assert len(loops) == 1
