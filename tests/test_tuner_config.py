from __future__ import annotations

import json

import pytest

from heimdall.tuning.tuner_config import MAX_TUNING_LOG, TunerConfig

from helpers import NOW


def test_market_entries_created_from_defaults():
    tuner = TunerConfig()
    tuner.data["defaultMarket"]["cooldownSeconds"] = 90.0

    sol = tuner.market("SOL")

    assert sol["stopLoss"] == 1.5
    assert sol["cooldownSeconds"] == 90.0
    sol["stopLoss"] = 2.0
    assert tuner.market("BTC")["stopLoss"] == 1.5


def test_admit_happy_path_carries_size_and_confidence():
    tuner = TunerConfig()
    tuner.sizing["multiplier"] = 0.5
    tuner.market("SOL")["confidenceMultiplier"] = 1.3

    admission = tuner.admit("SOL", 0.7, NOW)

    assert admission.allowed
    assert admission.size_multiplier == 0.5
    assert admission.confidence == pytest.approx(0.91)


def test_paused_market_rejected_until_expiry():
    tuner = TunerConfig()
    m = tuner.market("SOL")
    m["enabled"] = False
    m["pausedUntil"] = NOW + 60

    assert not tuner.admit("SOL", 0.9, NOW).allowed
    assert tuner.admit("SOL", 0.9, NOW + 60).allowed


def test_blocked_hour_rejected():
    tuner = TunerConfig()
    tuner.data["timing"]["blockedHours"] = [22]

    admission = tuner.admit("SOL", 0.9, NOW)

    assert not admission.allowed
    assert "22" in admission.reason


def test_caution_floor_ignores_market_multiplier():
    tuner = TunerConfig()
    tuner.streaks["cautionMode"] = True
    tuner.market("SOL")["confidenceMultiplier"] = 1.3

    boosted = tuner.admit("SOL", 0.65, NOW)
    assert not boosted.allowed
    assert "0.65" in boosted.reason

    tuner.market("SOL")["confidenceMultiplier"] = 0.7
    damped = tuner.admit("SOL", 0.75, NOW)
    assert damped.allowed
    assert damped.confidence == pytest.approx(0.525)


def test_volatility_spike_wait():
    tuner = TunerConfig()
    assert not tuner.note_volatility("SOL", 0.2, NOW)
    assert tuner.note_volatility("SOL", 0.4, NOW)

    assert not tuner.admit("SOL", 0.9, NOW + 299).allowed
    assert tuner.admit("SOL", 0.9, NOW + 300).allowed


def test_effective_stop_by_regime():
    tuner = TunerConfig()
    assert tuner.effective_stop("SOL", 0.2) == pytest.approx(1.5 * 1.3)
    assert tuner.effective_stop("SOL", 0.01) == pytest.approx(1.5 * 0.8)
    assert tuner.effective_stop("SOL", 0.05) == pytest.approx(1.5)
    assert tuner.volatility_regime(0.15) == "normal"


def test_cooldown_multipliers_by_last_result():
    tuner = TunerConfig()
    tuner.streaks["postLossCooldownMultiplier"] = 2.0
    tuner.streaks["postWinCooldownMultiplier"] = 1.5

    assert tuner.cooldown_seconds("SOL") == 60.0
    assert tuner.cooldown_seconds("SOL", "LOSS") == 120.0
    assert tuner.cooldown_seconds("SOL", "WIN") == 90.0


def test_pattern_disable_and_override_lookup():
    tuner = TunerConfig()
    tuner.data["patterns"]["disabled"]["a|b|c"] = NOW + 10
    tuner.data["patterns"]["directionOverrides"]["a|b|c"] = "SHORT"

    assert tuner.is_pattern_disabled("a|b|c", NOW)
    assert not tuner.is_pattern_disabled("a|b|c", NOW + 10)
    assert tuner.direction_override("a|b|c").value == "SHORT"
    assert tuner.direction_override("x|y|z") is None


def test_tuning_log_capped():
    tuner = TunerConfig()
    for i in range(MAX_TUNING_LOG + 25):
        tuner.log_action("noop", i, i + 1, "test", now=NOW + i)

    assert len(tuner.tuning_log) == MAX_TUNING_LOG
    assert tuner.tuning_log[0]["before"] == 25
    assert tuner.tuning_log[-1]["timestamp"] == NOW + MAX_TUNING_LOG + 24


def test_load_merges_stored_file_over_defaults(tmp_path):
    path = tmp_path / "tuner.json"
    path.write_text(json.dumps({
        "markets": {"SOL": {"stopLoss": 2.2}},
        "streaks": {"cautionMode": True},
        "futureSection": {"x": 1},
    }))

    tuner = TunerConfig.load(path)

    assert tuner.market("SOL")["stopLoss"] == 2.2
    assert tuner.market("SOL")["takeProfit"] == 2.5
    assert tuner.streaks["cautionMode"] is True
    assert tuner.streaks["dailyLossLimit"] == 3.0
    assert tuner.data["futureSection"] == {"x": 1}


def test_save_round_trips(tmp_path):
    path = tmp_path / "tuner.json"
    tuner = TunerConfig(path=path)
    tuner.market("ETH")["takeProfit"] = 3.1

    assert tuner.save()

    assert TunerConfig.load(path).market("ETH")["takeProfit"] == 3.1
