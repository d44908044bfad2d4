from __future__ import annotations

import pytest

from heimdall.config import HeimdallConfig
from heimdall.execution.executor import PaperExecutor
from heimdall.execution.lifecycle import PositionManager
from heimdall.intelligence.advisory import AdvisoryDecision, StaticAdvisor
from heimdall.intelligence.thinking import ThinkingLog
from heimdall.memory.shadow import ShadowSimulator
from heimdall.memory.store import TradeMemory
from heimdall.risk.circuit_breaker import CircuitBreaker
from heimdall.tuning.tuner_config import TunerConfig

from helpers import FakeAdvisor


@pytest.fixture
def cfg(tmp_path):
    return HeimdallConfig(
        data_dir=tmp_path,
        symbols=("SOL",),
        dry_run=True,
        advisory_enabled=False,
        execution_attempts=1,
        execution_retry_delay=0.0,
    )


@pytest.fixture
def confirm_long():
    return FakeAdvisor(AdvisoryDecision("LONG", 1.2, 2.0, 0.8, "looks good", model="fake"))


@pytest.fixture
def build_manager(cfg):
    """Factory: PositionManager wired to in-memory collaborators."""

    def _build(advisor=None, executor=None, tuner=None, memory=None, breaker=None):
        memory = memory or TradeMemory()
        tuner = tuner or TunerConfig()
        parts = {
            "memory": memory,
            "tuner": tuner,
            "shadows": ShadowSimulator(memory),
            "executor": executor or PaperExecutor(),
            "breaker": breaker or CircuitBreaker(),
            "thinking": ThinkingLog(),
        }
        manager = PositionManager(
            cfg, tuner, memory, parts["shadows"], advisor or StaticAdvisor(),
            parts["executor"], parts["breaker"], parts["thinking"],
        )
        return manager, parts

    return _build
