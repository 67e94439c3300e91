"""
Tests for environment configuration and component wiring.
"""

import logging

import pytest

from reliable_actions.config import ReliabilityConfig
from reliable_actions.persistence import FileRecordStore


@pytest.mark.unit
class TestFromEnv:

    def test_defaults_when_unset(self):
        config = ReliabilityConfig.from_env({})

        assert config.debug is False
        assert config.compensation.require_confirmation is True
        assert config.escalation.auto_approve_low_risk is True
        assert config.circuit_breaker is None
        assert config.idempotency_store_path is None

    def test_values_read(self):
        config = ReliabilityConfig.from_env({
            "RELIABLE_ACTIONS_DEBUG": "yes",
            "RELIABLE_ACTIONS_DEFAULT_TTL": "120",
            "RELIABLE_ACTIONS_CACHE_MAX_SIZE": "50",
            "RELIABLE_ACTIONS_STOP_ON_FAILURE": "true",
            "RELIABLE_ACTIONS_COMPENSATION_TIMEOUT": "5.5",
            "RELIABLE_ACTIONS_AUTO_APPROVE_LOW_RISK": "off",
            "RELIABLE_ACTIONS_CIRCUIT_BREAKER": "1",
            "RELIABLE_ACTIONS_ESCALATION_STORE": "/tmp/escalations.json",
            "RELIABLE_ACTIONS_ESCALATION_STORE_UNRELATED": "ignored",
        })

        assert config.debug is True
        assert config.idempotency.default_ttl == 120.0
        assert config.idempotency.max_size == 50
        assert config.compensation.stop_on_failure is True
        assert config.compensation.timeout_per_action == 5.5
        assert config.escalation.auto_approve_low_risk is False
        assert config.circuit_breaker is not None
        assert config.escalation_store_path == "/tmp/escalations.json"

    def test_empty_value_counts_as_unset(self):
        config = ReliabilityConfig.from_env({"RELIABLE_ACTIONS_REQUIRE_CONFIRMATION": ""})
        assert config.compensation.require_confirmation is True

    @pytest.mark.parametrize("name,value", [
        ("RELIABLE_ACTIONS_DEBUG", "maybe"),
        ("RELIABLE_ACTIONS_DEFAULT_TTL", "soon"),
        ("RELIABLE_ACTIONS_CACHE_MAX_SIZE", "0"),
    ])
    def test_malformed_values_raise(self, name, value):
        with pytest.raises(ValueError):
            ReliabilityConfig.from_env({name: value})

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("RELIABLE_ACTIONS_LEARNING_FEEDBACK", "no")
        assert ReliabilityConfig.from_env().escalation.learning_feedback_enabled is False


@pytest.mark.unit
class TestBuild:

    def test_components_share_metrics_and_events(self):
        components = ReliabilityConfig().build()

        assert components.engine.metrics is components.metrics
        assert components.cache.events is components.events
        assert components.executor.engine is components.engine
        assert components.executor.ledger is components.ledger
        assert components.executor.cache is components.cache
        assert components.escalations.executor is components.executor
        assert components.engine.breakers is None

    def test_each_build_is_fresh(self):
        config = ReliabilityConfig()
        assert config.build().metrics is not config.build().metrics
        assert config.build_executor().cache.store is None

    def test_file_stores_and_breakers(self, tmp_path):
        config = ReliabilityConfig.from_env({
            "RELIABLE_ACTIONS_CIRCUIT_BREAKER": "on",
            "RELIABLE_ACTIONS_IDEMPOTENCY_STORE": str(tmp_path / "idem.json"),
            "RELIABLE_ACTIONS_ESCALATION_STORE": str(tmp_path / "esc.json"),
        })
        components = config.build()

        assert isinstance(components.cache.store, FileRecordStore)
        assert isinstance(components.escalations.store, FileRecordStore)
        assert components.engine.breakers is not None

    def test_debug_lowers_package_logger(self):
        package_logger = logging.getLogger("reliable_actions")
        previous = package_logger.level
        try:
            ReliabilityConfig(debug=True).build()
            assert package_logger.level == logging.DEBUG
        finally:
            package_logger.setLevel(previous)
