"""Unit tests for configuration loading and validation."""

import pytest

from twap_mm.exceptions import InvalidParameter
from twap_mm.utils.config import Config, ExecutionConfig, RiskConfig, VolatilityConfig


class TestDefaults:
    """Documented defaults."""

    def test_risk_defaults(self):
        risk = RiskConfig()

        assert risk.max_daily_loss == 1000.0
        assert risk.max_position_size == 10.0
        assert risk.max_order_size == 1.0
        assert risk.max_slippage == 0.005
        assert risk.max_drawdown == 0.1
        assert risk.max_data_age_ms == 30_000

    def test_config_sections(self):
        cfg = Config()

        assert cfg.model.risk_aversion == 0.1
        assert cfg.volatility.decay == 0.94
        assert cfg.execution.min_order_size == 0.01
        assert cfg.orchestrator.quote_interval_ms == 10_000
        assert set(cfg.to_dict()) == set(Config.SECTIONS)

    def test_summary(self):
        summary = Config().summary()

        assert summary['symbol'] == "ETH/USDT"
        assert summary['max_position_size'] == 10.0


class TestValidation:
    """Out-of-range values fail at construction."""

    def test_negative_limit(self):
        with pytest.raises(InvalidParameter):
            Config(risk={'max_daily_loss': -1.0})

    def test_unknown_section(self):
        with pytest.raises(InvalidParameter):
            Config(exchange={})

    def test_inverted_order_bounds(self):
        with pytest.raises(ValueError):
            ExecutionConfig(min_order_size=2.0, max_order_size=1.0)

    def test_inverted_volatility_band(self):
        with pytest.raises(ValueError):
            VolatilityConfig(min_volatility=0.5, max_volatility=0.1)


class TestEnvironment:
    """Environment overrides."""

    def test_overrides_applied(self):
        cfg = Config.from_env({'RISK_AVERSION': '0.3', 'MAX_ORDER_PARTS': '4', 'MAX_DAILY_LOSS': ''})

        assert cfg.model.risk_aversion == 0.3
        assert cfg.orchestrator.max_order_parts == 4
        assert cfg.risk.max_daily_loss == 1000.0

    def test_bad_number(self):
        with pytest.raises(InvalidParameter, match="MAX_ORDER_PARTS"):
            Config.from_env({'MAX_ORDER_PARTS': 'ten'})

    def test_out_of_range_value(self):
        with pytest.raises(InvalidParameter):
            Config.from_env({'MAX_SLIPPAGE': '2.0'})
