import datetime
from decimal import Decimal

import pytest

from lotrecon.config import (
    ConfigError,
    ReconConfig,
    load_config,
    read_env_settings,
    read_pyproject_settings,
)


class TestReconConfig:
    def test_defaults(self):
        c = ReconConfig()
        assert c.start_date == datetime.date(2005, 7, 1)
        assert c.end_date == datetime.date(2013, 9, 30)
        assert c.epsilon == Decimal("0.01")
        assert c.service_prefix == "WC"
        assert c.billing_code == "FLAT"
        assert c.include_status is False

    def test_start_after_end_rejected(self):
        with pytest.raises(ConfigError, match="after end_date"):
            ReconConfig(
                start_date=datetime.date(2014, 1, 1), end_date=datetime.date(2013, 1, 1)
            )

    def test_negative_epsilon_rejected(self):
        with pytest.raises(ConfigError, match="epsilon"):
            ReconConfig(epsilon=Decimal("-0.01"))

    @pytest.mark.parametrize("value", ["NaN", "sNaN", "Infinity", "-Infinity"])
    def test_non_finite_epsilon_rejected(self, value):
        with pytest.raises(ConfigError, match="finite"):
            ReconConfig(epsilon=Decimal(value))

    def test_non_finite_epsilon_override_rejected(self):
        with pytest.raises(ConfigError, match="finite"):
            ReconConfig().with_overrides(epsilon="nan")

    def test_blank_codes_rejected(self):
        with pytest.raises(ConfigError):
            ReconConfig(service_prefix=" ")
        with pytest.raises(ConfigError):
            ReconConfig(billing_code="")

    def test_with_overrides_parses_strings(self):
        c = ReconConfig().with_overrides(
            start_date="2010-01-01",
            epsilon="0.5",
            include_status="yes",
            billing_code=None,
        )
        assert c.start_date == datetime.date(2010, 1, 1)
        assert c.epsilon == Decimal("0.5")
        assert c.include_status is True
        assert c.billing_code == "FLAT"

    def test_bad_date(self):
        with pytest.raises(ConfigError, match="YYYY-MM-DD"):
            ReconConfig().with_overrides(end_date="09/30/2013")

    def test_bad_epsilon(self):
        with pytest.raises(ConfigError, match="number"):
            ReconConfig().with_overrides(epsilon="abc")

    def test_bad_bool(self):
        with pytest.raises(ConfigError, match="boolean"):
            ReconConfig().with_overrides(include_status="maybe")

    def test_unknown_setting(self):
        with pytest.raises(ConfigError, match="Unknown setting"):
            ReconConfig().with_overrides(currency="USD")

    def test_to_row_and_meta(self):
        c = ReconConfig()
        row = c.to_row()
        assert row["start_date"] == datetime.date(2005, 7, 1)
        assert row["epsilon"] == "0.01"
        meta = c.to_meta()
        assert meta["start_date"] == "2005-07-01"
        assert meta["end_date"] == "2013-09-30"
        assert meta["include_status"] is False


class TestLayering:
    def test_pyproject_settings(self, tmp_path):
        (tmp_path / "pyproject.toml").write_text(
            '[tool.lotrecon]\nservice_prefix = "WS"\nepsilon = 0.05\n'
        )
        assert read_pyproject_settings(tmp_path) == {
            "service_prefix": "WS",
            "epsilon": 0.05,
        }
        c = load_config(root=tmp_path, environ={})
        assert c.service_prefix == "WS"
        assert c.epsilon == Decimal("0.05")

    def test_missing_pyproject(self, tmp_path):
        assert read_pyproject_settings(tmp_path) == {}
        assert load_config(root=tmp_path, environ={}) == ReconConfig()

    def test_invalid_toml(self, tmp_path):
        (tmp_path / "pyproject.toml").write_text("[tool.lotrecon\n")
        with pytest.raises(ConfigError, match="Invalid TOML"):
            read_pyproject_settings(tmp_path)

    def test_env_settings(self):
        env = {"LOTRECON_END_DATE": "2012-12-31", "LOTRECON_BILLING_CODE": " ", "OTHER": "1"}
        assert read_env_settings(env) == {"end_date": "2012-12-31"}

    def test_precedence(self, tmp_path):
        (tmp_path / "pyproject.toml").write_text(
            '[tool.lotrecon]\nservice_prefix = "WS"\nbilling_code = "TIER"\n'
            'start_date = 2008-01-01\n'
        )
        env = {"LOTRECON_SERVICE_PREFIX": "WX", "LOTRECON_INCLUDE_STATUS": "true"}
        c = load_config(root=tmp_path, environ=env, service_prefix="WZ")
        assert c.service_prefix == "WZ"  # override > env > pyproject
        assert c.include_status is True  # env
        assert c.billing_code == "TIER"  # pyproject
        assert c.start_date == datetime.date(2008, 1, 1)  # TOML date value

    def test_layers_merge_before_validation(self, tmp_path):
        # The pyproject window alone would be inverted against the default end
        (tmp_path / "pyproject.toml").write_text(
            '[tool.lotrecon]\nstart_date = "2015-01-01"\n'
        )
        c = load_config(root=tmp_path, environ={"LOTRECON_END_DATE": "2016-01-01"})
        assert c.start_date == datetime.date(2015, 1, 1)
        assert c.end_date == datetime.date(2016, 1, 1)

    def test_unknown_pyproject_key(self, tmp_path):
        (tmp_path / "pyproject.toml").write_text('[tool.lotrecon]\nfoo = 1\n')
        with pytest.raises(ConfigError, match="Unknown setting"):
            load_config(root=tmp_path, environ={})
