import pytest
from pydantic import ValidationError
from smallmp4.config.loader import load_config
from smallmp4.config.models import AppConfig, EstimatorConfig, GeneralConfig, QuotaPolicy
from smallmp4.domain.errors import ConfigError
from smallmp4.domain.models import EncoderPreset


def test_config_defaults():
    config = AppConfig()
    assert config.general.target_size_mb == 10
    assert config.general.audio_bitrate_kbps == 128
    assert config.general.container_overhead == 0.02
    assert config.general.safety_margin == 0.95
    assert config.general.min_video_bitrate_kbps == 50
    assert config.general.max_corrective_retries == 2
    assert config.general.quota_policy is QuotaPolicy.SOFTWARE
    assert config.estimator.min_quality == 18
    assert config.estimator.max_quality == 51
    assert (config.estimator.clamp_min, config.estimator.clamp_max) == (20, 40)


def test_valid_config():
    data = {
        "general": {"threads": 4, "preset": "slow", "quota_policy": "queue", "fallback_on_explicit": True},
        "estimator": {"clamp_min": 22, "clamp_max": 36},
    }
    config = AppConfig(**data)
    assert config.general.threads == 4
    assert config.general.preset is EncoderPreset.SLOW
    assert config.general.quota_policy is QuotaPolicy.QUEUE
    assert config.estimator.clamp_min == 22


@pytest.mark.parametrize("field,value", [
    ("threads", 0),
    ("safety_margin", 0.0),
    ("safety_margin", 1.5),
    ("container_overhead", 0.5),
    ("container_overhead", -0.1),
    ("corrective_step", 1.0),
    ("target_size_mb", 0),
])
def test_invalid_general(field, value):
    with pytest.raises(ValidationError):
        GeneralConfig(**{field: value})


def test_invalid_quality_domain():
    with pytest.raises(ValidationError):
        EstimatorConfig(min_quality=30, max_quality=30)


def test_clamp_must_lie_inside_domain():
    with pytest.raises(ValidationError):
        EstimatorConfig(clamp_min=10)
    with pytest.raises(ValidationError):
        EstimatorConfig(clamp_min=40, clamp_max=30)


def test_load_config(config_yaml):
    config = load_config(config_yaml)
    assert config.general.target_size_mb == 5
    assert config.general.threads == 2
    assert config.general.quota_policy is QuotaPolicy.QUEUE
    assert config.general.preset is EncoderPreset.SLOW
    assert config.estimator.tolerance_mb == 0.25
    # Untouched sections keep their defaults
    assert config.general.safety_margin == 0.95


def test_load_missing_config_uses_defaults(tmp_path):
    assert load_config(tmp_path / "absent.yaml") == AppConfig()
    assert load_config(None) == AppConfig()


def test_load_empty_config(tmp_path):
    f = tmp_path / "empty.yaml"
    f.write_text("")
    assert load_config(f) == AppConfig()


def test_load_invalid_values(tmp_path):
    f = tmp_path / "bad.yaml"
    f.write_text("general:\n  safety_margin: 3\n")
    with pytest.raises(ConfigError, match="Invalid configuration"):
        load_config(f)


def test_load_malformed_yaml(tmp_path):
    f = tmp_path / "broken.yaml"
    f.write_text("general: [unclosed\n")
    with pytest.raises(ConfigError):
        load_config(f)


def test_load_non_mapping(tmp_path):
    f = tmp_path / "list.yaml"
    f.write_text("- 1\n- 2\n")
    with pytest.raises(ConfigError, match="mapping"):
        load_config(f)
