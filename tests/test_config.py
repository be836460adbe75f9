import pytest

from cellalign import ConfigError, DEConfig, IntegrationConfig, PAdjustMethod, load_config


def test_integration_defaults():
    config = IntegrationConfig()
    assert config.num_variable_features == 2000
    assert config.num_components == 30
    assert config.n_neighbors == 5
    assert config.anchor_score_floor == 0.0
    assert config.num_cca_components is None


def test_de_defaults():
    config = DEConfig()
    assert config.min_log_fc == 0.25
    assert config.only_positive is False
    assert config.p_adjust is PAdjustMethod.FDR_BH


@pytest.mark.parametrize(
    "kwargs",
    [
        {"num_components": 0},
        {"n_neighbors": -1},
        {"anchor_score_floor": 1.5},
        {"sd_weight": 0.0},
        {"num_components": 10, "num_cca_components": 20},
    ],
)
def test_invalid_integration_values_raise(kwargs):
    with pytest.raises(ConfigError):
        IntegrationConfig(**kwargs)


def test_config_error_is_value_error():
    with pytest.raises(ValueError):
        DEConfig(min_log_fc=-1)


def test_p_adjust_aliases():
    assert DEConfig(p_adjust="BH").p_adjust is PAdjustMethod.FDR_BH
    assert DEConfig(p_adjust="bonferroni").p_adjust is PAdjustMethod.BONFERRONI
    with pytest.raises(ConfigError, match="Unknown p_adjust"):
        DEConfig(p_adjust="storey")


def test_from_dict_ignores_unknown_keys():
    config = IntegrationConfig.from_dict({"num_components": 12, "method": "cca"})
    assert config.num_components == 12
    assert IntegrationConfig.from_dict(None) == IntegrationConfig()


def test_load_config_sections(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "integration:\n"
        "  num_components: 15\n"
        "  n_neighbors: 8\n"
        "differential:\n"
        "  condition_a: STIM\n"
        "  condition_b: CTRL\n"
        "  p_adjust: holm\n"
        "  only_positive: true\n"
    )
    config = load_config(path)

    integration = IntegrationConfig.from_dict(config["integration"])
    differential = DEConfig.from_dict(config["differential"])
    assert (integration.num_components, integration.n_neighbors) == (15, 8)
    assert differential.condition_a == "STIM"
    assert differential.p_adjust is PAdjustMethod.HOLM
    assert differential.only_positive is True


def test_load_config_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.yaml")

    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(ConfigError):
        load_config(path)


def test_empty_config_file_is_empty_mapping(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(path) == {}
