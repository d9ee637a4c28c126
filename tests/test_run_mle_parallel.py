import pytest

from run_mle_parallel import (
    apply_config_overrides,
    load_named_config,
    make_base_runner_kwargs_from_configs_default,
    merge_nested_dict,
)


def test_merge_nested_dict_is_shallow():
    out = merge_nested_dict(dict(a=1, b=dict(c=2)), dict(b=dict(d=3)))
    assert out == dict(a=1, b=dict(d=3))
    assert merge_nested_dict(dict(a=1), None) == dict(a=1)


def test_default_kwargs_have_every_runner_section():
    kw = make_base_runner_kwargs_from_configs_default()
    for k in ("data_params", "model_params", "init_params", "inner_params", "optim_params",
              "multiStart_params", "sim_params", "verbose", "verbose_freq"):
        assert k in kw
    assert kw["model_params"]["rho"] == ("free", -0.999, 0.999)


def test_named_config_overlays_sections():
    base = make_base_runner_kwargs_from_configs_default()
    kw = apply_config_overrides(base, load_named_config("SMALL_SIM"))
    assert kw["sim_params"]["n_t"] == 5
    # keys not named by the overlay survive
    assert "true_params" in kw["sim_params"]
    assert kw["data_params"]["grid"]["n"] == 4

    pln = apply_config_overrides(base, load_named_config("PLN"))
    assert pln["data_params"]["obs_model"] == 1
    assert pln["model_params"]["theta_z"][0] == "free"


def test_unknown_config_name():
    with pytest.raises(ValueError, match="Unknown --config"):
        load_named_config("NOPE")
