import pytest

from parley.config import DEFAULT_PARAMETERS, DEFAULT_PROFILES
from parley.errors import ParameterProfileNotFound, UnknownParameterError
from parley.parameters import ParameterSet


def make_parameters() -> ParameterSet:
    return ParameterSet(DEFAULT_PARAMETERS, DEFAULT_PROFILES)


def test_only_modified_values_are_sent():
    params = make_parameters()
    assert params.get_modified_for_request() == {}
    params.set("temperature", 0.2)
    params.set("top_k", 10)
    assert params.get_modified_for_request() == {"temperature": 0.2, "top_k": 10}


def test_setting_default_value_clears_modified():
    params = make_parameters()
    params.set("temperature", 0.2)
    params.set("temperature", DEFAULT_PARAMETERS["temperature"])
    assert "temperature" not in params.modified
    assert params.get_modified_for_request() == {}


def test_unknown_parameter_rejected():
    params = make_parameters()
    with pytest.raises(UnknownParameterError):
        params.set("warp_factor", 9)
    with pytest.raises(UnknownParameterError):
        params.update({"temperature": 0.1, "warp_factor": 9})
    assert params.modified == set()


def test_named_profile_replaces_previous_values():
    params = make_parameters()
    params.set("seed", 42)
    params.apply_named_profile("precise")
    assert params.active_profile == "precise"
    modified = params.get_modified_for_request()
    assert modified["temperature"] == DEFAULT_PROFILES["precise"]["temperature"]
    assert "seed" not in modified


def test_missing_profile_raises():
    params = make_parameters()
    with pytest.raises(ParameterProfileNotFound) as excinfo:
        params.apply_named_profile("nope")
    assert "nope" in str(excinfo.value)


def test_command_scope_restores_exact_state():
    params = make_parameters()
    params.set("top_k", 10)
    before_active = dict(params.active)
    before_modified = set(params.modified)

    with params.command_scope({"temperature": 0.1, "top_k": 99}):
        assert params.scoped
        assert params.get_modified_for_request() == {"temperature": 0.1, "top_k": 99}

    assert params.active == before_active
    assert params.modified == before_modified
    assert not params.scoped


def test_command_scope_restores_after_error():
    params = make_parameters()
    with pytest.raises(RuntimeError):
        with params.command_scope({"temperature": 0.1}):
            raise RuntimeError("boom")
    assert params.get_modified_for_request() == {}


def test_restore_without_saved_state_is_noop():
    params = make_parameters()
    assert params.restore_command_parameters() is False


def test_reset_clears_profile_and_modified():
    params = make_parameters()
    params.apply_named_profile("creative")
    params.reset()
    assert params.active == DEFAULT_PARAMETERS
    assert params.active_profile is None
    assert params.to_dict()["modified"] == {}
