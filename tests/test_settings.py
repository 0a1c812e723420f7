import json

from parley.config import DEFAULT_PARAMETERS, AppSettings, load_settings, save_settings


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"ollama_base_url": "http://config:11434"}))
    monkeypatch.setenv("PARLEY_OLLAMA_BASE_URL", "http://env:11434")
    monkeypatch.delenv("PARLEY_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.ollama_base_url == "http://config:11434"


def test_env_override_when_flag_set(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"ollama_base_url": "http://config:11434"}))
    monkeypatch.setenv("PARLEY_OLLAMA_BASE_URL", "http://env:11434")
    monkeypatch.setenv("PARLEY_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.ollama_base_url == "http://env:11434"


def test_ollama_host_without_scheme(tmp_path, monkeypatch):
    monkeypatch.delenv("PARLEY_OLLAMA_BASE_URL", raising=False)
    monkeypatch.setenv("OLLAMA_HOST", "gpu-box:11434")
    monkeypatch.setenv("PARLEY_MAX_HISTORY_PAIRS", "4")
    settings = load_settings(config_path=tmp_path / "missing.json")
    assert settings.ollama_base_url == "http://gpu-box:11434"
    assert settings.max_history_pairs == 4


def test_partial_parameter_config_is_merged_with_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("OLLAMA_HOST", raising=False)
    monkeypatch.delenv("PARLEY_OLLAMA_BASE_URL", raising=False)
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps(
            {
                "parameter_defaults": {"temperature": 0.5},
                "parameter_profiles": {"fast": {"num_predict": 128}},
            }
        )
    )
    settings = load_settings(config_path=config_path)
    assert settings.parameter_defaults["temperature"] == 0.5
    assert settings.parameter_defaults["top_k"] == DEFAULT_PARAMETERS["top_k"]
    assert set(settings.parameter_profiles) == {"default", "fast"}


def test_save_settings_round_trip(tmp_path, monkeypatch):
    monkeypatch.delenv("PARLEY_ENV_OVERRIDES_CONFIG", raising=False)
    config_path = tmp_path / "config.json"
    save_settings(AppSettings(default_model="llama3", max_history_pairs=3), config_path=config_path)
    settings = load_settings(config_path=config_path)
    assert settings.default_model == "llama3"
    assert settings.max_history_pairs == 3
