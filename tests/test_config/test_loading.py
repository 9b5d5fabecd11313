from pathlib import Path

import taskloop.config as config_module
from taskloop.agent_config import agent_config_from_settings, to_agent_config
from taskloop.config import Config


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("model:\n  provider: ollama\n  model: llama3.2\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "taskloop.yaml"
    local_cfg.write_text(
        (
            "model:\n"
            "  provider: groq\n"
            "  model: llama-3.1-70b-versatile\n"
            "agent:\n"
            "  max_continuation_attempts: 2\n"
            "  emit_throttle_ms: 50\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.provider == "groq"
    assert cfg.model.model == "llama-3.1-70b-versatile"
    assert cfg.agent.max_continuation_attempts == 2
    assert cfg.agent.emit_throttle_ms == 50
    assert cfg.direct_chat.max_retries == 3


def test_load_falls_back_to_home_config(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    home_cfg = tmp_path / "home" / "config.yaml"
    home_cfg.parent.mkdir()
    home_cfg.write_text(
        (
            "mcp_servers:\n"
            "  - name: files\n"
            "    command: [node, files-server.js]\n"
            "    env:\n"
            "      ROOT: /srv\n"
        ),
        encoding="utf-8",
    )
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.mcp_servers[0].name == "files"
    assert cfg.mcp_servers[0].command == ["node", "files-server.js"]
    assert cfg.mcp_servers[0].env == {"ROOT": "/srv"}


def test_missing_config_uses_defaults(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "nope.yaml")

    cfg = Config.load()

    assert cfg.agent.max_steps == 20
    assert cfg.agent.emit_throttle_ms == 80
    assert cfg.agent.max_continuation_attempts == 1
    assert cfg.direct_chat.initial_retry_delay_ms == 1000
    assert cfg.direct_chat.max_tokens == 256


def test_save_round_trips_through_yaml(tmp_path: Path):
    path = tmp_path / "out" / "config.yaml"
    cfg = Config()
    cfg.model.provider = "openai"
    cfg.model.model = "gpt-4o-mini"

    cfg.save(path)
    loaded = Config.from_yaml(path)

    assert loaded.model.provider == "openai"
    assert loaded.model.model == "gpt-4o-mini"


def test_to_agent_config_keeps_only_enabled_local_servers():
    agent_config = to_agent_config(
        {
            "systemPrompt": "Be useful.",
            "mcpServers": {
                "files": {"type": "local", "command": ["node", "files.js"], "environment": {"ROOT": "/srv"}},
                "remote": {"type": "remote", "url": "https://example.test/mcp"},
                "off": {"type": "local", "command": ["srv"], "enabled": False},
                "blank": {"type": "local", "command": []},
            },
        },
        provider="ollama",
        model_id="llama3.2",
        api_key="",
    )

    assert agent_config.system_prompt == "Be useful."
    assert [spec.name for spec in agent_config.mcp_server_specs] == ["files"]
    assert agent_config.mcp_server_specs[0].env == {"ROOT": "/srv"}
    assert agent_config.api_key is None


def test_agent_config_from_settings_uses_config_sections():
    cfg = Config(
        model={"provider": "groq", "model": "llama3", "api_key": "gsk"},
        mcp_servers=[{"name": "files", "command": ["files-server"]}],
    )

    agent_config = agent_config_from_settings(cfg)

    assert agent_config.provider == "groq"
    assert agent_config.api_key == "gsk"
    assert agent_config.base_url is None
    assert agent_config.system_prompt == cfg.agent.system_prompt
    assert [spec.command for spec in agent_config.mcp_server_specs] == [["files-server"]]
    assert agent_config.mcp_server_specs[0].env is None


def test_yaml_values_win_over_env_and_env_fills_gaps(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TASKLOOP_MODEL__MODEL", "env-model")
    monkeypatch.setenv("TASKLOOP_AGENT__MAX_STEPS", "7")

    cfg_path = tmp_path / "taskloop.yaml"
    cfg_path.write_text("model:\n  provider: groq\n  model: yaml-model\n", encoding="utf-8")

    cfg = Config.load(cfg_path)

    assert cfg.model.model == "yaml-model"
    assert cfg.agent.max_steps == 7
