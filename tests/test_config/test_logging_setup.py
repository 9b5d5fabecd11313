import json
from pathlib import Path

import taskloop.config as config_module
from taskloop.config import Config
from taskloop.logging import bind_task_context, clear_task_context, configure_logging, get_logger


def test_log_file_receives_json_lines_tagged_with_task(monkeypatch, tmp_path: Path):
    monkeypatch.setattr(config_module, "_config", Config())
    log_path = tmp_path / "logs" / "taskloop.log"

    configure_logging("INFO", log_file=log_path)
    try:
        logger = get_logger("taskloop.test_logging")
        bind_task_context("task_1", "ai-sdk-1")
        logger.info("Task started", tools=3)
        clear_task_context()
        logger.info("Between tasks")
        logger.debug("Filtered out")
    finally:
        clear_task_context()
        configure_logging("INFO")

    records = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
    assert [record["event"] for record in records] == ["Task started", "Between tasks"]
    assert records[0]["task_id"] == "task_1"
    assert records[0]["session_id"] == "ai-sdk-1"
    assert records[0]["tools"] == 3
    assert records[0]["level"] == "info"
    assert "task_id" not in records[1]
