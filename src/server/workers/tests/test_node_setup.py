# -*- coding: utf-8 -*-

"""
测试节点初始化协调器

验证配置目录与 .env 的准备、初始化标志的写入，以及克隆失败时的返回结果。
通过 monkeypatch 替换 subprocess.run，不调用真实的 git。
"""

import os
import tempfile
from pathlib import Path
from types import SimpleNamespace

from config import Settings
from service.state_store import StateStore
from workers.node_setup import NodeSetup


def _settings(tmp: str) -> Settings:
    return Settings(
        compose_dir=Path(tmp) / "koinos",
        data_dir=Path(tmp) / "data",
        state_file=Path(tmp) / "data" / "node_state.json",
        snapshot_dir=Path(tmp),
        compose_repo_url="https://example.com/koinos.git",
    )


def test_setup_prepares_config_and_marks_initialized():
    with tempfile.TemporaryDirectory() as tmp:
        settings = _settings(tmp)
        compose_dir = settings.compose_dir
        (compose_dir / "config-example").mkdir(parents=True)
        (compose_dir / "docker-compose.yml").write_text("services: {}\n", encoding="utf-8")
        (compose_dir / "config-example" / "config.yml").write_text("chain: {}\n", encoding="utf-8")
        (compose_dir / "env.example").write_text("BASEDIR=~/.koinos\n#COMPOSE_PROFILES=all\n", encoding="utf-8")

        store = StateStore(settings.state_file)
        messages = []
        success, message = NodeSetup(settings, store, progress_callback=messages.append).execute_setup()

        assert success, message
        assert (compose_dir / "config" / "config.yml").exists()
        env = (compose_dir / ".env").read_text(encoding="utf-8")
        assert "#COMPOSE_PROFILES" not in env
        assert "COMPOSE_PROFILES=all" in env
        assert "KOINOS_LOG_LEVEL=warn" in env
        assert store.get("initialized") is True
        assert store.get("first_launch_timestamp")
        assert messages[0].startswith("[1/3]")


def test_setup_keeps_first_launch_timestamp():
    with tempfile.TemporaryDirectory() as tmp:
        settings = _settings(tmp)
        settings.compose_dir.mkdir(parents=True)
        (settings.compose_dir / "docker-compose.yml").write_text("services: {}\n", encoding="utf-8")
        store = StateStore(settings.state_file)
        store.set("first_launch_timestamp", "2024-01-01T00:00:00+00:00")

        success, _ = NodeSetup(settings, store).execute_setup()
        assert success
        assert store.get("first_launch_timestamp") == "2024-01-01T00:00:00+00:00"


def test_clone_when_compose_file_missing(monkeypatch):
    with tempfile.TemporaryDirectory() as tmp:
        settings = _settings(tmp)
        calls = []

        def fake_run(cmd, **kwargs):
            calls.append(cmd)
            target = Path(cmd[-1])
            target.mkdir(parents=True)
            (target / "docker-compose.yml").write_text("services: {}\n", encoding="utf-8")
            return SimpleNamespace(returncode=0, stdout="", stderr="")

        monkeypatch.setattr("workers.node_setup.subprocess.run", fake_run)
        store = StateStore(settings.state_file)
        success, message = NodeSetup(settings, store).execute_setup()

        assert success, message
        assert calls == [["git", "clone", "--depth", "1", "https://example.com/koinos.git", str(settings.compose_dir)]]


def test_clone_failure_is_reported(monkeypatch):
    with tempfile.TemporaryDirectory() as tmp:
        settings = _settings(tmp)

        def fake_run(cmd, **kwargs):
            return SimpleNamespace(returncode=128, stdout="", stderr="fatal: could not resolve host")

        monkeypatch.setattr("workers.node_setup.subprocess.run", fake_run)
        store = StateStore(settings.state_file)
        success, message = NodeSetup(settings, store).execute_setup()

        assert not success
        assert "could not resolve host" in message
        assert store.get("initialized") is False
        assert not os.path.exists(settings.state_file)
