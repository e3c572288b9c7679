# -*- coding: utf-8 -*-
"""
针对后端 API 的测试：
- 未初始化时启动节点返回 NotInitialized 错误种类
- 启动/停止流程与状态查询
- 日志获取与清空
- 链数据已存在时快照下载直接报告 100%
- 存在未完成的下载时沿用原地址续传

仅测试公开接口：FastAPI 路由与 NodeContext；引擎与节点查询使用 Fake 对象。
"""

import asyncio
import tempfile
from pathlib import Path

from fastapi.testclient import TestClient

from config import Settings
from main import create_app, format_sse
from service.paths import get_download_record
from snapshot_client.utils import save_record
from workers.node_context import NodeContext
from workers.schemas import DownloadState, NodeState, NodeStatus


class FakeEngine:
    def __init__(self):
        self.up_calls = 0

    def up(self):
        self.up_calls += 1
        return ""

    def down(self):
        return ""

    def service_states(self):
        return {"chain": True}

    def logs(self, service=None, tail=100):
        return ""


class FakeQuery:
    def get_head_block(self):
        return 100

    def get_target_block(self, current_block):
        return 100

    def get_peer_count(self):
        return 2

    def get_time_remaining(self):
        return None


def _context(tmp: str) -> NodeContext:
    settings = Settings(
        compose_dir=Path(tmp) / "koinos",
        data_dir=Path(tmp) / "data",
        state_file=Path(tmp) / "state" / "node_state.json",
        snapshot_dir=Path(tmp) / "snapshots",
        monitor_interval=60,
        sampler_interval=60,
    )
    return NodeContext(settings, engine=FakeEngine(), query=FakeQuery())


def test_start_requires_initialization():
    with tempfile.TemporaryDirectory() as tmp:
        ctx = _context(tmp)
        with TestClient(create_app(context=ctx)) as client:
            r0 = client.get("/api/initialized")
            assert r0.json()["data"] == {"initialized": False}

            r1 = client.post("/api/start")
            assert r1.status_code == 200
            body = r1.json()
            assert body["success"] is False
            assert body["data"] == {"kind": "NotInitialized", "retryable": False}
            assert ctx.engine.up_calls == 0


def test_start_stop_and_status():
    with tempfile.TemporaryDirectory() as tmp:
        ctx = _context(tmp)
        ctx.store.set("initialized", True)
        sub = ctx.subscribe(["node_status_update"])
        with TestClient(create_app(context=ctx)) as client:
            r1 = client.post("/api/start")
            assert r1.json()["success"] is True
            assert r1.json()["data"]["status"] == "running"

            r2 = client.get("/api/status")
            assert r2.json()["data"]["current_block"] == 100
            assert r2.json()["data"]["peers_count"] == 2

            r3 = client.post("/api/stop")
            assert r3.json()["data"]["status"] == "stopped"

            detailed = client.get("/api/status/detailed").json()
            assert detailed["success"] is True
            assert detailed["data"]["services"]["chain"] is True

            resources = client.get("/api/resources").json()
            assert set(resources["data"]) >= {"cpu_percent", "memory_mb", "disk_used_gb"}

        states = []
        while True:
            item = sub.get(timeout=0)
            if item is None:
                break
            states.append(item[1].status)
        assert states[0] == NodeState.STARTING
        assert states[-1] == NodeState.STOPPED


def test_logs_and_clear():
    with tempfile.TemporaryDirectory() as tmp:
        ctx = _context(tmp)
        with TestClient(create_app(context=ctx)) as client:
            client.post("/api/start")
            entries = client.get("/api/logs").json()["data"]["entries"]
            assert any(e["level"] == "WARN" and "NotInitialized" in e["message"] for e in entries)

            assert client.post("/api/logs/clear").json()["success"] is True
            entries = client.get("/api/logs").json()["data"]["entries"]
            assert not any("NotInitialized" in e["message"] for e in entries)


def test_snapshot_download_skipped_when_data_exists():
    with tempfile.TemporaryDirectory() as tmp:
        ctx = _context(tmp)
        chain_dir = ctx.settings.data_dir / "chain"
        chain_dir.mkdir(parents=True)
        (chain_dir / "blocks.dat").write_bytes(b"data")
        sub = ctx.subscribe(["download_progress"])
        with TestClient(create_app(context=ctx)) as client:
            r = client.post("/api/snapshot/download")
            assert r.json()["success"] is True
            assert sub.get(timeout=1) == ("download_progress", 100.0)

            info = client.get("/api/snapshot").json()["data"]
            assert info["busy"] is False
            assert info["data_ready"] is True
            assert info["record"] is None

            assert client.post("/api/snapshot/cancel").json()["success"] is False


def test_snapshot_download_reuses_interrupted_url(monkeypatch):
    with tempfile.TemporaryDirectory() as tmp:
        ctx = _context(tmp)
        old_url = "https://backup.example.com/backup_2024-11-19.tar.gz"
        save_record(get_download_record(ctx.settings), DownloadState(
            url=old_url, destination_path=str(ctx.settings.snapshot_dir / "backup_2024-11-19.tar.gz"),
            total_bytes=1000, bytes_downloaded=500,
        ))

        def index_changed(*args, **kwargs):
            raise AssertionError("存在未完成的下载时不应重新解析最新快照")

        requested = []
        monkeypatch.setattr("workers.node_context.resolve_latest_snapshot_url", index_changed)
        monkeypatch.setattr(ctx.acquirer, "acquire", lambda url: requested.append(url))

        asyncio.run(ctx.download_snapshot())
        assert requested == [old_url]


def test_format_sse():
    status = NodeStatus(status=NodeState.SYNCING, sync_progress=12.5)
    text = format_sse("node_status_update", status)
    assert text.startswith("event: node_status_update\ndata: {")
    assert '"status": "syncing"' in text
    assert text.endswith("\n\n")
    assert format_sse("download_progress", 42.0) == "event: download_progress\ndata: 42.0\n\n"
