# -*- coding: utf-8 -*-

"""
测试同步监控

验证 Syncing -> Running 的推进、连续失败阈值、Starting 超时以及目标高度不可知时的处理。
"""

import asyncio
import os
import tempfile
import time

from service.errors import NetworkTransientError
from service.state_store import StateStore
from workers.lifecycle_controller import LifecycleController
from workers.schemas import NodeState
from workers.sync_monitor import SyncMonitor


class FakeEngine:
    def up(self):
        return ""

    def down(self):
        return ""


class FakeQuery:
    def __init__(self, head=0, target=0, peers=0):
        self.head = head
        self.target = target
        self.peers = peers
        self.error = None
        self.target_error = None

    def get_head_block(self):
        if self.error is not None:
            raise self.error
        return self.head

    def get_target_block(self, current_block):
        if self.target_error is not None:
            raise self.target_error
        return self.target

    def get_peer_count(self):
        return self.peers


class RecordingChannel:
    def __init__(self):
        self.published = []

    def publish(self, payload):
        self.published.append(payload)


def _setup(tmp, query, **kwargs):
    store = StateStore(os.path.join(tmp, "node_state.json"))
    store.set("initialized", True)
    channel = RecordingChannel()
    controller = LifecycleController(FakeEngine(), store, channel, engine_timeout=5, restart_delay=0, **kwargs)
    monitor = SyncMonitor(controller, query, interval=60, failure_threshold=3, query_timeout=5)
    controller.attach_monitor(monitor)
    return controller, monitor, channel


def test_syncing_then_running():
    with tempfile.TemporaryDirectory() as tmp:
        query = FakeQuery(head=500, target=1000, peers=3)
        controller, monitor, _ = _setup(tmp, query)

        status = asyncio.run(controller.start())
        assert status.status == NodeState.SYNCING
        assert status.sync_progress == 50.0
        assert status.current_block == 500
        assert status.target_block == 1000

        query.head = 1000
        status = asyncio.run(monitor.tick())
        assert status.status == NodeState.RUNNING
        assert status.sync_progress == 100.0


def test_running_stays_running_when_target_moves_ahead():
    with tempfile.TemporaryDirectory() as tmp:
        query = FakeQuery(head=1000, target=1000)
        controller, monitor, _ = _setup(tmp, query)
        asyncio.run(controller.start())

        query.target = 1010
        status = asyncio.run(monitor.tick())
        assert status.status == NodeState.RUNNING
        assert status.sync_progress < 100.0


def test_consecutive_failures_reach_threshold():
    with tempfile.TemporaryDirectory() as tmp:
        query = FakeQuery(head=1000, target=1000)
        controller, monitor, channel = _setup(tmp, query)
        asyncio.run(controller.start())
        assert controller.status.status == NodeState.RUNNING

        query.error = NetworkTransientError("connection refused")
        published_before = len(channel.published)
        asyncio.run(monitor.tick())
        asyncio.run(monitor.tick())
        assert controller.status.status == NodeState.RUNNING
        assert monitor.consecutive_failures == 2
        # 失败的监控周期同样推送当前状态
        assert len(channel.published) == published_before + 2

        asyncio.run(monitor.tick())
        assert controller.status.status == NodeState.ERROR
        assert controller.status.error_message == "connection refused"
        assert monitor.consecutive_failures == 0


def test_success_resets_failure_count():
    with tempfile.TemporaryDirectory() as tmp:
        query = FakeQuery(head=10, target=10)
        controller, monitor, _ = _setup(tmp, query)
        asyncio.run(controller.start())

        query.error = NetworkTransientError("connection refused")
        asyncio.run(monitor.tick())
        asyncio.run(monitor.tick())
        query.error = None
        asyncio.run(monitor.tick())
        assert monitor.consecutive_failures == 0
        assert controller.status.status == NodeState.RUNNING


def test_starting_timeout_moves_to_error():
    with tempfile.TemporaryDirectory() as tmp:
        query = FakeQuery()
        query.error = NetworkTransientError("connection refused")
        controller, monitor, _ = _setup(tmp, query, starting_timeout=60)

        asyncio.run(controller.start())
        assert controller.status.status == NodeState.STARTING

        controller.starting_timeout = 0.001
        time.sleep(0.01)
        asyncio.run(monitor.tick())
        assert controller.status.status == NodeState.ERROR
        assert "启动超过" in controller.status.error_message


def test_target_below_current_is_clamped():
    with tempfile.TemporaryDirectory() as tmp:
        controller, _, _ = _setup(tmp, FakeQuery(head=1000, target=900))
        status = asyncio.run(controller.start())
        assert status.status == NodeState.RUNNING
        assert status.target_block == 1000
        assert status.sync_progress == 100.0


def test_unknown_target_keeps_progress():
    with tempfile.TemporaryDirectory() as tmp:
        query = FakeQuery(head=200, target=0)
        query.target_error = NetworkTransientError("mainnet unreachable")
        controller, monitor, _ = _setup(tmp, query)

        status = asyncio.run(controller.start())
        assert status.status == NodeState.SYNCING
        assert status.current_block == 200
        assert status.sync_progress == 0.0
        assert monitor.consecutive_failures == 0

        # 目标高度恢复后按正常方式计算
        query.target_error = None
        query.target = 400
        status = asyncio.run(monitor.tick())
        assert status.sync_progress == 50.0


def test_tick_is_noop_when_stopped():
    with tempfile.TemporaryDirectory() as tmp:
        controller, monitor, channel = _setup(tmp, FakeQuery(head=1, target=1))
        assert asyncio.run(monitor.tick()) is None
        assert channel.published == []
