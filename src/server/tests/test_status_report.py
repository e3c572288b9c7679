# -*- coding: utf-8 -*-
"""
测试详细状态报告的聚合
"""

import os
import tempfile

from service import status_report
from service.errors import EngineFailureError
from workers.schemas import NodeState, NodeStatus


class FakeEngine:
    def __init__(self, fail=False):
        self.fail = fail

    def service_states(self):
        if self.fail:
            raise EngineFailureError("ps failed", output="daemon not running")
        return {"chain": True, "p2p": True, "jsonrpc": False, "unknown_extra": True}

    def logs(self, service=None, tail=100):
        if self.fail:
            raise EngineFailureError("logs failed")
        return "chain-1 | ok\np2p-1 | ERROR peer timeout\nchain-1 | error: fork detected\n"


class FakeQuery:
    def get_time_remaining(self):
        return "1d, 02h"


def test_summarize_errors():
    assert status_report.summarize_errors("all good\n").error_count == 0
    activity = status_report.summarize_errors("a\nError one\nb\nerror two\n")
    assert activity.error_count == 2
    assert activity.last_error == "error two"


def test_build_detailed_status(monkeypatch):
    monkeypatch.setattr(status_report, "port_open", lambda port: port == status_report.JSONRPC_PORT)
    status = NodeStatus(status=NodeState.SYNCING, sync_progress=50.0, current_block=50, target_block=100, peers_count=7)
    with tempfile.TemporaryDirectory() as tmp:
        with open(os.path.join(tmp, "blocks.dat"), "wb") as f:
            f.write(b"\0" * 2048)
        detailed = status_report.build_detailed_status(FakeEngine(), FakeQuery(), status, tmp)

    assert detailed.services.chain is True
    assert detailed.services.jsonrpc is False
    assert detailed.services.amqp is False
    assert detailed.sync.time_remaining == "1d, 02h"
    assert detailed.sync.percentage == 50.0
    assert detailed.network.connected_peers == 7
    assert detailed.network.jsonrpc_available is True
    assert detailed.network.grpc_available is False
    assert detailed.disk.blockchain_size == "2.0K"
    assert detailed.activity.error_count == 2
    assert detailed.activity.last_error == "chain-1 | error: fork detected"


def test_engine_failures_fall_back_to_defaults(monkeypatch):
    monkeypatch.setattr(status_report, "port_open", lambda port: False)
    with tempfile.TemporaryDirectory() as tmp:
        detailed = status_report.build_detailed_status(
            FakeEngine(fail=True), FakeQuery(), NodeStatus(), os.path.join(tmp, "missing")
        )
    assert detailed.services.chain is False
    assert detailed.sync.time_remaining == "Unknown"
    assert detailed.disk.blockchain_size == "0B"
    assert detailed.activity.last_error == "No recent errors"
