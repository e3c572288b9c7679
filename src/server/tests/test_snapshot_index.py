# -*- coding: utf-8 -*-
"""
测试快照地址发现
"""

from types import SimpleNamespace

import pytest

from service.errors import NetworkTransientError
from snapshot_client import resolve_latest_snapshot_url

INDEX_HTML = """
<html><body>
<a href="backup_2024-03-01.tar.gz">backup_2024-03-01.tar.gz</a>
<a href="backup_2024-11-20.tar.gz">backup_2024-11-20.tar.gz</a>
<a href="backup_2024-07-15.tar.gz">backup_2024-07-15.tar.gz</a>
<a href="notes.txt">notes.txt</a>
</body></html>
"""


class FakeResponse:
    def __init__(self, text):
        self.text = text

    def raise_for_status(self):
        pass


def test_latest_snapshot_is_selected(monkeypatch):
    monkeypatch.setattr(
        "snapshot_client.index.requests",
        SimpleNamespace(get=lambda url, timeout=0: FakeResponse(INDEX_HTML)),
    )
    url = resolve_latest_snapshot_url("https://backup.example.com", timeout=5)
    assert url == "https://backup.example.com/backup_2024-11-20.tar.gz"


def test_no_snapshot_found(monkeypatch):
    monkeypatch.setattr(
        "snapshot_client.index.requests",
        SimpleNamespace(get=lambda url, timeout=0: FakeResponse("<html></html>")),
    )
    with pytest.raises(NetworkTransientError):
        resolve_latest_snapshot_url("https://backup.example.com/")
