# -*- coding: utf-8 -*-
"""
查找最新的快照地址
"""
import re
from urllib.parse import urljoin

import requests
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import RequestException, Timeout

from service.errors import CallTimeoutError, NetworkTransientError

SNAPSHOT_NAME_RE = re.compile(r"backup_\d{4}-\d{2}-\d{2}\.tar\.gz")


def resolve_latest_snapshot_url(index_url: str, timeout: float = 30) -> str:
    """
    从快照索引页中找出日期最新的 backup_YYYY-MM-DD.tar.gz，返回其完整地址。

    :param index_url: 快照索引页地址
    :param timeout: 请求超时（秒）
    :return: 快照下载地址
    """
    try:
        resp = requests.get(index_url, timeout=timeout)
        resp.raise_for_status()
    except Timeout as e:
        raise CallTimeoutError(f"获取快照列表超时: {e}") from e
    except RequestsConnectionError as e:
        raise NetworkTransientError(f"无法连接快照服务器: {e}") from e
    except RequestException as e:
        raise NetworkTransientError(f"获取快照列表失败: {e}") from e

    names = sorted(set(SNAPSHOT_NAME_RE.findall(resp.text)))
    if not names:
        raise NetworkTransientError("快照列表中没有可用的快照")
    base = index_url if index_url.endswith("/") else index_url + "/"
    return urljoin(base, names[-1])
