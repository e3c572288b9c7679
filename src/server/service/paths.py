# -*- coding: utf-8 -*-
"""
统一的路径管理服务。

文件功能:
    - 为项目的不同部分提供统一、可靠的路径查找功能。
    - 集中管理项目中的关键路径，如 compose 目录、链数据目录、快照文件、解压标记等。

公开接口:
    - get_compose_file(settings): docker-compose.yml 路径
    - get_snapshot_paths(settings, url): 快照归档、局部文件与下载记录的路径
    - get_download_record(settings): 持久化下载记录（DownloadState）的路径
    - get_extract_marker(settings): "解压未完成"标记文件路径
    - existing_parent(path): 返回 path 自身或其最近的已存在祖先目录
"""

from pathlib import Path

from config import Settings

DEFAULT_SNAPSHOT_NAME = "snapshot.tar.gz"


def get_compose_file(settings: Settings) -> Path:
    return settings.compose_dir / "docker-compose.yml"


def get_snapshot_paths(settings: Settings, url: str) -> dict[str, Path]:
    """获取快照下载的相关路径布局。

    Returns:
        一个字典，包含最终归档、下载中的局部文件以及持久化下载记录（DownloadState）的路径。
    """
    name = url.rstrip("/").split("/")[-1] or DEFAULT_SNAPSHOT_NAME
    archive = settings.snapshot_dir / name
    return {
        "archive": archive,
        "partial": archive.with_name(archive.name + ".part"),
        "record": get_download_record(settings),
    }


def get_download_record(settings: Settings) -> Path:
    # 同一时间只有一个快照下载，记录文件与 url 无关
    return settings.snapshot_dir / "snapshot_download.json"


def get_extract_marker(settings: Settings) -> Path:
    # 解压开始前创建、完成后删除；残留即表示上次解压未完成
    return settings.data_dir / ".extract_incomplete"


def existing_parent(path: Path) -> Path:
    path = Path(path)
    while not path.exists() and path.parent != path:
        path = path.parent
    return path
