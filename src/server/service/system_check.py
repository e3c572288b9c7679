# -*- coding: utf-8 -*-
"""
系统需求检查

文件功能:
    - 检查 Docker 是否安装、守护进程是否运行、内存与链数据目录所在磁盘的可用空间。

公开接口:
    - check_system_requirements(engine, data_dir) -> SystemRequirements
"""

from pathlib import Path

import psutil
from loguru import logger

from service.paths import existing_parent
from workers.schemas import SystemRequirements

MIN_RAM_GB = 4
MIN_DISK_GB = 60
GB = 1024 * 1024 * 1024


def check_system_requirements(engine, data_dir: Path) -> SystemRequirements:
    logger.info("开始检查系统需求")
    missing: list[str] = []

    has_docker = engine.docker_installed()
    docker_running = False
    if has_docker:
        docker_running = engine.daemon_running()
        if not docker_running:
            missing.append("Docker is not running")
    else:
        logger.error("未安装 Docker")
        missing.append("Docker is not installed")

    ram_gb = int(psutil.virtual_memory().total // GB)
    if ram_gb < MIN_RAM_GB:
        missing.append(f"Insufficient RAM: {ram_gb}GB (minimum {MIN_RAM_GB}GB required)")

    available_disk_gb = int(psutil.disk_usage(str(existing_parent(data_dir))).free // GB)
    if available_disk_gb < MIN_DISK_GB:
        missing.append(
            f"Insufficient disk space: {available_disk_gb}GB (minimum {MIN_DISK_GB}GB required)"
        )

    requirements = SystemRequirements(
        has_docker=has_docker,
        docker_running=docker_running,
        ram_gb=ram_gb,
        available_disk_gb=available_disk_gb,
        is_sufficient=not missing,
        missing_requirements=missing,
    )
    logger.bind(details=f"missing={missing}").info(f"系统需求检查完成，满足要求: {requirements.is_sufficient}")
    return requirements
