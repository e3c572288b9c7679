# -*- coding: utf-8 -*-

"""
节点初始化协调器

文件功能:
    - 串联节点初始化的各个步骤：获取 compose 仓库、准备配置目录与 .env、写入初始化标志。

公开接口:
    - 类 NodeSetup:
        - 方法: execute_setup() -> (success, message)

内部方法:
    - _run_step(): 执行单个初始化步骤
    - _prepare_repository() / _prepare_configuration() / _mark_initialized()
"""

from __future__ import annotations

import shutil
import subprocess
from datetime import datetime
from typing import Callable, Optional, Tuple

from loguru import logger

from config import Settings
from service.paths import get_compose_file

# 桌面端追加到 .env 的参数
DESKTOP_ENV_LINES = (
    "# Desktop Node Optimizations",
    "KOINOS_LOG_LEVEL=warn",
    "KOINOS_LOG_JSON=false",
    "# Auto-restart on system reboot",
    "COMPOSE_RESTART_POLICY=unless-stopped",
)


class NodeSetup:
    """协调节点初始化流程的类"""

    def __init__(self, settings: Settings, store, progress_callback: Optional[Callable[[str], None]] = None, clone_timeout: float = 600):
        self.settings = settings
        self.store = store
        self.progress_callback = progress_callback or (lambda x: None)
        self.clone_timeout = clone_timeout

    def _report_progress(self, message: str) -> None:
        logger.info(message)
        self.progress_callback(message)

    def _run_step(self, step_name: str, step_func: Callable[[], Tuple[bool, str]]) -> Tuple[bool, str]:
        self._report_progress(step_name)
        return step_func()

    def execute_setup(self) -> Tuple[bool, str]:
        """
        执行完整的初始化流程：
            1) 确保 compose 目录中存在 docker-compose.yml（缺失时浅克隆官方仓库）
            2) config-example -> config，env.example -> .env，并补齐桌面端参数
            3) 写入 initialized 标志与首次启动时间

        :return: (success, message) 元组
        """
        steps = (
            ("[1/3] 正在准备 compose 仓库...", self._prepare_repository, "仓库准备失败"),
            ("[2/3] 正在准备节点配置...", self._prepare_configuration, "配置准备失败"),
            ("[3/3] 正在写入初始化状态...", self._mark_initialized, "写入状态失败"),
        )
        for step_name, step_func, failure_prefix in steps:
            success, message = self._run_step(step_name, step_func)
            if not success:
                logger.error(f"{failure_prefix}: {message}")
                return False, f"{failure_prefix}: {message}"
            self._report_progress(f"[SUCCESS] {message}")
        return True, "节点初始化完成"

    def _prepare_repository(self) -> Tuple[bool, str]:
        compose_dir = self.settings.compose_dir
        if get_compose_file(self.settings).exists():
            return True, "docker-compose.yml 已存在，跳过克隆"

        # 之前失败的克隆可能留下空目录
        if compose_dir.exists() and not any(compose_dir.iterdir()):
            compose_dir.rmdir()
        if compose_dir.exists():
            return False, f"目录 {compose_dir} 非空但缺少 docker-compose.yml"

        compose_dir.parent.mkdir(parents=True, exist_ok=True)
        cmd = ["git", "clone", "--depth", "1", self.settings.compose_repo_url, str(compose_dir)]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.clone_timeout, check=False)
        except subprocess.TimeoutExpired:
            return False, f"克隆仓库超时 ({self.clone_timeout:.0f}s)"
        except OSError as e:
            return False, f"无法执行 git: {e}"
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            logger.bind(details=stderr).error("git clone 失败")
            return False, f"克隆仓库失败: {stderr}"
        if not get_compose_file(self.settings).exists():
            return False, "克隆完成但未找到 docker-compose.yml"
        return True, f"已克隆 {self.settings.compose_repo_url}"

    def _prepare_configuration(self) -> Tuple[bool, str]:
        compose_dir = self.settings.compose_dir
        config_dir = compose_dir / "config"
        example_dir = compose_dir / "config-example"
        try:
            copied = 0
            if example_dir.is_dir():
                config_dir.mkdir(parents=True, exist_ok=True)
                for item in example_dir.iterdir():
                    target = config_dir / item.name
                    if item.is_file() and not target.exists():
                        shutil.copy2(item, target)
                        copied += 1
            else:
                logger.warning("未找到 config-example，配置可能需要手动准备")

            env_file = compose_dir / ".env"
            env_example = compose_dir / "env.example"
            if not env_file.exists() and env_example.exists():
                shutil.copy2(env_example, env_file)
            if env_file.exists():
                content = env_file.read_text(encoding="utf-8")
                content = content.replace("#COMPOSE_PROFILES", "COMPOSE_PROFILES")
                if "COMPOSE_PROFILES=" not in content:
                    content = content.rstrip("\n") + "\nCOMPOSE_PROFILES=all\n"
                if "KOINOS_LOG_LEVEL" not in content:
                    content = content.rstrip("\n") + "\n\n" + "\n".join(DESKTOP_ENV_LINES) + "\n"
                env_file.write_text(content, encoding="utf-8")
            return True, f"配置已就绪（新复制 {copied} 个文件）"
        except OSError as e:
            return False, str(e)

    def _mark_initialized(self) -> Tuple[bool, str]:
        fields = {"initialized": True}
        if not self.store.get("first_launch_timestamp"):
            fields["first_launch_timestamp"] = datetime.now().astimezone().isoformat(timespec="seconds")
        try:
            self.store.update(**fields)
        except OSError as e:
            return False, str(e)
        return True, "初始化状态已保存"
