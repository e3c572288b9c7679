# -*- coding: utf-8 -*-

"""
编排引擎适配器（ComposeEngine）

文件功能:
    - 封装对 docker compose（或旧版 docker-compose）的调用：启动、停止、查询服务状态、读取日志。
    - 每次调用都带有显式超时；超时转换为 CallTimeoutError，非零退出码转换为 EngineFailureError，
      并原样保留引擎输出。

公开接口:
    - 类 ComposeEngine
        - 方法: up() -> str
        - 方法: down() -> str
        - 方法: service_states() -> dict[str, bool]
        - 方法: logs(service=None, tail=100) -> str
        - 方法: docker_installed() -> bool
        - 方法: daemon_running() -> bool
    - 函数 parse_ps_output(text) -> dict[str, bool]

内部方法:
    - _invocation(): 探测可用的 compose 调用方式
    - _run(): 执行一次引擎命令
"""

from __future__ import annotations

import json
import shutil
import subprocess
from pathlib import Path
from typing import Optional, Tuple

from loguru import logger

from service.errors import CallTimeoutError, EngineFailureError

DOCKER_CANDIDATES = ("docker", "/opt/homebrew/bin/docker", "/usr/local/bin/docker", "/usr/bin/docker")
COMPOSE_CANDIDATES = (
    "docker-compose",
    "/opt/homebrew/bin/docker-compose",
    "/usr/local/bin/docker-compose",
    "/usr/bin/docker-compose",
)
PROFILE_ARGS = ["--profile", "all"]


def _probe(cmd: list[str], timeout: float = 10) -> bool:
    try:
        result = subprocess.run(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, timeout=timeout, check=False)
        return result.returncode == 0
    except (OSError, subprocess.TimeoutExpired):
        return False


def parse_ps_output(text: str) -> dict[str, bool]:
    """解析 `compose ps --format json` 的输出。

    新版输出为逐行 JSON，旧版为一个 JSON 数组，两种都兼容。
    """
    text = text.strip()
    if not text:
        return {}
    items: list = []
    if text.startswith("["):
        items = json.loads(text)
    else:
        for line in text.splitlines():
            line = line.strip()
            if line:
                items.append(json.loads(line))
    states: dict[str, bool] = {}
    for item in items:
        service = item.get("Service") or item.get("Name", "")
        state = str(item.get("State", "")).lower()
        if service:
            states[service] = states.get(service, False) or state == "running"
    return states


class ComposeEngine:
    """负责调用 docker compose 的帮助类"""

    def __init__(self, compose_dir: Path | str, timeout: float = 120.0):
        self.compose_dir = Path(compose_dir)
        self.timeout = timeout
        self._cached_invocation: Optional[Tuple[str, list[str]]] = None

    def _find_docker(self) -> Optional[str]:
        for candidate in DOCKER_CANDIDATES:
            if shutil.which(candidate) and _probe([candidate, "--version"]):
                return candidate
        return None

    def _invocation(self) -> Tuple[str, list[str]]:
        if self._cached_invocation is not None:
            return self._cached_invocation
        docker = self._find_docker()
        # 优先使用 docker compose 子命令
        if docker and _probe([docker, "compose", "version"]):
            self._cached_invocation = (docker, ["compose"])
            return self._cached_invocation
        for candidate in COMPOSE_CANDIDATES:
            if shutil.which(candidate) and _probe([candidate, "--version"]):
                self._cached_invocation = (candidate, [])
                return self._cached_invocation
        raise EngineFailureError("未找到 'docker compose' 或 'docker-compose'")

    def _run(self, args: list[str], timeout: Optional[float] = None) -> str:
        program, base_args = self._invocation()
        cmd = [program, *base_args, *args]
        limit = timeout or self.timeout
        logger.debug(f"执行引擎命令: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                cwd=self.compose_dir,
                capture_output=True,
                text=True,
                timeout=limit,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise CallTimeoutError(f"引擎命令超时 ({limit:.0f}s): {' '.join(args)}") from e
        except OSError as e:
            raise EngineFailureError(f"无法执行引擎命令: {e}", output=str(e)) from e

        stdout = (result.stdout or "").strip()
        stderr = (result.stderr or "").strip()
        if result.returncode != 0:
            raise EngineFailureError(
                f"引擎命令执行失败，退出码: {result.returncode}",
                output=stderr or stdout,
            )
        return stdout

    def up(self) -> str:
        return self._run([*PROFILE_ARGS, "up", "-d"])

    def down(self) -> str:
        return self._run([*PROFILE_ARGS, "down"])

    def service_states(self) -> dict[str, bool]:
        output = self._run(["ps", "--all", "--format", "json"])
        try:
            return parse_ps_output(output)
        except ValueError as e:
            raise EngineFailureError("无法解析服务状态输出", output=output) from e

    def logs(self, service: Optional[str] = None, tail: int = 100) -> str:
        args = ["logs", "--no-color", "--tail", str(tail)]
        if service:
            args.append(service)
        return self._run(args)

    def docker_installed(self) -> bool:
        return self._find_docker() is not None

    def daemon_running(self) -> bool:
        docker = self._find_docker()
        if docker is None:
            return False
        try:
            result = subprocess.run([docker, "info"], capture_output=True, text=True, timeout=30, check=False)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"检查 Docker 守护进程失败: {e}")
            return False
        if result.returncode != 0:
            logger.bind(details=(result.stderr or "").strip()).warning("Docker 守护进程未运行")
            return False
        return True
