# -*- coding: utf-8 -*-
"""
错误类型

文件功能:
    - 定义对外暴露的错误种类。每个错误都带有可读的 message、可区分的 kind，
      以及 retryable 标志，方便调用方决定是否提供"重试"操作。

公开接口:
    - NodeError(RuntimeError): 基类
    - NotInitializedError: 尚未完成初始化
    - EngineFailureError: 编排引擎调用失败（原样保留引擎输出）
    - NetworkTransientError: 网络连接类的暂时性错误
    - CallTimeoutError: 外部调用超过时限
    - CorruptDataError: 下载/解压的数据未通过校验
    - RetryableError: 下载被中断，但可以通过重新调用续传
"""

from typing import Optional


class NodeError(RuntimeError):
    kind: str = "NodeError"
    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "retryable": self.retryable}


class NotInitializedError(NodeError):
    kind = "NotInitialized"


class EngineFailureError(NodeError):
    kind = "EngineFailure"

    def __init__(self, message: str, output: Optional[str] = None):
        super().__init__(message)
        # 引擎的原始输出，不做任何加工
        self.output = output or ""


class NetworkTransientError(NodeError):
    kind = "NetworkTransient"
    retryable = True


class CallTimeoutError(NodeError):
    kind = "Timeout"
    retryable = True


class CorruptDataError(NodeError):
    kind = "Corrupt"


class RetryableError(NodeError):
    kind = "Retryable"
    retryable = True
