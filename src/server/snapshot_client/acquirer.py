# -*- coding: utf-8 -*-
"""
可续传的快照下载、校验与解压

流程:
    1) 读取持久化的下载记录（DownloadState）。同一 url 且局部文件不小于记录的字节数时，
       截断到最近的检查点并使用 Range 请求续传；否则丢弃旧的局部文件从头下载。
       记录属于其它 url 时，一并删除旧的局部文件与归档。
    2) 按固定块大小流式写入局部文件，定期落盘检查点，按时间节流上报进度。
    3) 传输中断或被取消时，同步保存已下载字节数并抛出 RetryableError；以相同参数再次调用即可续传。
    4) 校验总大小（以及可选的 sha256）。不一致时删除局部文件与记录并抛出 CorruptDataError。
    5) 校验通过后才解压到链数据目录；解压期间保留"未完成"标记，重试时会重新解压。
"""
import os
import tarfile
import threading
import time
from pathlib import Path
from typing import Callable, Optional

import requests
from loguru import logger
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import RequestException, Timeout

from config import Settings
from service.errors import CallTimeoutError, CorruptDataError, NetworkTransientError, RetryableError
from service.paths import get_download_record, get_extract_marker, get_snapshot_paths
from workers.schemas import DownloadState
from .utils import clear_record, file_sha256, load_record, save_record


class _Cancelled(Exception):
    pass


def _expected_total(response, resume_from: int) -> Optional[int]:
    """从响应头推断文件总大小"""
    if response.status_code == 206:
        content_range = response.headers.get("Content-Range", "")
        if "/" in content_range:
            total = content_range.rsplit("/", 1)[1].strip()
            if total.isdigit():
                return int(total)
    length = str(response.headers.get("Content-Length", "") or "")
    if length.isdigit():
        return int(length) + (resume_from if response.status_code == 206 else 0)
    return None


class SnapshotAcquirer:
    """快照下载器；局部文件与下载记录只由它写入"""

    def __init__(self, settings: Settings, on_progress: Optional[Callable[[float], None]] = None, retry_backoff: float = 1.0):
        self.settings = settings
        self.on_progress = on_progress or (lambda x: None)
        self.retry_backoff = retry_backoff
        self._busy = threading.Lock()
        self._cancel = threading.Event()
        self._idle = threading.Event()
        self._idle.set()
        self._response_lock = threading.Lock()
        self._response = None

    # ---- 状态查询 ----

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    def extraction_incomplete(self) -> bool:
        return get_extract_marker(self.settings).exists()

    def data_ready(self) -> bool:
        chain_dir = self.settings.data_dir / "chain"
        if self.extraction_incomplete() or not chain_dir.is_dir():
            return False
        return any(chain_dir.iterdir())

    def current_record(self) -> Optional[DownloadState]:
        return load_record(get_download_record(self.settings))

    def cancel(self, timeout: float = 30.0) -> bool:
        """关闭在途传输并等待进度落盘后返回；没有下载在进行时返回 False"""
        if not self.busy:
            return False
        self._cancel.set()
        with self._response_lock:
            response = self._response
        if response is not None:
            response.close()
        self._idle.wait(timeout)
        return True

    # ---- 主流程 ----

    def acquire(self, url: str, sha256: Optional[str] = None) -> DownloadState:
        if not self._busy.acquire(blocking=False):
            raise RetryableError("已有快照下载正在进行")
        self._idle.clear()
        self._cancel.clear()
        try:
            paths = get_snapshot_paths(self.settings, url)
            record = load_record(paths["record"])
            if (
                record is not None
                and record.url == url
                and record.status == "complete"
                and paths["archive"].exists()
            ):
                logger.info("快照归档已通过校验，直接进入解压")
            else:
                record = self._download(url, sha256, paths, record)
            self._extract(paths)
            return record
        finally:
            self._idle.set()
            self._busy.release()

    def _open(self, url: str, resume_from: int):
        headers = {"Range": f"bytes={resume_from}-"} if resume_from else {}
        timeout = (self.settings.download_connect_timeout, self.settings.download_read_timeout)
        retries = self.settings.download_connect_retries
        last_error: Exception = NetworkTransientError("无法连接快照服务器")
        for attempt in range(1, retries + 1):
            try:
                resp = requests.get(url, headers=headers, stream=True, timeout=timeout)
            except Timeout as e:
                last_error = CallTimeoutError(f"连接快照服务器超时: {e}")
            except RequestsConnectionError as e:
                last_error = NetworkTransientError(f"无法连接快照服务器: {e}")
            else:
                if resp.status_code == 416 and resume_from:
                    resp.close()
                    logger.warning("服务器拒绝续传范围，从头开始下载")
                    return self._open(url, 0)
                if resp.status_code >= 400:
                    resp.close()
                    raise NetworkTransientError(f"快照服务器返回 HTTP {resp.status_code}")
                return resp
            logger.warning(f"连接快照服务器失败 ({attempt}/{retries}): {last_error}")
            if attempt < retries and self.retry_backoff > 0:
                time.sleep(self.retry_backoff * attempt)
        raise last_error

    def _download(self, url: str, sha256: Optional[str], paths: dict, record: Optional[DownloadState]) -> DownloadState:
        partial = paths["partial"]
        resume_from = 0
        if record is not None and record.url != url:
            self._discard_stale(record)
            record = None
        size = partial.stat().st_size if partial.exists() else 0
        if (
            record is not None
            and record.status == "partial"
            and record.bytes_downloaded > 0
            and size >= record.bytes_downloaded
        ):
            resume_from = record.bytes_downloaded
            if size > resume_from:
                # 检查点之后写入的字节未记录，截回最近一次已落盘的检查点
                os.truncate(partial, resume_from)
                logger.info(f"局部文件 {size} 字节超出检查点，截断到 {resume_from} 字节")
            logger.info(f"发现未完成的下载，从 {resume_from} 字节处续传")
        else:
            if partial.exists():
                logger.info(f"丢弃过期的局部文件: {partial}")
                partial.unlink()
            record = DownloadState(url=url, destination_path=str(paths["archive"]))
        if sha256:
            record = record.model_copy(update={"sha256": sha256})
        save_record(paths["record"], record)

        response = self._open(url, resume_from)
        if resume_from and response.status_code != 206:
            logger.warning("服务器不支持断点续传，从头开始下载")
            resume_from = 0
        total = _expected_total(response, resume_from)
        record = record.model_copy(update={"total_bytes": total, "bytes_downloaded": resume_from})
        save_record(paths["record"], record)
        if resume_from and total:
            self.on_progress(round(resume_from / total * 100, 2))

        self._stream(response, paths, record, resume_from)
        return self._verify(paths, load_record(paths["record"]) or record)

    def _stream(self, response, paths: dict, record: DownloadState, resume_from: int) -> None:
        partial = paths["partial"]
        total = record.total_bytes
        downloaded = resume_from
        last_checkpoint = downloaded
        started = last_report = time.monotonic()
        with self._response_lock:
            self._response = response
        try:
            with open(partial, "ab" if resume_from else "wb") as f:
                for chunk in response.iter_content(chunk_size=self.settings.download_chunk_size):
                    if self._cancel.is_set():
                        raise _Cancelled()
                    if not chunk:
                        continue
                    f.write(chunk)
                    downloaded += len(chunk)

                    if downloaded - last_checkpoint >= self.settings.download_checkpoint_bytes:
                        f.flush()
                        os.fsync(f.fileno())
                        save_record(paths["record"], record.model_copy(update={"bytes_downloaded": downloaded}))
                        last_checkpoint = downloaded
                        logger.debug(f"下载检查点已保存: {downloaded} 字节")

                    now = time.monotonic()
                    if now - last_report >= self.settings.download_progress_interval:
                        self._report(downloaded, total, resume_from, now - started)
                        last_report = now
                if self._cancel.is_set():
                    raise _Cancelled()
        except (RequestException, _Cancelled) as e:
            self._interrupted(paths, record, e)
        except Exception as e:
            # 取消时从其他线程关闭连接，底层可能抛出任意异常
            if not self._cancel.is_set():
                raise
            self._interrupted(paths, record, e)
        finally:
            with self._response_lock:
                self._response = None
            response.close()

        save_record(paths["record"], record.model_copy(update={"bytes_downloaded": downloaded}))

    def _interrupted(self, paths: dict, record: DownloadState, error: Exception) -> None:
        partial = paths["partial"]
        size = partial.stat().st_size if partial.exists() else 0
        save_record(paths["record"], record.model_copy(update={"bytes_downloaded": size}))
        reason = "下载已取消" if self._cancel.is_set() else f"下载中断: {error}"
        logger.warning(f"{reason}，已保存进度 {size} 字节")
        raise RetryableError(f"{reason}。已保存 {size} 字节，重新下载即可续传") from error

    def _report(self, downloaded: int, total: Optional[int], resume_from: int, elapsed: float) -> None:
        if not total:
            logger.info(f"已下载 {downloaded / 1e9:.1f}GB")
            return
        progress = min(100.0, downloaded / total * 100)
        mb_per_sec = (downloaded - resume_from) / 1e6 / elapsed if elapsed > 0 else 0.0
        eta_min = int((total - downloaded) / 1e6 / mb_per_sec / 60) if mb_per_sec > 0 else -1
        logger.info(
            f"下载进度 {progress:.1f}% - {downloaded / 1e9:.1f}GB/{total / 1e9:.1f}GB - "
            f"{mb_per_sec:.1f} MB/s - 剩余约 {eta_min} 分钟"
        )
        self.on_progress(round(progress, 2))

    def _discard_stale(self, record: DownloadState) -> None:
        """删除属于另一个 url 的旧归档与局部文件"""
        archive = Path(record.destination_path)
        for path in (archive.with_name(archive.name + ".part"), archive):
            if path.exists():
                logger.info(f"丢弃其它快照的遗留文件: {path}")
                path.unlink()

    def _discard(self, paths: dict) -> None:
        paths["partial"].unlink(missing_ok=True)
        clear_record(paths["record"])

    def _verify(self, paths: dict, record: DownloadState) -> DownloadState:
        partial = paths["partial"]
        size = partial.stat().st_size
        if record.total_bytes is not None and size != record.total_bytes:
            self._discard(paths)
            message = f"下载文件大小 {size} 与预期 {record.total_bytes} 不一致"
            logger.error(message)
            raise CorruptDataError(message)
        if record.sha256:
            actual = file_sha256(partial)
            if actual.lower() != record.sha256.lower():
                self._discard(paths)
                message = f"快照校验和不匹配: {actual}"
                logger.error(message)
                raise CorruptDataError(message)

        os.replace(partial, paths["archive"])
        record = record.model_copy(update={"bytes_downloaded": size, "total_bytes": size, "status": "complete"})
        save_record(paths["record"], record)
        self.on_progress(100.0)
        logger.info(f"快照下载完成并通过校验: {paths['archive']}")
        return record

    def _extract(self, paths: dict) -> None:
        archive = paths["archive"]
        data_dir = self.settings.data_dir
        marker = get_extract_marker(self.settings)
        if marker.exists():
            logger.warning("检测到上次解压未完成，重新解压")
        data_dir.mkdir(parents=True, exist_ok=True)
        marker.write_text(archive.name, encoding="utf-8")

        logger.info(f"开始解压快照: {archive} -> {data_dir}")
        try:
            with tarfile.open(archive, "r:*") as tar:
                tar.extractall(path=data_dir, filter="data")
        except tarfile.TarError as e:
            logger.bind(details=str(e)).error("快照解压失败，归档已删除")
            archive.unlink(missing_ok=True)
            clear_record(paths["record"])
            raise CorruptDataError(f"解压快照失败: {e}") from e
        except OSError as e:
            raise RetryableError(f"解压快照时发生 IO 错误，重试将重新解压: {e}") from e

        marker.unlink()
        archive.unlink(missing_ok=True)
        clear_record(paths["record"])
        logger.info("快照解压完成")
