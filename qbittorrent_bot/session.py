"""
带认证状态的远程会话

一个 RemoteSession 拥有：
- 绑定独立 cookie jar 的 aiohttp 会话
- 站点相关的登录流程
- 廉价的只读存活探测
- 存活标志（乐观缓存，重连决策前必须探测验证）

重连时整体替换 aiohttp 会话及其 cookie jar，从不原地清空，保证旧 cookie
不会跨越重连边界。
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

import aiohttp

from .__version__ import __version__
from .exceptions import (
    QBittorrentBotError, ConnectivityError, RemoteError, ReconnectError
)
from .logging_config import get_logger

# 统一的单次请求超时（秒）
DEFAULT_TIMEOUT = 30

SessionFactory = Callable[[], aiohttp.ClientSession]
ReconnectListener = Callable[[str, str], None]


@dataclass
class HttpResponse:
    """已完整读取的HTTP响应"""

    status: int
    body: bytes
    content_type: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self) -> str:
        return self.body.decode('utf-8', errors='replace')

    def json(self) -> Any:
        return json.loads(self.body)


class RemoteSession(ABC):
    """远程会话基类，负责认证、存活探测与重连"""

    # 重连事件
    EVENT_ATTEMPTING = "attempting"
    EVENT_SUCCEEDED = "succeeded"
    EVENT_FAILED = "failed"

    def __init__(
        self,
        name: str,
        timeout: float = DEFAULT_TIMEOUT,
        session_factory: Optional[SessionFactory] = None,
    ):
        self.name = name
        self.timeout = timeout
        self.logger = get_logger('RemoteSession')
        self._session_factory = session_factory or self._default_session_factory
        self._session: Optional[aiohttp.ClientSession] = None
        self._alive = False
        self._generation = 0
        self._lock = asyncio.Lock()
        self._listeners: List[ReconnectListener] = []

    def _default_session_factory(self) -> aiohttp.ClientSession:
        # unsafe=True 允许为IP地址保存cookie（局域网内的qBittorrent）
        return aiohttp.ClientSession(
            cookie_jar=aiohttp.CookieJar(unsafe=True),
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            headers={'User-Agent': f'qbittorrent-bot/{__version__}'},
        )

    @property
    def is_alive(self) -> bool:
        """缓存的存活标志，可能已过期"""
        return self._alive

    @property
    def generation(self) -> int:
        """每次成功登录或重连后递增"""
        return self._generation

    @abstractmethod
    async def _login(self, session: aiohttp.ClientSession) -> None:
        """在给定会话上执行登录；被拒绝时抛出 AuthError"""

    @abstractmethod
    async def _probe(self, session: aiohttp.ClientSession) -> bool:
        """只读存活探测，返回会话是否仍被远端接受"""

    def add_reconnect_listener(self, listener: ReconnectListener):
        """注册重连事件监听器 listener(event, session_name)"""
        self._listeners.append(listener)

    def _notify(self, event: str):
        for listener in self._listeners:
            try:
                listener(event, self.name)
            except Exception as e:
                self.logger.error(f"重连监听器执行失败: {str(e)}")

    def _current_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = self._session_factory()
        return self._session

    async def send(self, method: str, url: str, session: Optional[aiohttp.ClientSession] = None,
                   **kwargs) -> HttpResponse:
        """发送请求并完整读取响应，传输错误统一转换为 ConnectivityError"""
        session = session or self._current_session()
        try:
            async with session.request(method, url, **kwargs) as resp:
                body = await resp.read()
                return HttpResponse(resp.status, body, resp.content_type)
        except asyncio.TimeoutError as e:
            raise ConnectivityError(f"{self.name} 请求超时: {method} {url}", url=url) from e
        except aiohttp.ClientError as e:
            raise ConnectivityError(f"{self.name} 网络请求错误: {str(e)}", url=url) from e

    async def request(self, method: str, url: str, operation: str, ensure: bool = True,
                      **kwargs) -> HttpResponse:
        """
        发送需要认证的请求

        Args:
            method: HTTP方法
            url: 完整地址
            operation: 操作名称，用于错误信息
            ensure: 是否先确认会话已认证
        """
        if ensure:
            await self.ensure_authenticated()
        response = await self.send(method, url, **kwargs)
        if not response.ok:
            raise RemoteError(f"{operation}失败", status_code=response.status, body=response.text())
        return response

    async def authenticate(self):
        """执行登录流程，仅在远端明确表示成功时标记为存活"""
        async with self._lock:
            await self._authenticate_locked()

    async def _authenticate_locked(self):
        self._alive = False
        await self._login(self._current_session())
        self._alive = True
        self._generation += 1
        self.logger.info(f"{self.name} 登录成功")

    async def ensure_authenticated(self):
        """在每个需要权限的操作前调用"""
        if self._alive:
            generation = self._generation
            try:
                if await self._probe(self._current_session()):
                    return
            except ConnectivityError as e:
                self.logger.debug(f"{self.name} 存活探测失败: {str(e)}")

            async with self._lock:
                # 等待锁期间其他调用者已经重新登录
                if self._alive and self._generation != generation:
                    return
                self.logger.info(f"{self.name} 会话已失效，重新登录")
                await self._authenticate_locked()
            return

        async with self._lock:
            if self._alive:
                return
            await self._authenticate_locked()

    async def reconnect(self):
        """丢弃旧会话与cookie，使用全新的会话重新登录"""
        self._notify(self.EVENT_ATTEMPTING)
        self.logger.warning(f"正在重连 {self.name}...")

        old_session = None
        succeeded = False
        try:
            async with self._lock:
                old_session = self._session
                fresh_session = self._session_factory()
                self._session = fresh_session
                self._alive = False
                await self._login(fresh_session)
                self._alive = True
                self._generation += 1
            succeeded = True
        except QBittorrentBotError as e:
            self.logger.error(f"重连 {self.name} 失败: {str(e)}")
            raise ReconnectError(f"重连 {self.name} 失败: {str(e)}", site=self.name) from e
        finally:
            # 无论登录结果如何（包括被取消），旧会话都要关闭
            if old_session is not None and not old_session.closed:
                await old_session.close()
            if succeeded:
                self.logger.info(f"重连 {self.name} 成功")
                self._notify(self.EVENT_SUCCEEDED)
            else:
                self._notify(self.EVENT_FAILED)

    async def close(self):
        """关闭aiohttp会话"""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        self._alive = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
