"""
种子站客户端

每个站点维护独立的 TrackerSession（独立的cookie）。下载流程：
1. 确认站点会话已登录，登录失败时重连一次
2. 请求模板化的下载地址
3. 传输失败或 401/403 时重连并重试一次，其他非2xx直接失败
4. 校验种子内容非空且以 'd' 开头
"""

from typing import Dict, Optional

import aiohttp

from .config import TrackerConfig
from .exceptions import AuthError, ConfigError, ConnectivityError, FormatError, RemoteError
from .logging_config import get_logger
from .resilience import RetryAction, classify_failure, next_action
from .session import DEFAULT_TIMEOUT, RemoteSession, SessionFactory

# bencode 字典的起始字节
TORRENT_SENTINEL = b"d"


class TrackerSession(RemoteSession):
    """单个种子站的表单登录会话"""

    def __init__(self, site: str, config: TrackerConfig, timeout: float = DEFAULT_TIMEOUT,
                 session_factory: Optional[SessionFactory] = None):
        super().__init__(site, timeout=timeout, session_factory=session_factory)
        self.config = config
        self.logger = get_logger('TrackerClient')

    async def _login(self, session: aiohttp.ClientSession) -> None:
        self.logger.info(f"尝试登录种子站: {self.name}")
        resp = await self.send('POST', self.config.login_url, session=session,
                               data=dict(self.config.form_data))
        if not resp.ok:
            raise AuthError(f"登录 {self.name} 失败: HTTP {resp.status}", site=self.name)
        if self.config.success_marker and self.config.success_marker not in resp.text():
            raise AuthError(f"登录 {self.name} 失败: 未找到登录成功标志", site=self.name)

    async def _probe(self, session: aiohttp.ClientSession) -> bool:
        # 未配置探测地址时每次都重新登录
        if not self.config.probe_url:
            return False
        resp = await self.send('GET', self.config.probe_url, session=session)
        return resp.ok

    def download_url(self, torrent_id: str) -> str:
        return self.config.download_url.replace('{id}', torrent_id)


class TrackerClient:
    """按站点与种子ID下载种子文件"""

    def __init__(self, trackers: Dict[str, TrackerConfig], timeout: float = DEFAULT_TIMEOUT,
                 session_factory: Optional[SessionFactory] = None):
        self.logger = get_logger('TrackerClient')
        self._sessions: Dict[str, TrackerSession] = {
            site: TrackerSession(site, config, timeout=timeout, session_factory=session_factory)
            for site, config in trackers.items()
        }

    @property
    def sites(self) -> Dict[str, TrackerConfig]:
        return {site: session.config for site, session in self._sessions.items()}

    def session(self, site: str) -> TrackerSession:
        """获取站点会话，未配置的站点抛出 ConfigError"""
        try:
            return self._sessions[site]
        except KeyError:
            raise ConfigError(f"未找到种子站配置: {site}", details={"site": site}) from None

    async def fetch_payload(self, site: str, torrent_id: str) -> bytes:
        """下载种子文件内容"""
        session = self.session(site)

        # 登录阶段与下载阶段各自最多重连一次
        try:
            await session.ensure_authenticated()
        except (AuthError, ConnectivityError) as e:
            if next_action(classify_failure(e), 1) is RetryAction.FAIL:
                raise
            self.logger.warning(f"登录 {site} 失败，尝试重连: {str(e)}")
            await session.reconnect()

        url = session.download_url(torrent_id)
        attempt = 1
        while True:
            try:
                resp = await session.request('GET', url, f"下载种子 {site}:{torrent_id}", ensure=False)
                break
            except (ConnectivityError, RemoteError) as e:
                if next_action(classify_failure(e), attempt) is RetryAction.FAIL:
                    raise
                self.logger.warning(f"下载种子失败，重连 {site} 后重试: {str(e)}")
                await session.reconnect()
                attempt += 1

        payload = resp.body
        if not payload:
            raise FormatError(f"{site} 返回的种子内容为空", size=0)
        if not payload.startswith(TORRENT_SENTINEL):
            raise FormatError(f"{site} 返回的内容不是有效的种子文件", size=len(payload))

        self.logger.info(f"已下载种子 {site}:{torrent_id} ({len(payload)} 字节)")
        return payload

    async def close(self):
        for session in self._sessions.values():
            await session.close()
