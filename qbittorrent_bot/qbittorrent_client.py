"""
qBittorrent Web API v2 客户端

所有操作都在执行前确认会话已认证；非2xx响应抛出 RemoteError，
网络传输失败抛出 ConnectivityError。种子信息每次都重新查询，不做缓存。
"""

from typing import Iterable, List, Optional

import aiohttp

from .config import QBittorrentConfig
from .exceptions import AuthError, NotFoundError, RemoteError, ValidationError
from .logging_config import get_logger
from .models import TorrentRecord
from .session import RemoteSession, SessionFactory


class QBittorrentClient(RemoteSession):
    """异步qBittorrent API客户端"""

    def __init__(self, config: QBittorrentConfig, session_factory: Optional[SessionFactory] = None):
        super().__init__("qBittorrent", timeout=config.timeout, session_factory=session_factory)
        self.config = config
        self.logger = get_logger('QBittorrentClient')
        self._base_url = config.url

    def _api(self, path: str) -> str:
        return f"{self._base_url}/api/v2/{path}"

    async def _login(self, session: aiohttp.ClientSession) -> None:
        """登录qBittorrent"""
        data = {
            'username': self.config.username,
            'password': self.config.password
        }
        self.logger.info(f"尝试登录qBittorrent: {self._base_url}")
        resp = await self.send(
            'POST', self._api('auth/login'), session=session,
            data=data, headers={'Referer': self._base_url}
        )
        if resp.status == 403:
            raise AuthError("登录失败: 登录尝试过多，IP已被暂时封禁", site=self.name)
        if resp.status != 200:
            raise AuthError(f"登录失败: HTTP {resp.status}", site=self.name)
        if "Ok" not in resp.text():
            raise AuthError("登录失败: 用户名或密码错误", site=self.name)

    async def _probe(self, session: aiohttp.ClientSession) -> bool:
        resp = await self.send('GET', self._api('app/version'), session=session)
        return resp.ok

    async def get_version(self) -> str:
        """获取qBittorrent版本信息"""
        resp = await self.request('GET', self._api('app/version'), "获取版本")
        return resp.text().strip()

    async def list_torrents(self, status_filter: str = "") -> List[TorrentRecord]:
        """
        获取种子列表

        Args:
            status_filter: qBittorrent状态过滤器（all / downloading / paused ...），空字符串表示全部
        """
        params = {'filter': status_filter} if status_filter else {}
        resp = await self.request('GET', self._api('torrents/info'), "获取种子列表", params=params)
        try:
            items = resp.json()
        except ValueError as e:
            raise RemoteError("获取种子列表失败: 响应不是有效的JSON", resp.status, resp.text()) from e
        return [TorrentRecord.from_api(item) for item in items]

    async def add_torrent(self, payload: bytes, save_path: str = "") -> TorrentRecord:
        """
        上传种子文件并返回新添加的种子

        qBittorrent的添加接口不返回种子标识，这里重新查询列表，
        取 added_on 最大的一项（时间相同时取先出现的一项）。
        """
        if not payload:
            raise ValidationError("种子内容为空", field="payload")

        form = aiohttp.FormData()
        form.add_field('torrents', payload, filename='download.torrent',
                       content_type='application/x-bittorrent')
        if save_path:
            form.add_field('savepath', save_path)

        resp = await self.request('POST', self._api('torrents/add'), "添加种子", data=form)
        if resp.text().strip() == "Fails.":
            raise RemoteError("添加种子失败: qBittorrent返回Fails", resp.status, resp.text())

        torrents = await self.list_torrents()
        if not torrents:
            raise NotFoundError("添加种子后未能在列表中找到新种子")

        newest = torrents[0]
        for torrent in torrents[1:]:
            if torrent.added_on > newest.added_on:
                newest = torrent
        self.logger.info(f"成功添加种子: {newest.name} -> {save_path or '默认路径'}")
        return newest

    async def _batch_action(self, endpoint: str, fallback: str, hashes: Iterable[str],
                            operation: str) -> None:
        joined = "|".join(hashes)
        try:
            await self.request('POST', self._api(f'torrents/{endpoint}'), operation,
                               data={'hashes': joined})
        except RemoteError as e:
            if e.status_code != 404:
                raise
            # qBittorrent 5.x 将 pause/resume 更名为 stop/start
            self.logger.info(f"{endpoint} 接口不存在，改用 {fallback}")
            await self.request('POST', self._api(f'torrents/{fallback}'), operation,
                               data={'hashes': joined})
        self.logger.info(f"{operation}成功: {joined}")

    async def pause_torrents(self, hashes: Iterable[str]) -> None:
        """暂停种子"""
        await self._batch_action('pause', 'stop', hashes, "暂停种子")

    async def resume_torrents(self, hashes: Iterable[str]) -> None:
        """恢复种子"""
        await self._batch_action('resume', 'start', hashes, "恢复种子")

    async def delete_torrents(self, hashes: Iterable[str], delete_files: bool = False) -> None:
        """删除种子，delete_files 为 True 时同时删除已下载的数据"""
        joined = "|".join(hashes)
        data = {
            'hashes': joined,
            'deleteFiles': 'true' if delete_files else 'false'
        }
        await self.request('POST', self._api('torrents/delete'), "删除种子", data=data)
        self.logger.info(f"删除种子成功: {joined} (删除数据: {delete_files})")

    async def find_by_hash(self, torrent_hash: str) -> TorrentRecord:
        """按hash查找种子（不区分大小写）"""
        wanted = torrent_hash.lower()
        for torrent in await self.list_torrents():
            if torrent.hash.lower() == wanted:
                return torrent
        raise NotFoundError(f"未找到种子: {torrent_hash}", key=torrent_hash)

    async def find_by_name(self, term: str) -> List[TorrentRecord]:
        """按名称查找种子（不区分大小写的子串匹配）"""
        wanted = term.lower()
        return [t for t in await self.list_torrents() if wanted in t.name.lower()]
