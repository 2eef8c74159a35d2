"""
种子站链接识别与提交

识别结果分三种：
- None：文本中没有已知种子站的链接
- LinkMatch(site, torrent_id)：识别成功
- ExtractionError：找到已知站点的链接，但无法提取种子ID
"""

import re
from typing import Dict, Mapping, Optional

from .config import TrackerConfig
from .exceptions import ExtractionError, QBittorrentBotError, tag_stage
from .logging_config import get_logger
from .models import LinkMatch, TorrentRecord
from .qbittorrent_client import QBittorrentClient
from .tracker_client import TrackerClient

_URL_TAIL = r"\.[a-z]{2,4}\b[-a-zA-Z0-9@:%_+.~#?&/=]*"


def _link_pattern(sites: Mapping[str, TrackerConfig]) -> Optional[re.Pattern]:
    domains = sorted({re.escape(config.domain) for config in sites.values()}, key=len, reverse=True)
    if not domains:
        return None
    return re.compile(
        rf"https?://(?:[a-z0-9-]+\.)?(?P<domain>{'|'.join(domains)}){_URL_TAIL}",
        re.IGNORECASE
    )


def find_link(text: str, sites: Mapping[str, TrackerConfig]) -> Optional[str]:
    """返回文本中第一个已知种子站链接，没有时返回None"""
    pattern = _link_pattern(sites)
    if pattern is None or not text:
        return None
    match = pattern.search(text)
    return match.group(0) if match else None


def _site_for_domain(domain: str, sites: Mapping[str, TrackerConfig]) -> Optional[str]:
    domain = domain.lower()
    for site, config in sites.items():
        if config.domain == domain:
            return site
    return None


def recognize(text: str, sites: Mapping[str, TrackerConfig]) -> Optional[LinkMatch]:
    """识别种子站链接并提取 (站点, 种子ID)"""
    pattern = _link_pattern(sites)
    if pattern is None or not text:
        return None
    match = pattern.search(text)
    if not match:
        return None

    site = _site_for_domain(match.group('domain'), sites)
    if site is None:
        return None

    link = match.group(0)
    id_param = re.escape(sites[site].id_param)
    id_match = re.search(rf"[?&]{id_param}=(\d+)", link)
    if not id_match:
        raise ExtractionError(f"无法从 {site} 链接中提取种子ID: {link}", site=site)
    return LinkMatch(site=site, torrent_id=id_match.group(1))


class LinkOrchestrator:
    """把"从种子站下载 -> 提交到qBittorrent"组合为一个操作"""

    def __init__(self, trackers: TrackerClient, daemon: QBittorrentClient):
        self.trackers = trackers
        self.daemon = daemon
        self.logger = get_logger('LinkOrchestrator')

    @property
    def sites(self) -> Dict[str, TrackerConfig]:
        return self.trackers.sites

    def find_link(self, text: str) -> Optional[str]:
        return find_link(text, self.sites)

    def recognize(self, text: str) -> Optional[LinkMatch]:
        return recognize(text, self.sites)

    async def submit(self, site: str, torrent_id: str, save_path: str) -> TorrentRecord:
        """
        下载种子并添加到qBittorrent

        失败时原样抛出异常，并在 error.stage 中标记失败阶段（tracker / daemon）
        """
        self.logger.info(f"提交种子 {site}:{torrent_id} -> {save_path}")
        try:
            payload = await self.trackers.fetch_payload(site, torrent_id)
        except QBittorrentBotError as e:
            raise tag_stage(e, "tracker")

        try:
            return await self.daemon.add_torrent(payload, save_path)
        except QBittorrentBotError as e:
            raise tag_stage(e, "daemon")
