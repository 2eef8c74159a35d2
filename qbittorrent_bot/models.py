"""
种子相关数据模型
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict


class TorrentState(str, Enum):
    """种子生命周期状态（对qBittorrent原始状态的归类）"""

    DOWNLOADING = "downloading"
    SEEDING = "seeding"
    PAUSED = "paused"
    STALLED = "stalled"
    CHECKING = "checking"
    OTHER = "other"

    @classmethod
    def from_raw(cls, raw: str) -> "TorrentState":
        return _RAW_STATES.get(raw, cls.OTHER)


_RAW_STATES = {
    "downloading": TorrentState.DOWNLOADING,
    "forcedDL": TorrentState.DOWNLOADING,
    "metaDL": TorrentState.DOWNLOADING,
    "forcedMetaDL": TorrentState.DOWNLOADING,
    "uploading": TorrentState.SEEDING,
    "seeding": TorrentState.SEEDING,
    "stalledUP": TorrentState.SEEDING,
    "forcedUP": TorrentState.SEEDING,
    "queuedUP": TorrentState.SEEDING,
    "pausedDL": TorrentState.PAUSED,
    "pausedUP": TorrentState.PAUSED,
    # qBittorrent 5.x 将 paused 更名为 stopped
    "stoppedDL": TorrentState.PAUSED,
    "stoppedUP": TorrentState.PAUSED,
    "stalledDL": TorrentState.STALLED,
    "checkingDL": TorrentState.CHECKING,
    "checkingUP": TorrentState.CHECKING,
    "checkingResumeData": TorrentState.CHECKING,
}


@dataclass
class TorrentRecord:
    """qBittorrent返回的种子信息，以hash作为身份标识，每次查询都重新获取"""

    name: str
    hash: str
    size: int = 0
    progress: float = 0.0  # 0.0 to 1.0
    dlspeed: int = 0  # bytes/sec
    upspeed: int = 0  # bytes/sec
    raw_state: str = ""
    num_seeds: int = 0
    num_leechs: int = 0
    added_on: int = 0  # unix timestamp
    completion_on: int = 0  # unix timestamp, <=0 未完成
    save_path: str = ""
    category: str = ""
    amount_left: int = 0
    eta: int = -1  # seconds

    @property
    def state(self) -> TorrentState:
        return TorrentState.from_raw(self.raw_state)

    @property
    def downloaded(self) -> int:
        return max(0, self.size - self.amount_left)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "TorrentRecord":
        """从 /api/v2/torrents/info 的单个条目构建"""
        progress = float(data.get("progress") or 0.0)
        return cls(
            name=str(data.get("name", "")),
            hash=str(data.get("hash", "")),
            size=int(data.get("size") or 0),
            progress=min(1.0, max(0.0, progress)),
            dlspeed=int(data.get("dlspeed") or 0),
            upspeed=int(data.get("upspeed") or 0),
            raw_state=str(data.get("state", "")),
            num_seeds=int(data.get("num_seeds") or 0),
            num_leechs=int(data.get("num_leechs") or 0),
            added_on=int(data.get("added_on") or 0),
            completion_on=int(data.get("completion_on") or 0),
            save_path=str(data.get("save_path", "")),
            category=str(data.get("category", "")),
            amount_left=int(data.get("amount_left") or 0),
            eta=int(data["eta"]) if data.get("eta") is not None else -1,
        )


@dataclass(frozen=True)
class LinkMatch:
    """识别出的种子站链接"""

    site: str
    torrent_id: str
