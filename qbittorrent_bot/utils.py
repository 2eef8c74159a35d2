"""
通用工具函数模块

包含：
- 大小、速度、进度、剩余时间的格式化
- 种子详情与状态页的消息文本（Telegram HTML格式）
"""

import html
import math
from datetime import datetime
from typing import List, Sequence, Tuple

from .models import TorrentRecord, TorrentState

_SIZE_UNITS = ("KB", "MB", "GB", "TB")

STATE_DISPLAY = {
    TorrentState.DOWNLOADING: ("🔽", "下载中"),
    TorrentState.SEEDING: ("🔼", "做种中"),
    TorrentState.PAUSED: ("⏸", "已暂停"),
    TorrentState.STALLED: ("⚠️", "停滞"),
    TorrentState.CHECKING: ("🔍", "校验中"),
}


def format_size(size: int) -> str:
    """将字节数转换为可读格式（1024进制）"""
    if size < 1024:
        return f"{size} B"
    value = float(size)
    unit = "B"
    for unit in _SIZE_UNITS:
        value /= 1024
        if value < 1024:
            break
    return f"{value:.2f} {unit}"


def format_speed(speed: int) -> str:
    if speed <= 0:
        return "0 B/s"
    return f"{format_size(speed)}/s"


def format_progress(progress: float) -> str:
    return f"{progress * 100:.1f}%"


def format_eta(eta: int) -> str:
    """格式化剩余时间，负数表示无法估计"""
    if eta < 0 or eta >= 8640000:  # qBittorrent 用 8640000 表示无穷大
        return "∞"
    hours, remainder = divmod(eta, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def format_timestamp(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


def truncate(text: str, limit: int = 30) -> str:
    """超长文本截断并追加省略号"""
    if len(text) <= limit:
        return text
    return text[:limit - 3] + "..."


def state_label(torrent: TorrentRecord) -> Tuple[str, str]:
    """返回 (图标, 状态名)，未归类的状态显示原始值"""
    return STATE_DISPLAY.get(torrent.state, ("📁", torrent.raw_state or "未知"))


def format_torrent_details(torrent: TorrentRecord) -> str:
    """单个种子的详细信息"""
    icon, label = state_label(torrent)
    lines = [
        f"{icon} <b>{html.escape(torrent.name)}</b>",
        "",
        f"状态: {html.escape(label)}",
        f"进度: {format_progress(torrent.progress)}",
    ]

    if torrent.state is TorrentState.DOWNLOADING:
        lines.append(f"下载速度: {format_speed(torrent.dlspeed)}")
        lines.append(f"剩余时间: {format_eta(torrent.eta)}")
    elif torrent.state is TorrentState.SEEDING:
        lines.append(f"上传速度: {format_speed(torrent.upspeed)}")

    lines.append(f"大小: {format_size(torrent.size)}")
    if torrent.progress < 1.0:
        lines.append(f"已下载: {format_size(torrent.downloaded)}")
        lines.append(f"剩余: {format_size(torrent.amount_left)}")

    lines.append(f"做种/下载: {torrent.num_seeds}/{torrent.num_leechs}")
    if torrent.added_on > 0:
        lines.append(f"添加时间: {format_timestamp(torrent.added_on)}")
    if torrent.completion_on > 0:
        lines.append(f"完成时间: {format_timestamp(torrent.completion_on)}")
    if torrent.category:
        lines.append(f"分类: {html.escape(torrent.category)}")
    lines.append(f"保存路径: {html.escape(torrent.save_path)}")
    lines.append("")
    lines.append(f"Hash: <code>{torrent.hash}</code>")
    return "\n".join(lines)


def _status_entry(torrent: TorrentRecord) -> List[str]:
    icon, label = state_label(torrent)
    lines = [f"{icon} <b>{html.escape(torrent.name)}</b>", f"状态: {html.escape(label)}"]
    if torrent.state is TorrentState.DOWNLOADING:
        lines.append(f"进度: {format_progress(torrent.progress)}")
        lines.append(f"速度: {format_speed(torrent.dlspeed)}")
        lines.append(f"剩余时间: {format_eta(torrent.eta)}")
    elif torrent.state is TorrentState.SEEDING:
        lines.append(f"上传速度: {format_speed(torrent.upspeed)}")
    elif torrent.state is not TorrentState.OTHER:
        lines.append(f"进度: {format_progress(torrent.progress)}")
    lines.append(f"大小: {format_size(torrent.size)}")
    lines.append(f"做种/下载: {torrent.num_seeds}/{torrent.num_leechs}")
    return lines


def page_count(total: int, page_size: int) -> int:
    return max(1, math.ceil(total / page_size))


def clamp_page(page: int, total: int, page_size: int) -> int:
    return min(max(page, 0), page_count(total, page_size) - 1)


def format_status_page(torrents: Sequence[TorrentRecord], page: int, page_size: int = 20) -> str:
    """分页的种子状态概览"""
    if not torrents:
        return "没有种子"

    page = clamp_page(page, len(torrents), page_size)
    start = page * page_size
    lines = ["📥 <b>种子状态</b>", ""]
    for torrent in torrents[start:start + page_size]:
        lines.extend(_status_entry(torrent))
        lines.append("")
    lines.append(
        f"第 {page + 1}/{page_count(len(torrents), page_size)} 页（共 {len(torrents)} 个种子）"
    )
    return "\n".join(lines)
