"""
内联键盘构建

键盘表示为按钮行的列表，每个按钮是 (显示文字, callback_data)，
由传输层转换为 Telegram 的 inline_keyboard 结构。
"""

from typing import List, Mapping, Optional, Sequence, Tuple

from .callbacks import action_token, list_token, manage_token
from .config import CategoryConfig
from .models import TorrentRecord
from .utils import clamp_page, page_count, truncate

Button = Tuple[str, str]
Keyboard = List[List[Button]]

# 列表按钮中种子名称的最大长度
LIST_NAME_LIMIT = 30


def category_keyboard(categories: Mapping[str, CategoryConfig], per_row: int = 4) -> Keyboard:
    """分类选择键盘"""
    buttons = [(category.label, key) for key, category in categories.items()]
    return [buttons[i:i + per_row] for i in range(0, len(buttons), per_row)]


def torrent_actions_keyboard(torrent_hash: str, page: Optional[int] = None) -> Keyboard:
    """单个种子的操作键盘，page 不为空时附带返回列表按钮"""
    keyboard = [
        [("⏸ 暂停", action_token("pause", torrent_hash)),
         ("▶️ 继续", action_token("resume", torrent_hash))],
        [("ℹ️ 详情", action_token("info", torrent_hash))],
        [("🗑 删除种子", action_token("delete", torrent_hash)),
         ("🗑 删除种子和文件", action_token("deletewithdata", torrent_hash))],
    ]
    if page is not None:
        keyboard.append([("⬅️ 返回列表", list_token(page))])
    return keyboard


def torrent_list_keyboard(torrents: Sequence[TorrentRecord], page: int = 0,
                          page_size: int = 20) -> Keyboard:
    """分页的种子选择键盘"""
    if not torrents:
        return []

    page = clamp_page(page, len(torrents), page_size)
    start = page * page_size
    keyboard: Keyboard = [
        [(truncate(torrent.name, LIST_NAME_LIMIT), manage_token(torrent.hash, page))]
        for torrent in torrents[start:start + page_size]
    ]

    pagination: List[Button] = []
    if page > 0:
        pagination.append(("⬅️ 上一页", list_token(page - 1)))
    if page < page_count(len(torrents), page_size) - 1:
        pagination.append(("下一页 ➡️", list_token(page + 1)))
    if pagination:
        keyboard.append(pagination)
    return keyboard
