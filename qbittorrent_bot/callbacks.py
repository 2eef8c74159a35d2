"""
按钮回调数据（callback_data）的编码与解析

解析结果是带标签的变体，格式错误的数据解析为 Unknown 而不是抛出异常：
- Category(key)              以 '.' 结尾的分类键，例如 "Movies."
- Manage(torrent_hash, page) manage:<hash>[:page:<n>]
- Action(verb, torrent_hash) pause|resume|delete|deletewithdata|info:<hash>
- ListPage(page)             list:page:<n>
- Unknown(raw, reason)
"""

from dataclasses import dataclass
from typing import Optional, Union

from .config import CATEGORY_DELIMITER

SEPARATOR = ":"

VERB_MANAGE = "manage"
VERB_LIST = "list"
ACTION_VERBS = frozenset({"pause", "resume", "delete", "deletewithdata", "info"})


@dataclass(frozen=True)
class Category:
    key: str


@dataclass(frozen=True)
class Manage:
    torrent_hash: str
    page: Optional[int] = None


@dataclass(frozen=True)
class Action:
    verb: str
    torrent_hash: str


@dataclass(frozen=True)
class ListPage:
    page: int


@dataclass(frozen=True)
class Unknown:
    raw: str
    reason: str


CallbackToken = Union[Category, Manage, Action, ListPage, Unknown]


def _parse_page(raw: str) -> Optional[int]:
    if not raw.isdigit():
        return None
    return int(raw)


def parse(token: str) -> CallbackToken:
    """解析回调数据"""
    if not token:
        return Unknown(token or "", "回调数据为空")

    if token.endswith(CATEGORY_DELIMITER) and SEPARATOR not in token:
        return Category(token)

    parts = token.split(SEPARATOR)
    verb = parts[0]

    if verb == VERB_MANAGE:
        if len(parts) == 2 and parts[1]:
            return Manage(parts[1])
        if len(parts) == 4 and parts[1] and parts[2] == "page":
            page = _parse_page(parts[3])
            if page is not None:
                return Manage(parts[1], page)
        return Unknown(token, "manage 格式错误")

    if verb in ACTION_VERBS:
        if len(parts) == 2 and parts[1]:
            return Action(verb, parts[1])
        return Unknown(token, f"{verb} 格式错误")

    if verb == VERB_LIST:
        if len(parts) == 3 and parts[1] == "page":
            page = _parse_page(parts[2])
            if page is not None:
                return ListPage(page)
        return Unknown(token, "list 格式错误")

    return Unknown(token, f"未知操作: {verb}")


def manage_token(torrent_hash: str, page: Optional[int] = None) -> str:
    if page is None:
        return f"{VERB_MANAGE}:{torrent_hash}"
    return f"{VERB_MANAGE}:{torrent_hash}:page:{page}"


def action_token(verb: str, torrent_hash: str) -> str:
    if verb not in ACTION_VERBS:
        raise ValueError(f"未知操作: {verb}")
    return f"{verb}:{torrent_hash}"


def list_token(page: int) -> str:
    return f"{VERB_LIST}:page:{page}"
