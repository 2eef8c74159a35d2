"""
会话路由

负责：
- 白名单授权（所有消息、命令、按钮回调都先检查）
- 每个请求者的待处理链接状态机（idle <-> link-pending）
- 命令处理与按钮回调分发
- 面向用户的"正在重连 -> 成功/失败"步骤

请求者身份使用 chat_id。
"""

import html
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol, Tuple, TypeVar, Union

from .callbacks import Action, Category, ListPage, Manage, Unknown, parse
from .config import AppConfig, CategoryConfig
from .exceptions import (
    ConfigError, ExtractionError, NotFoundError, QBittorrentBotError, UnauthorizedError
)
from .keyboards import Keyboard, category_keyboard, torrent_actions_keyboard, torrent_list_keyboard
from .links import LinkOrchestrator
from .logging_config import get_logger
from .models import TorrentRecord
from .pending_links import PendingLinkStore
from .qbittorrent_client import QBittorrentClient
from .resilience import should_reconnect
from .utils import format_status_page, format_torrent_details

T = TypeVar('T')


@dataclass
class InboundMessage:
    """收到的文本消息或命令"""

    chat_id: int
    text: str
    message_id: int = 0
    user_id: Optional[int] = None

    @property
    def is_command(self) -> bool:
        return self.text.startswith('/')

    @property
    def command(self) -> str:
        """命令名（小写，去掉 / 与 @机器人名）"""
        if not self.is_command:
            return ""
        head = self.text.split(maxsplit=1)[0][1:]
        return head.split('@', 1)[0].lower()

    @property
    def arguments(self) -> str:
        parts = self.text.split(maxsplit=1)
        return parts[1].strip() if len(parts) > 1 else ""


@dataclass
class InboundCallback:
    """按钮回调"""

    callback_id: str
    chat_id: int
    message_id: int
    data: str
    user_id: Optional[int] = None


InboundEvent = Union[InboundMessage, InboundCallback]


class ChatResponder(Protocol):
    """聊天输出接口，由传输层实现"""

    async def send(self, chat_id: int, text: str, keyboard: Optional[Keyboard] = None) -> int:
        ...

    async def edit(self, chat_id: int, message_id: int, text: str,
                   keyboard: Optional[Keyboard] = None) -> None:
        ...

    async def answer_callback(self, callback_id: str, text: str = "") -> None:
        ...


class ConversationRouter:
    """把聊天事件路由到对应的操作"""

    def __init__(
        self,
        config: AppConfig,
        orchestrator: LinkOrchestrator,
        daemon: QBittorrentClient,
        responder: ChatResponder,
        pending: Optional[PendingLinkStore] = None,
    ):
        self.config = config
        self.orchestrator = orchestrator
        self.daemon = daemon
        self.responder = responder
        self.pending = pending if pending is not None else PendingLinkStore()
        self.logger = get_logger('ConversationRouter')
        self._allowed_users = frozenset(config.telegram.allowed_users)

        self._commands = {
            'start': self._cmd_help,
            'help': self._cmd_help,
            'status': self._cmd_status,
            'torrent': self._cmd_torrent,
            'list': self._cmd_list,
            'reconnect': self._cmd_reconnect,
            'cancel': self._cmd_cancel,
        }

    # ---------- 入口 ----------

    async def dispatch(self, event: InboundEvent):
        """处理单个入站事件"""
        if isinstance(event, InboundCallback):
            await self.handle_callback(event)
        else:
            await self.handle_message(event)

    def is_authorized(self, requester_id: int) -> bool:
        return requester_id in self._allowed_users

    async def handle_message(self, message: InboundMessage):
        chat_id = message.chat_id
        if not self.is_authorized(chat_id):
            self.logger.warning(str(UnauthorizedError(chat_id)))
            await self.responder.send(chat_id, "⛔ 您无权使用此机器人。")
            return

        link = self.orchestrator.find_link(message.text)
        if link is not None:
            await self._handle_link(chat_id, message.text)
            return

        if message.is_command:
            handler = self._commands.get(message.command)
            if handler is None:
                await self.responder.send(chat_id, "未知命令，输入 /help 查看可用命令。")
                return
            await handler(chat_id, message.arguments)
            return

        self.logger.debug(f"忽略非命令消息: chat={chat_id}")

    async def handle_callback(self, callback: InboundCallback):
        chat_id = callback.chat_id
        if not self.is_authorized(chat_id):
            self.logger.warning(str(UnauthorizedError(chat_id)))
            await self.responder.answer_callback(callback.callback_id, "⛔ 您无权使用此机器人。")
            return

        await self.responder.answer_callback(callback.callback_id)
        token = parse(callback.data)

        if isinstance(token, Category):
            await self._handle_category(chat_id, callback.message_id, token.key)
        elif isinstance(token, Manage):
            await self._show_details(chat_id, callback.message_id, token.torrent_hash, token.page)
        elif isinstance(token, Action):
            await self._handle_action(chat_id, callback.message_id, token.verb, token.torrent_hash)
        elif isinstance(token, ListPage):
            await self._show_list_page(chat_id, callback.message_id, token.page)
        else:
            reason = token.reason if isinstance(token, Unknown) else ""
            self.logger.warning(f"未知的回调数据: {callback.data!r} ({reason})")
            await self.responder.send(chat_id, "❌ 未知操作")

    # ---------- 链接与分类 ----------

    async def _handle_link(self, chat_id: int, text: str):
        if self.pending.set(chat_id, text) is not None:
            self.logger.info(f"覆盖请求者 {chat_id} 的待处理链接")
        await self.responder.send(
            chat_id, "请选择下载分类：", category_keyboard(self.config.categories)
        )

    def _resolve_category(self, key: str) -> CategoryConfig:
        try:
            return self.config.categories[key]
        except KeyError:
            raise ConfigError(f"未知的分类: {key}", details={"category": key}) from None

    async def _handle_category(self, chat_id: int, message_id: int, key: str):
        link = self.pending.pop(chat_id)
        if link is None:
            await self.responder.send(chat_id, "没有等待处理的链接，请先发送种子站链接。")
            return

        await self.responder.edit(chat_id, message_id, "正在处理下载请求...")
        try:
            category = self._resolve_category(key)
            match = self.orchestrator.recognize(link)
            if match is None:
                raise ExtractionError("链接中未找到支持的种子站")
            torrent = await self._run_with_reconnect(
                chat_id, "添加种子",
                lambda: self.orchestrator.submit(match.site, match.torrent_id, category.save_path),
                stage="daemon",
            )
        except QBittorrentBotError as e:
            self.logger.error(f"下载失败: {str(e)}", extra={"error": e.to_dict()})
            await self.responder.edit(chat_id, message_id, f"❌ 下载失败: {html.escape(str(e))}")
            return

        await self.responder.edit(
            chat_id, message_id,
            f"✅ {html.escape(torrent.name)}\n\n"
            f"分类: {html.escape(category.label)}\n"
            f"保存路径: {html.escape(category.save_path)}"
        )

    # ---------- 重连 ----------

    async def _run_with_reconnect(self, chat_id: int, operation: str,
                                  func: Callable[[], Awaitable[T]],
                                  stage: Optional[str] = None) -> T:
        """
        执行面向qBittorrent的操作，符合条件的失败会显示重连步骤并重试一次

        Args:
            stage: 只对标记为该阶段的失败重连（未标记的失败视为匹配）
        """
        attempt = 1
        while True:
            try:
                return await func()
            except QBittorrentBotError as e:
                if stage is not None and e.stage not in (None, stage):
                    raise
                if not should_reconnect(e, attempt):
                    raise
                self.logger.warning(f"{operation}失败，尝试重连: {str(e)}")
                await self._visible_reconnect(chat_id, operation)
                attempt += 1

    async def _visible_reconnect(self, chat_id: int, operation: str):
        message_id = await self.responder.send(
            chat_id, f"⚠️ {operation}时与qBittorrent的连接中断，正在重连..."
        )
        try:
            await self.daemon.reconnect()
        except QBittorrentBotError as e:
            await self.responder.edit(chat_id, message_id, f"❌ 重连失败: {html.escape(str(e))}")
            raise
        await self.responder.edit(chat_id, message_id, "✅ 已重新连接qBittorrent，正在重试...")

    async def _report_error(self, chat_id: int, operation: str, error: QBittorrentBotError):
        self.logger.error(f"{operation}失败: {str(error)}", extra={"error": error.to_dict()})
        await self.responder.send(chat_id, f"❌ {operation}失败: {html.escape(str(error))}")

    # ---------- 命令 ----------

    async def _cmd_help(self, chat_id: int, args: str):
        sites = "\n".join(f"- {site}" for site in self.orchestrator.sites)
        text = (
            "<b>种子机器人命令：</b>\n\n"
            "/status [页码] - 查看所有种子状态\n"
            "/torrent 名称 - 按名称搜索种子\n"
            "/list - 选择要管理的种子\n"
            "/reconnect - 重新连接qBittorrent\n"
            "/cancel - 取消待处理的链接\n\n"
            "<b>其他功能：</b>\n"
            "- 发送支持的种子站链接即可下载\n"
            "- 使用按钮管理种子\n\n"
            f"<b>支持的种子站：</b>\n{sites}"
        )
        await self.responder.send(chat_id, text)

    async def _cmd_status(self, chat_id: int, args: str):
        page = int(args) - 1 if args.isdigit() and int(args) > 0 else 0
        try:
            torrents = await self._run_with_reconnect(chat_id, "获取种子状态", self.daemon.list_torrents)
        except QBittorrentBotError as e:
            await self._report_error(chat_id, "获取种子状态", e)
            return

        page_size = self.config.list_page_size
        keyboard = torrent_list_keyboard(torrents, page, page_size)
        await self.responder.send(chat_id, format_status_page(torrents, page, page_size), keyboard or None)

    async def _cmd_torrent(self, chat_id: int, args: str):
        if not args:
            await self.responder.send(chat_id, "请输入要搜索的种子名称，例如: /torrent ubuntu")
            return

        try:
            torrents = await self._run_with_reconnect(
                chat_id, "搜索种子", lambda: self.daemon.find_by_name(args)
            )
        except QBittorrentBotError as e:
            await self._report_error(chat_id, "搜索种子", e)
            return

        if not torrents:
            await self.responder.send(chat_id, "未找到匹配的种子")
        elif len(torrents) == 1:
            torrent = torrents[0]
            await self.responder.send(
                chat_id, format_torrent_details(torrent), torrent_actions_keyboard(torrent.hash)
            )
        else:
            await self.responder.send(
                chat_id,
                f"找到 {len(torrents)} 个匹配的种子，请选择：",
                torrent_list_keyboard(torrents, 0, self.config.list_page_size),
            )

    async def _cmd_list(self, chat_id: int, args: str):
        try:
            torrents = await self._run_with_reconnect(chat_id, "获取种子列表", self.daemon.list_torrents)
        except QBittorrentBotError as e:
            await self._report_error(chat_id, "获取种子列表", e)
            return

        if not torrents:
            await self.responder.send(chat_id, "没有种子")
            return
        await self.responder.send(
            chat_id, "请选择要管理的种子：",
            torrent_list_keyboard(torrents, 0, self.config.list_page_size)
        )

    async def _cmd_reconnect(self, chat_id: int, args: str):
        message_id = await self.responder.send(chat_id, "🔄 正在重连qBittorrent...")
        try:
            await self.daemon.reconnect()
            await self.daemon.list_torrents()
        except QBittorrentBotError as e:
            self.logger.error(f"手动重连失败: {str(e)}")
            await self.responder.edit(chat_id, message_id, f"❌ 重连失败: {html.escape(str(e))}")
            return
        await self.responder.edit(chat_id, message_id, "✅ 已重新连接qBittorrent")

    async def _cmd_cancel(self, chat_id: int, args: str):
        if self.pending.pop(chat_id) is None:
            await self.responder.send(chat_id, "没有待处理的链接")
        else:
            await self.responder.send(chat_id, "已取消待处理的链接")

    # ---------- 管理回调 ----------

    async def _show_details(self, chat_id: int, message_id: int, torrent_hash: str,
                            page: Optional[int]):
        try:
            torrent = await self._run_with_reconnect(
                chat_id, "获取种子详情", lambda: self.daemon.find_by_hash(torrent_hash)
            )
        except QBittorrentBotError as e:
            await self._report_error(chat_id, "获取种子详情", e)
            return
        await self.responder.edit(
            chat_id, message_id, format_torrent_details(torrent),
            torrent_actions_keyboard(torrent.hash, page)
        )

    async def _perform_action(self, verb: str, torrent_hash: str) -> Tuple[str, Optional[Keyboard]]:
        # 先确认种子存在，未知hash不会触发任何操作请求
        torrent: TorrentRecord = await self.daemon.find_by_hash(torrent_hash)
        name = html.escape(torrent.name)

        if verb == "pause":
            await self.daemon.pause_torrents([torrent.hash])
            return f"⏸ 已暂停: {name}", torrent_actions_keyboard(torrent.hash)
        if verb == "resume":
            await self.daemon.resume_torrents([torrent.hash])
            return f"▶️ 已继续: {name}", torrent_actions_keyboard(torrent.hash)
        if verb == "delete":
            await self.daemon.delete_torrents([torrent.hash], delete_files=False)
            return f"🗑 已删除种子: {name}（保留文件）", None
        if verb == "deletewithdata":
            await self.daemon.delete_torrents([torrent.hash], delete_files=True)
            return f"🗑 已删除种子和文件: {name}", None
        if verb == "info":
            return format_torrent_details(torrent), torrent_actions_keyboard(torrent.hash)
        raise NotFoundError(f"未知操作: {verb}", key=verb)

    async def _handle_action(self, chat_id: int, message_id: int, verb: str, torrent_hash: str):
        operation = f"执行操作 {verb}"
        try:
            text, keyboard = await self._run_with_reconnect(
                chat_id, operation, lambda: self._perform_action(verb, torrent_hash)
            )
        except QBittorrentBotError as e:
            await self._report_error(chat_id, operation, e)
            return
        await self.responder.edit(chat_id, message_id, text, keyboard)

    async def _show_list_page(self, chat_id: int, message_id: int, page: int):
        try:
            torrents = await self._run_with_reconnect(chat_id, "获取种子列表", self.daemon.list_torrents)
        except QBittorrentBotError as e:
            await self._report_error(chat_id, "获取种子列表", e)
            return

        if not torrents:
            await self.responder.edit(chat_id, message_id, "没有种子")
            return
        await self.responder.edit(
            chat_id, message_id, "请选择要管理的种子：",
            torrent_list_keyboard(torrents, page, self.config.list_page_size)
        )
