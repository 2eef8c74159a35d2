"""
Telegram Bot API 传输层

通过 getUpdates 长轮询接收更新，每个更新在独立的任务中交给路由处理；
实现路由使用的 ChatResponder 接口（send / edit / answer_callback）。
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

import aiohttp
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from .exceptions import ConnectivityError, QBittorrentBotError, RemoteError
from .keyboards import Keyboard
from .logging_config import ROOT_LOGGER_NAME, get_logger
from .router import ConversationRouter, InboundCallback, InboundEvent, InboundMessage

API_BASE = "https://api.telegram.org"


def build_reply_markup(keyboard: Keyboard) -> Dict[str, Any]:
    """将按钮行转换为 Telegram inline_keyboard 结构"""
    return {
        "inline_keyboard": [
            [{"text": label, "callback_data": data} for label, data in row]
            for row in keyboard
        ]
    }


def parse_update(update: Dict[str, Any]) -> Optional[InboundEvent]:
    """把 getUpdates 返回的单个更新转换为入站事件，无法处理的更新返回None"""
    query = update.get("callback_query")
    if query is not None:
        message = query.get("message") or {}
        chat_id = (message.get("chat") or {}).get("id")
        if chat_id is None:
            return None
        return InboundCallback(
            callback_id=str(query.get("id", "")),
            chat_id=chat_id,
            message_id=message.get("message_id", 0),
            data=query.get("data") or "",
            user_id=(query.get("from") or {}).get("id"),
        )

    message = update.get("message")
    if message is None:
        return None
    text = message.get("text")
    chat_id = (message.get("chat") or {}).get("id")
    if not text or chat_id is None:
        return None
    return InboundMessage(
        chat_id=chat_id,
        text=text,
        message_id=message.get("message_id", 0),
        user_id=(message.get("from") or {}).get("id"),
    )


class TelegramTransport:
    """基于aiohttp的Telegram Bot API客户端"""

    # 轮询失败后的等待时间（秒）
    POLL_ERROR_DELAY = 5

    def __init__(self, bot_token: str, poll_timeout: int = 60, request_timeout: int = 30,
                 api_base: str = API_BASE):
        self.logger = get_logger('Telegram')
        self.poll_timeout = poll_timeout
        self.request_timeout = request_timeout
        self._token = bot_token
        self._api_base = api_base.rstrip('/')
        self._session: Optional[aiohttp.ClientSession] = None
        self._tasks: Set[asyncio.Task] = set()
        self._running = False

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        retry=retry_if_exception_type(ConnectivityError),
        before_sleep=before_sleep_log(logging.getLogger(f'{ROOT_LOGGER_NAME}.Telegram.Retry'), logging.INFO),
        reraise=True
    )
    async def _call(self, method: str, payload: Optional[Dict[str, Any]] = None,
                    timeout: Optional[float] = None) -> Any:
        """调用Bot API方法并返回 result 字段"""
        url = f"{self._api_base}/bot{self._token}/{method}"
        client_timeout = aiohttp.ClientTimeout(total=timeout or self.request_timeout)
        try:
            async with self._get_session().post(url, json=payload or {}, timeout=client_timeout) as resp:
                status = resp.status
                try:
                    data = await resp.json(content_type=None)
                except ValueError as e:
                    raise RemoteError(f"Telegram {method} 返回了无效的JSON", status, await resp.text()) from e
        except asyncio.TimeoutError as e:
            raise ConnectivityError(f"Telegram {method} 请求超时") from e
        except aiohttp.ClientError as e:
            # 地址中包含token，不写入错误信息
            raise ConnectivityError(f"Telegram {method} 网络请求错误: {type(e).__name__}") from e

        if not isinstance(data, dict) or not data.get("ok"):
            description = data.get("description", "") if isinstance(data, dict) else str(data)
            raise RemoteError(f"Telegram {method} 调用失败", status, description)
        return data.get("result")

    async def get_me(self) -> Dict[str, Any]:
        return await self._call("getMe")

    async def get_updates(self, offset: Optional[int] = None) -> List[Dict[str, Any]]:
        payload: Dict[str, Any] = {
            "timeout": self.poll_timeout,
            "allowed_updates": ["message", "callback_query"],
        }
        if offset is not None:
            payload["offset"] = offset
        return await self._call("getUpdates", payload, timeout=self.poll_timeout + self.request_timeout) or []

    async def send(self, chat_id: int, text: str, keyboard: Optional[Keyboard] = None) -> int:
        payload: Dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        if keyboard:
            payload["reply_markup"] = build_reply_markup(keyboard)
        result = await self._call("sendMessage", payload)
        return result.get("message_id", 0)

    async def edit(self, chat_id: int, message_id: int, text: str,
                   keyboard: Optional[Keyboard] = None) -> None:
        payload: Dict[str, Any] = {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        if keyboard:
            payload["reply_markup"] = build_reply_markup(keyboard)
        try:
            await self._call("editMessageText", payload)
        except RemoteError as e:
            if "message is not modified" not in e.body:
                raise
            self.logger.debug("消息内容未变化，跳过编辑")

    async def answer_callback(self, callback_id: str, text: str = "") -> None:
        payload: Dict[str, Any] = {"callback_query_id": callback_id}
        if text:
            payload["text"] = text
            payload["show_alert"] = True
        await self._call("answerCallbackQuery", payload)

    async def _handle(self, router: ConversationRouter, event: InboundEvent):
        try:
            await router.dispatch(event)
        except QBittorrentBotError as e:
            self.logger.error(f"处理更新失败: {str(e)}", extra={"error": e.to_dict()})
        except Exception as e:
            self.logger.exception(f"处理更新时发生未预期错误: {str(e)}")

    def _spawn(self, router: ConversationRouter, event: InboundEvent) -> asyncio.Task:
        task = asyncio.create_task(self._handle(router, event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run(self, router: ConversationRouter):
        """长轮询主循环，直到 stop() 被调用"""
        self._running = True
        offset: Optional[int] = None
        self.logger.info("开始接收Telegram更新")

        while self._running:
            try:
                updates = await self.get_updates(offset)
            except (ConnectivityError, RemoteError) as e:
                self.logger.error(f"获取更新失败: {str(e)}，{self.POLL_ERROR_DELAY}秒后重试")
                await asyncio.sleep(self.POLL_ERROR_DELAY)
                continue

            for update in updates:
                offset = update["update_id"] + 1
                event = parse_update(update)
                if event is None:
                    continue
                self._spawn(router, event)

        self.logger.info("已停止接收Telegram更新")

    def stop(self):
        self._running = False

    async def close(self):
        """等待进行中的更新处理完成并关闭会话"""
        self.stop()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
