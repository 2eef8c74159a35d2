"""
会话路由测试

路由器连接真实的客户端与模拟服务器，只替换聊天输出。
"""

from unittest.mock import AsyncMock, Mock

import pytest_asyncio

from conftest import ALLOWED_CHAT, make_torrent
from qbittorrent_bot.links import LinkOrchestrator
from qbittorrent_bot.pending_links import PendingLinkStore
from qbittorrent_bot.qbittorrent_client import QBittorrentClient
from qbittorrent_bot.router import ConversationRouter, InboundCallback, InboundMessage
from qbittorrent_bot.tracker_client import TrackerClient

STRANGER = 99
LINK = "https://rutracker.xx/forum/dl.php?t=555"


@pytest_asyncio.fixture
async def router(app_config, responder):
    trackers = TrackerClient(app_config.trackers, timeout=app_config.request_timeout)
    daemon = QBittorrentClient(app_config.qbittorrent)
    router = ConversationRouter(
        app_config, LinkOrchestrator(trackers, daemon), daemon, responder, PendingLinkStore()
    )
    yield router
    await trackers.close()
    await daemon.close()


def message(text: str, chat_id: int = ALLOWED_CHAT) -> InboundMessage:
    return InboundMessage(chat_id=chat_id, text=text, message_id=1)


def callback(data: str, chat_id: int = ALLOWED_CHAT) -> InboundCallback:
    return InboundCallback(callback_id="cb-1", chat_id=chat_id, message_id=500, data=data)


class TestAuthorization:
    """授权测试"""

    async def test_stranger_message_refused(self, router, responder, tracker_server):
        await router.dispatch(message(LINK, chat_id=STRANGER))

        assert responder.sent_texts == ["⛔ 您无权使用此机器人。"]
        assert STRANGER not in router.pending
        assert tracker_server.login_hits == 0

    async def test_stranger_callback_refused(self, router, responder, qbt_server):
        await router.dispatch(callback("pause:abc123", chat_id=STRANGER))

        responder.answer_callback.assert_awaited_once_with("cb-1", "⛔ 您无权使用此机器人。")
        responder.send.assert_not_awaited()
        assert sum(qbt_server.hits.values()) == 0

    async def test_empty_allow_list_denies_everyone(self, app_config, responder):
        app_config.telegram.allowed_users = []
        router = ConversationRouter(app_config, Mock(), Mock(), responder)

        await router.dispatch(message("/help"))

        assert responder.sent_texts == ["⛔ 您无权使用此机器人。"]


class TestLinkFlow:
    """链接与分类选择流程"""

    async def test_link_prompts_for_category(self, router, responder):
        await router.dispatch(message(f"скачай {LINK}"))

        assert router.pending.get(ALLOWED_CHAT) == f"скачай {LINK}"
        keyboard = responder.send.call_args.args[2]
        tokens = [data for row in keyboard for _, data in row]
        assert "Movies." in tokens

    async def test_second_link_replaces_first(self, router):
        await router.dispatch(message("https://rutracker.org/forum/viewtopic.php?t=1"))
        await router.dispatch(message(LINK))

        assert router.pending.get(ALLOWED_CHAT) == LINK
        assert len(router.pending) == 1

    async def test_category_while_idle(self, app_config, responder):
        orchestrator = Mock(spec=LinkOrchestrator)
        orchestrator.submit = AsyncMock()
        router = ConversationRouter(app_config, orchestrator, Mock(), responder)

        await router.dispatch(callback("Movies."))

        orchestrator.submit.assert_not_awaited()
        assert responder.sent_texts == ["没有等待处理的链接，请先发送种子站链接。"]

    async def test_end_to_end_download(self, router, responder, tracker_server, qbt_server):
        qbt_server.on_add = make_torrent("Some.Movie.2024", "h555", added_on=100)

        await router.dispatch(message(LINK))
        await router.dispatch(callback("Movies."))

        assert tracker_server.download_ids == ["555"]
        assert len(qbt_server.added) == 1
        payload, filename, savepath = qbt_server.added[0]
        assert payload == tracker_server.payload
        assert savepath == "/downloads/movies/"
        assert responder.edited_texts[0] == "正在处理下载请求..."
        result = responder.edited_texts[-1]
        assert "Some.Movie.2024" in result
        assert "/downloads/movies/" in result
        assert ALLOWED_CHAT not in router.pending

    async def test_unknown_category_clears_pending(self, router, responder, qbt_server):
        await router.dispatch(message(LINK))
        await router.dispatch(callback("Cartoons."))

        assert ALLOWED_CHAT not in router.pending
        assert responder.edited_texts[-1].startswith("❌ 下载失败")
        assert qbt_server.added == []

    async def test_bad_payload_reports_failure(self, router, responder, tracker_server, qbt_server):
        tracker_server.payload = b"<html>captcha</html>"

        await router.dispatch(message(LINK))
        await router.dispatch(callback("Movies."))

        assert responder.edited_texts[-1].startswith("❌ 下载失败")
        assert sum(qbt_server.hits.values()) == 0
        # 种子站阶段的失败不触发qBittorrent重连
        assert not any(text.startswith("⚠️") for text in responder.sent_texts)

    async def test_cancel(self, router, responder):
        await router.dispatch(message(LINK))
        await router.dispatch(message("/cancel"))
        await router.dispatch(message("/cancel"))

        assert responder.sent_texts[-2:] == ["已取消待处理的链接", "没有待处理的链接"]
        assert ALLOWED_CHAT not in router.pending


class TestCallbacks:
    """种子管理回调测试"""

    async def test_unknown_token(self, router, responder):
        await router.dispatch(callback("explode:abc"))

        assert responder.sent_texts == ["❌ 未知操作"]

    async def test_action_on_unknown_hash(self, router, responder, qbt_server):
        qbt_server.torrents = [make_torrent("Known", "h1")]

        await router.dispatch(callback("pause:abc123"))

        assert qbt_server.actions == []
        assert responder.sent_texts[-1].startswith("❌ 执行操作 pause失败")

    async def test_pause_known_hash(self, router, responder, qbt_server):
        qbt_server.torrents = [make_torrent("Known", "h1")]

        await router.dispatch(callback("pause:h1"))

        assert qbt_server.actions == [("pause", {"hashes": "h1"})]
        assert responder.edited_texts[-1] == "⏸ 已暂停: Known"

    async def test_delete_with_data(self, router, responder, qbt_server):
        qbt_server.torrents = [make_torrent("Known", "h1")]

        await router.dispatch(callback("deletewithdata:h1"))

        name, form = qbt_server.actions[0]
        assert name == "delete"
        assert form["deleteFiles"] == "true"
        assert responder.edit.call_args.args[3] is None

    async def test_manage_shows_details(self, router, responder, qbt_server):
        qbt_server.torrents = [make_torrent("Known", "h1")]

        await router.dispatch(callback("manage:h1:page:1"))

        args = responder.edit.call_args.args
        assert "Known" in args[2]
        assert args[3][-1] == [("⬅️ 返回列表", "list:page:1")]

    async def test_list_page_callback(self, router, responder, qbt_server):
        qbt_server.torrents = [make_torrent(f"t{i}", f"h{i}") for i in range(25)]

        await router.dispatch(callback("list:page:1"))

        args = responder.edit.call_args.args
        assert args[2] == "请选择要管理的种子："
        assert args[3][0] == [("t20", "manage:h20:page:1")]

    async def test_visible_reconnect_then_retry(self, router, responder, qbt_server):
        qbt_server.torrents = [make_torrent("Known", "h1")]
        qbt_server.fail_next['info'] = 403

        await router.dispatch(callback("info:h1"))

        assert responder.sent_texts == ["⚠️ 执行操作 info时与qBittorrent的连接中断，正在重连..."]
        assert responder.edited_texts[0] == "✅ 已重新连接qBittorrent，正在重试..."
        assert "Known" in responder.edited_texts[-1]
        assert qbt_server.hits['info'] == 2

    async def test_failed_reconnect_is_reported(self, router, responder, qbt_server):
        qbt_server.torrents = [make_torrent("Known", "h1")]
        await router.daemon.authenticate()
        qbt_server.fail_next['info'] = 403
        qbt_server.password = "changed"

        await router.dispatch(callback("info:h1"))

        assert responder.edited_texts[0].startswith("❌ 重连失败")
        assert responder.sent_texts[-1].startswith("❌ 执行操作 info失败")
        assert not router.daemon.is_alive


class TestCommands:
    """命令测试"""

    async def test_help_lists_sites(self, router, responder):
        await router.dispatch(message("/help"))

        assert "rutracker" in responder.sent_texts[0]
        assert "/reconnect" in responder.sent_texts[0]

    async def test_unknown_command(self, router, responder):
        await router.dispatch(message("/explode"))

        assert responder.sent_texts == ["未知命令，输入 /help 查看可用命令。"]

    async def test_plain_text_ignored(self, router, responder):
        await router.dispatch(message("hello"))

        responder.send.assert_not_awaited()

    async def test_status(self, router, responder, qbt_server):
        qbt_server.torrents = [make_torrent(f"t{i}", f"h{i}") for i in range(25)]

        await router.dispatch(message("/status 2"))

        text = responder.sent_texts[-1]
        assert "第 2/2 页（共 25 个种子）" in text
        assert "t24" in text

    async def test_status_back_to_list_returns_same_page(self, router, responder, qbt_server):
        qbt_server.torrents = [make_torrent(f"t{i}", f"h{i}") for i in range(25)]

        await router.dispatch(message("/status 2"))
        status_keyboard = responder.send.call_args.args[2]
        assert status_keyboard[0] == [("t20", "manage:h20:page:1")]

        await router.dispatch(callback("manage:h20:page:1"))
        back_button = responder.edit.call_args.args[3][-1][0]
        assert back_button == ("⬅️ 返回列表", "list:page:1")

        await router.dispatch(callback("list:page:1"))
        list_keyboard = responder.edit.call_args.args[3]
        assert list_keyboard[0] == status_keyboard[0]
        assert [row[0][0] for row in list_keyboard[:5]] == ["t20", "t21", "t22", "t23", "t24"]

    async def test_status_empty(self, router, responder, qbt_server):
        await router.dispatch(message("/status"))

        assert responder.sent_texts == ["没有种子"]

    async def test_list(self, router, responder, qbt_server):
        qbt_server.torrents = [make_torrent("Alpha", "h1"), make_torrent("Beta", "h2")]

        await router.dispatch(message("/list"))

        args = responder.send.call_args.args
        assert args[1] == "请选择要管理的种子："
        assert [row[0][1] for row in args[2]] == ["manage:h1:page:0", "manage:h2:page:0"]

    async def test_torrent_search(self, router, responder, qbt_server):
        qbt_server.torrents = [make_torrent("Ubuntu 24.04", "h1"), make_torrent("Debian", "h2")]

        await router.dispatch(message("/torrent ubuntu"))

        assert "Ubuntu 24.04" in responder.sent_texts[-1]

    async def test_torrent_search_no_match(self, router, responder, qbt_server):
        await router.dispatch(message("/torrent arch"))

        assert responder.sent_texts == ["未找到匹配的种子"]

    async def test_reconnect_command(self, router, responder, qbt_server):
        await router.dispatch(message("/reconnect"))

        assert responder.sent_texts == ["🔄 正在重连qBittorrent..."]
        assert responder.edited_texts == ["✅ 已重新连接qBittorrent"]
        assert router.daemon.is_alive

    async def test_link_checked_before_commands(self, router, responder):
        await router.dispatch(message(f"/help {LINK}"))

        assert router.pending.get(ALLOWED_CHAT) == f"/help {LINK}"
        assert responder.sent_texts == ["请选择下载分类："]
