"""
测试配置和共享工具

qBittorrent、种子站和Telegram都用进程内的 aiohttp 测试服务器模拟，
会话cookie与请求次数都是真实的。
"""

import asyncio
import itertools
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from qbittorrent_bot.config import (
    AppConfig, QBittorrentConfig, TelegramConfig, TrackerConfig, default_categories
)

ALLOWED_CHAT = 42
TORRENT_PAYLOAD = b"d8:announce30:http://tracker.example/announce4:infod4:name4:testee"


def make_torrent(name: str, torrent_hash: str, added_on: int = 0, **extra) -> Dict[str, Any]:
    """构造 /api/v2/torrents/info 风格的条目"""
    item = {
        "name": name,
        "hash": torrent_hash,
        "size": 1073741824,
        "progress": 0.5,
        "dlspeed": 1048576,
        "upspeed": 0,
        "state": "downloading",
        "num_seeds": 10,
        "num_leechs": 3,
        "added_on": added_on,
        "completion_on": 0,
        "save_path": "/downloads/movies/",
        "category": "",
        "amount_left": 536870912,
        "eta": 600,
    }
    item.update(extra)
    return item


class FakeQBittorrent:
    """模拟qBittorrent Web API"""

    def __init__(self, username: str = "admin", password: str = "secret"):
        self.username = username
        self.password = password
        self.url = ""
        self.torrents: List[Dict[str, Any]] = []
        self.hits: Counter = Counter()
        self.valid_sids = set()
        self.added: List[Tuple[bytes, Optional[str], Optional[str]]] = []
        self.actions: List[Tuple[str, Dict[str, str]]] = []
        self.add_response = "Ok."
        self.on_add: Optional[Dict[str, Any]] = None
        self.missing_endpoints = set()
        self.fail_next: Dict[str, int] = {}
        self.last_filter: Optional[str] = None
        self._sid_counter = itertools.count(1)

    def expire_sessions(self):
        self.valid_sids.clear()

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post('/api/v2/auth/login', self.login)
        app.router.add_get('/api/v2/app/version', self.version)
        app.router.add_get('/api/v2/torrents/info', self.info)
        app.router.add_post('/api/v2/torrents/add', self.add)
        app.router.add_post('/api/v2/torrents/delete', self.action)
        for name in ('pause', 'resume', 'stop', 'start'):
            app.router.add_post(f'/api/v2/torrents/{name}', self.action)
        return app

    def _check(self, request: web.Request, name: str) -> Optional[web.Response]:
        self.hits[name] += 1
        status = self.fail_next.pop(name, None)
        if status is not None:
            return web.Response(status=status, text="Forbidden")
        if request.cookies.get('SID') not in self.valid_sids:
            return web.Response(status=403, text="Forbidden")
        return None

    async def login(self, request: web.Request) -> web.Response:
        self.hits['login'] += 1
        form = await request.post()
        if form.get('username') != self.username or form.get('password') != self.password:
            return web.Response(text="Fails.")
        sid = f"sid-{next(self._sid_counter)}"
        self.valid_sids.add(sid)
        resp = web.Response(text="Ok.")
        resp.set_cookie('SID', sid)
        return resp

    async def version(self, request: web.Request) -> web.Response:
        denied = self._check(request, 'version')
        if denied is not None:
            return denied
        return web.Response(text="v4.6.2")

    async def info(self, request: web.Request) -> web.Response:
        denied = self._check(request, 'info')
        if denied is not None:
            return denied
        self.last_filter = request.query.get('filter')
        return web.json_response(self.torrents)

    async def add(self, request: web.Request) -> web.Response:
        denied = self._check(request, 'add')
        if denied is not None:
            return denied
        form = await request.post()
        field = form['torrents']
        self.added.append((field.file.read(), field.filename, form.get('savepath')))
        if self.on_add is not None:
            self.torrents.append(self.on_add)
        return web.Response(text=self.add_response)

    async def action(self, request: web.Request) -> web.Response:
        name = request.path.rsplit('/', 1)[-1]
        if name in self.missing_endpoints:
            self.hits[name] += 1
            return web.Response(status=404, text="Not Found")
        denied = self._check(request, name)
        if denied is not None:
            return denied
        form = await request.post()
        self.actions.append((name, dict(form)))
        return web.Response(text="")


class FakeTracker:
    """模拟表单登录的种子站"""

    def __init__(self, username: str = "user", password: str = "pass"):
        self.username = username
        self.password = password
        self.url = ""
        self.payload = TORRENT_PAYLOAD
        self.download_status: Optional[int] = None
        self.download_statuses: List[int] = []
        self.download_delays: List[float] = []
        self.login_statuses: List[int] = []
        self.login_body = "<html>Welcome back</html>"
        self.login_hits = 0
        self.download_hits = 0
        self.probe_hits = 0
        self.download_ids: List[str] = []
        self.valid_sessions = set()
        self._counter = itertools.count(1)

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post('/login.php', self.login)
        app.router.add_get('/dl.php', self.download)
        app.router.add_get('/index.php', self.probe)
        return app

    def config(self, probe: bool = False, success_marker: Optional[str] = None) -> TrackerConfig:
        return TrackerConfig(
            login_url=f"{self.url}/login.php",
            form_data={"login_username": self.username, "login_password": self.password},
            download_url=f"{self.url}/dl.php?t={{id}}",
            domain="rutracker",
            id_param="t",
            success_marker=success_marker,
            probe_url=f"{self.url}/index.php" if probe else None,
        )

    async def login(self, request: web.Request) -> web.Response:
        self.login_hits += 1
        if self.login_statuses:
            return web.Response(status=self.login_statuses.pop(0), text="Bad Gateway")
        form = await request.post()
        if form.get('login_username') != self.username or form.get('login_password') != self.password:
            return web.Response(text="<html>Wrong password</html>")
        token = f"session-{next(self._counter)}"
        self.valid_sessions.add(token)
        resp = web.Response(text=self.login_body)
        resp.set_cookie('bb_session', token)
        return resp

    async def probe(self, request: web.Request) -> web.Response:
        self.probe_hits += 1
        if request.cookies.get('bb_session') not in self.valid_sessions:
            return web.Response(status=401)
        return web.Response(text="index")

    async def download(self, request: web.Request) -> web.Response:
        self.download_hits += 1
        self.download_ids.append(request.query.get('t', ''))
        if self.download_delays:
            await asyncio.sleep(self.download_delays.pop(0))
        if self.download_statuses:
            return web.Response(status=self.download_statuses.pop(0))
        if self.download_status is not None:
            return web.Response(status=self.download_status)
        if request.cookies.get('bb_session') not in self.valid_sessions:
            return web.Response(status=401)
        return web.Response(body=self.payload, content_type='application/x-bittorrent')


async def _serve(app: web.Application) -> TestServer:
    server = TestServer(app)
    await server.start_server()
    return server


@pytest_asyncio.fixture
async def qbt_server():
    """运行中的模拟qBittorrent"""
    fake = FakeQBittorrent()
    server = await _serve(fake.make_app())
    fake.url = str(server.make_url('')).rstrip('/')
    yield fake
    await server.close()


@pytest_asyncio.fixture
async def tracker_server():
    """运行中的模拟种子站"""
    fake = FakeTracker()
    server = await _serve(fake.make_app())
    fake.url = str(server.make_url('')).rstrip('/')
    yield fake
    await server.close()


@pytest.fixture
def qbt_config(qbt_server):
    return QBittorrentConfig(url=qbt_server.url, username="admin", password="secret", timeout=5)


@pytest.fixture
def app_config(qbt_config, tracker_server):
    """指向模拟服务的完整配置"""
    return AppConfig(
        telegram=TelegramConfig(bot_token="123:TEST", allowed_users=[ALLOWED_CHAT]),
        qbittorrent=qbt_config,
        trackers={"rutracker": tracker_server.config()},
        categories=default_categories(),
        request_timeout=5,
    )


class RecordingResponder:
    """记录机器人输出的聊天接口"""

    def __init__(self):
        self._message_ids = itertools.count(1000)
        self.send = AsyncMock(side_effect=self._send)
        self.edit = AsyncMock(return_value=None)
        self.answer_callback = AsyncMock(return_value=None)

    async def _send(self, chat_id, text, keyboard=None):
        return next(self._message_ids)

    @property
    def sent_texts(self) -> List[str]:
        return [call.args[1] for call in self.send.call_args_list]

    @property
    def edited_texts(self) -> List[str]:
        return [call.args[2] for call in self.edit.call_args_list]


@pytest.fixture
def responder():
    return RecordingResponder()
