"""主程序模块

支持：
- CLI界面
- 优雅关闭
- 信号处理
"""

import asyncio
import signal
import sys
import logging
from pathlib import Path
from typing import Optional
import click

from .__version__ import __version__
from .config import ConfigManager, AppConfig, get_config_path
from .exceptions import ConfigError, QBittorrentBotError
from .links import LinkOrchestrator
from .logging_config import setup_logging, get_logger
from .pending_links import PendingLinkStore
from .qbittorrent_client import QBittorrentClient
from .router import ConversationRouter
from .telegram import TelegramTransport
from .tracker_client import TrackerClient


def resolve_config_path(config: Optional[str]) -> Optional[Path]:
    """命令行未指定时使用默认位置的配置文件，不存在则只使用环境变量"""
    if config:
        return Path(config)
    default_path = get_config_path()
    return default_path if default_path.exists() else None


class TorrentBotApp:
    """主应用程序类"""

    def __init__(self, config_path: Optional[str] = None, log_level: Optional[str] = None):
        self.config_path = resolve_config_path(config_path)
        self.log_level = log_level
        self.config: Optional[AppConfig] = None
        self.qbt_client: Optional[QBittorrentClient] = None
        self.tracker_client: Optional[TrackerClient] = None
        self.transport: Optional[TelegramTransport] = None
        self.router: Optional[ConversationRouter] = None
        self.logger: logging.Logger = get_logger('TorrentBotApp')
        self.shutdown_event = asyncio.Event()

    async def initialize(self):
        """初始化应用程序"""
        self.config = ConfigManager(self.config_path).load_config()
        if self.log_level:
            self.config = self.config.model_copy(update={'log_level': self.log_level})
        setup_logging(level=self.config.log_level, log_file=self.config.log_file)

        if not self.config.telegram.bot_token:
            raise ConfigError("未配置Telegram机器人token（telegram.bot_token 或 TELEGRAMBOTAPI）")

        self.qbt_client = QBittorrentClient(self.config.qbittorrent)
        self.qbt_client.add_reconnect_listener(self._on_reconnect)
        self.tracker_client = TrackerClient(self.config.trackers, timeout=self.config.request_timeout)
        self.transport = TelegramTransport(
            self.config.telegram.bot_token,
            poll_timeout=self.config.telegram.poll_timeout,
            request_timeout=self.config.request_timeout,
        )
        self.router = ConversationRouter(
            self.config,
            LinkOrchestrator(self.tracker_client, self.qbt_client),
            self.qbt_client,
            self.transport,
            PendingLinkStore(),
        )
        self.logger.info("应用程序初始化完成")

    async def start(self):
        """启动应用程序"""
        try:
            await self.initialize()

            self.logger.info("=" * 60)
            self.logger.info(f"qBittorrent Telegram机器人启动 (v{__version__})")
            self.logger.info(f"配置文件: {self.config_path or '环境变量'}")
            self.logger.info(f"qBittorrent: {self.config.qbittorrent.url}")
            self.logger.info(f"种子站: {', '.join(self.config.trackers)}")
            self.logger.info(f"分类数量: {len(self.config.categories)}")
            self.logger.info("=" * 60)

            self._setup_signal_handlers()

            try:
                await self.qbt_client.authenticate()
            except QBittorrentBotError as e:
                # 首次请求时会重新登录
                self.logger.warning(f"启动时无法登录qBittorrent: {str(e)}")

            me = await self.transport.get_me()
            self.logger.info(f"已授权的机器人账号: @{me.get('username', '')}")

            poll_task = asyncio.create_task(self.transport.run(self.router))
            await self.shutdown_event.wait()

            self.logger.info("收到关闭信号，正在优雅关闭...")
            self.transport.stop()
            poll_task.cancel()
            try:
                await poll_task
            except asyncio.CancelledError:
                pass

            self.logger.info("应用程序已安全关闭")

        except ConfigError as e:
            self.logger.error(f"配置错误: {str(e)}")
            sys.exit(1)

        except QBittorrentBotError as e:
            self.logger.error(f"启动失败: {str(e)}")
            sys.exit(1)

        finally:
            await self.cleanup()

    async def cleanup(self):
        """清理所有资源"""
        self.logger.info("开始清理应用程序资源...")
        if self.transport is not None:
            await self.transport.close()
        if self.tracker_client is not None:
            await self.tracker_client.close()
        if self.qbt_client is not None:
            await self.qbt_client.close()
        self.logger.info("应用程序资源清理完成")

    def _on_reconnect(self, event: str, name: str):
        if event == QBittorrentClient.EVENT_FAILED:
            self.logger.error(f"{name} 重连失败")
        else:
            self.logger.info(f"{name} 重连事件: {event}")

    def _setup_signal_handlers(self):
        """设置信号处理器"""
        def signal_handler(signum, frame):
            self.logger.info(f"收到信号 {signum}")
            self.shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)


# CLI命令
@click.group()
@click.version_option(version=__version__)
def cli():
    """qBittorrent Telegram机器人"""
    pass


@cli.command()
@click.option('--config', '-c', type=click.Path(exists=True),
              help='配置文件路径')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']),
              default=None, help='日志级别（覆盖配置文件）')
def run(config: Optional[str], log_level: Optional[str]):
    """启动机器人"""
    app = TorrentBotApp(config, log_level)

    try:
        asyncio.run(app.start())
    except KeyboardInterrupt:
        click.echo("\n机器人已停止")


@cli.command()
@click.option('--config', '-c', type=click.Path(exists=True),
              help='配置文件路径')
def validate_config(config: Optional[str]):
    """验证配置文件"""
    config_path = resolve_config_path(config)

    try:
        config_data = ConfigManager(config_path).load_config()
        click.echo(f"✅ 配置验证通过: {config_path or '环境变量'}")
        click.echo(f"   - qBittorrent: {config_data.qbittorrent.url}")
        click.echo(f"   - 种子站: {', '.join(config_data.trackers)}")
        click.echo(f"   - 分类数量: {len(config_data.categories)}")
        click.echo(f"   - 允许用户数: {len(config_data.telegram.allowed_users)}")

    except ConfigError as e:
        click.echo(f"❌ 配置验证失败: {str(e)}", err=True)
        sys.exit(1)


@cli.command()
@click.option('--config', '-c', type=click.Path(exists=True),
              help='配置文件路径')
def test_connection(config: Optional[str]):
    """测试qBittorrent连接"""
    async def test():
        try:
            app_config = ConfigManager(resolve_config_path(config)).load_config()

            click.echo("正在测试qBittorrent连接...")
            async with QBittorrentClient(app_config.qbittorrent) as qbt:
                version = await qbt.get_version()
                click.echo(f"✅ 连接成功！qBittorrent版本: {version}")

        except QBittorrentBotError as e:
            click.echo(f"❌ 连接失败: {str(e)}", err=True)
            sys.exit(1)

    asyncio.run(test())


@cli.command()
@click.option('--path', '-p', type=click.Path(), default=None,
              help='配置文件保存路径')
def create_config(path: Optional[str]):
    """创建默认配置文件"""
    config_path = Path(path) if path else get_config_path()

    if config_path.exists():
        if not click.confirm(f"配置文件 {config_path} 已存在，是否覆盖？"):
            return

    try:
        ConfigManager(config_path).create_default_config(config_path)
        click.echo(f"✅ 默认配置文件已创建: {config_path}")
        click.echo("请编辑配置文件并设置：")
        click.echo("   - Telegram机器人token与允许的用户")
        click.echo("   - qBittorrent连接信息")
        click.echo("   - 种子站登录信息")

    except ConfigError as e:
        click.echo(f"❌ 创建配置文件失败: {str(e)}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    cli()
