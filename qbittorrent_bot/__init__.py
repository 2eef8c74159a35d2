"""
qBittorrent Telegram 机器人

通过聊天发送种子站链接、选择下载分类，并管理正在进行的下载任务。
"""

from .__version__ import __version__

__all__ = ["__version__"]
