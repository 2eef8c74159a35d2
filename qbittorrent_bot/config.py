"""
配置管理模块

支持：
- JSON / TOML 配置文件
- 环境变量覆盖（兼容原有部署使用的变量名）
- pydantic 配置验证
"""

import json
import os
import tomllib
from pathlib import Path
from typing import Dict, List, Optional, Any, Union

from pydantic import BaseModel, ValidationError, Field, field_validator, ConfigDict

from .exceptions import ConfigError, ConfigNotFoundError
from .logging_config import get_logger

# 分类回调数据的结束分隔符
CATEGORY_DELIMITER = "."
# Telegram callback_data 最大字节数
MAX_CALLBACK_BYTES = 64


class QBittorrentConfig(BaseModel):
    """qBittorrent配置数据模型"""
    url: str = "http://localhost:8080"
    username: str = "admin"
    password: str = ""
    timeout: int = 30

    @field_validator('url')
    @classmethod
    def validate_url(cls, v: str) -> str:
        """验证WebUI地址"""
        if not v or not v.strip():
            raise ValueError('qBittorrent地址不能为空')
        if not v.startswith(('http://', 'https://')):
            raise ValueError('qBittorrent地址必须以http://或https://开头')
        return v.strip().rstrip('/')

    @field_validator('timeout')
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        """验证超时时间"""
        if v <= 0 or v > 300:
            raise ValueError('超时时间必须在1-300秒之间')
        return v


class TrackerConfig(BaseModel):
    """种子站登录与下载配置，加载后不可变"""
    login_url: str
    form_data: Dict[str, str] = {}
    download_url: str
    domain: str
    id_param: str = "id"
    success_marker: Optional[str] = None
    probe_url: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @field_validator('download_url')
    @classmethod
    def validate_download_url(cls, v: str) -> str:
        """下载地址必须包含 {id} 占位符"""
        if '{id}' not in v:
            raise ValueError('下载地址模板必须包含 {id} 占位符')
        return v

    @field_validator('domain')
    @classmethod
    def validate_domain(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError('站点域名关键字不能为空')
        return v.strip().lower()


class CategoryConfig(BaseModel):
    """分类配置数据模型"""
    label: str
    save_path: str = Field(default="", alias='savePath')

    model_config = ConfigDict(populate_by_name=True)


class TelegramConfig(BaseModel):
    """Telegram机器人配置"""
    bot_token: str = ""
    allowed_users: List[int] = []
    poll_timeout: int = 60

    @field_validator('poll_timeout')
    @classmethod
    def validate_poll_timeout(cls, v: int) -> int:
        if v < 0 or v > 120:
            raise ValueError('长轮询超时必须在0-120秒之间')
        return v


def default_trackers() -> Dict[str, TrackerConfig]:
    """内置支持的种子站"""
    return {
        "rutracker": TrackerConfig(
            login_url="https://rutracker.org/forum/login.php",
            form_data={"login_username": "", "login_password": "", "login": ""},
            download_url="https://rutracker.org/forum/dl.php?t={id}",
            domain="rutracker",
            id_param="t",
        ),
        "kinozal": TrackerConfig(
            login_url="https://kinozal.tv/takelogin.php",
            form_data={"username": "", "password": ""},
            download_url="https://dl.kinozal.tv/download.php?id={id}",
            domain="kinozal",
            id_param="id",
        ),
    }


def default_categories() -> Dict[str, CategoryConfig]:
    """默认下载分类（键为按钮回调数据）"""
    return {
        "Movies.": CategoryConfig(label="Movies", save_path="/downloads/movies/"),
        "TV Shows.": CategoryConfig(label="TV Shows", save_path="/downloads/tv/"),
        "Games.": CategoryConfig(label="Games", save_path="/downloads/games/"),
        "AudioBooks.": CategoryConfig(label="Audio Books", save_path="/downloads/audiobooks/"),
        "MultiParts.": CategoryConfig(label="Parted media", save_path="/downloads/multiparts/"),
        "MANGA.": CategoryConfig(label="Manga", save_path="/downloads/manga/"),
        "COMICS.": CategoryConfig(label="Comics", save_path="/downloads/comics/"),
    }


class AppConfig(BaseModel):
    """应用配置数据模型"""
    telegram: TelegramConfig = TelegramConfig()
    qbittorrent: QBittorrentConfig = QBittorrentConfig()
    trackers: Dict[str, TrackerConfig] = Field(default_factory=default_trackers)
    categories: Dict[str, CategoryConfig] = Field(default_factory=default_categories)
    # 种子站与Telegram请求超时（秒）
    request_timeout: int = 30
    # 列表分页
    list_page_size: int = 20
    # 日志配置
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @field_validator('categories')
    @classmethod
    def validate_categories(cls, v: Dict[str, CategoryConfig]) -> Dict[str, CategoryConfig]:
        """分类键统一以分隔符结尾，且不超过callback_data长度限制"""
        if not v:
            raise ValueError('至少需要配置一个分类')
        normalized = {}
        for key, category in v.items():
            key = key.strip()
            if ':' in key:
                raise ValueError(f'分类键不能包含冒号: {key}')
            if not key.endswith(CATEGORY_DELIMITER):
                key += CATEGORY_DELIMITER
            if len(key.encode('utf-8')) > MAX_CALLBACK_BYTES:
                raise ValueError(f'分类键过长: {key}')
            normalized[key] = category
        return normalized

    @field_validator('list_page_size')
    @classmethod
    def validate_page_size(cls, v: int) -> int:
        if v <= 0 or v > 50:
            raise ValueError('分页大小必须在1-50之间')
        return v

    @field_validator('request_timeout')
    @classmethod
    def validate_request_timeout(cls, v: int) -> int:
        if v <= 0 or v > 300:
            raise ValueError('超时时间必须在1-300秒之间')
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f'未知的日志级别: {v}')
        return level


# 环境变量 -> 分类键
CATEGORY_ENV_VARS = {
    "Movies.": "MOVIES_PATH",
    "TV Shows.": "TV_SHOWS_PATH",
    "Games.": "GAMES_PATH",
    "MultiParts.": "MULTIPARTS_PATH",
    "AudioBooks.": "AUDIOBOOKS_PATH",
    "MANGA.": "MANGA_PATH",
    "COMICS.": "COMICS_PATH",
}

# 环境变量 -> (种子站, 表单字段)
TRACKER_ENV_VARS = {
    "RUTRACKERUSER": ("rutracker", "login_username"),
    "RUTRACKERPASSWORD": ("rutracker", "login_password"),
    "RUTRACKERLOGIN": ("rutracker", "login"),
    "KINOZALUSER": ("kinozal", "username"),
    "KINOZALPASSWORD": ("kinozal", "password"),
}


def parse_allowed_users(raw: str) -> List[int]:
    """解析以 | 分隔的用户ID列表"""
    users = []
    for part in raw.split('|'):
        part = part.strip()
        if not part:
            continue
        try:
            users.append(int(part))
        except ValueError as e:
            raise ConfigError(f"ALLOWED_USERS 中存在无效的用户ID: {part}") from e
    return users


class ConfigManager:
    """配置管理器"""

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        self.logger = get_logger('ConfigManager')
        self.config_path = Path(config_path) if config_path else None
        self.config: Optional[AppConfig] = None

    def load_config(self) -> AppConfig:
        """加载配置文件并应用环境变量覆盖"""
        try:
            if self.config_path is None:
                config_data: Dict[str, Any] = {}
            else:
                if not self.config_path.exists():
                    raise ConfigNotFoundError(str(self.config_path))
                config_data = self._load_config_file()

            config_data = self._apply_env_overrides(config_data)
            self.config = AppConfig(**config_data)

            source = self.config_path or "环境变量"
            self.logger.info(
                f"配置加载成功: {source} "
                f"(分类: {len(self.config.categories)}, 种子站: {len(self.config.trackers)})"
            )
            if not self.config.telegram.allowed_users:
                self.logger.warning("允许用户列表为空，所有请求都将被拒绝")
            return self.config

        except ConfigError:
            raise
        except ValidationError as e:
            raise ConfigError(f"配置验证失败: {str(e)}") from e
        except Exception as e:
            raise ConfigError(f"配置加载失败: {str(e)}") from e

    def _load_config_file(self) -> Dict[str, Any]:
        """根据文件扩展名加载不同格式的配置文件"""
        suffix = self.config_path.suffix.lower()

        try:
            if suffix == '.toml':
                with open(self.config_path, 'rb') as f:
                    return tomllib.load(f)
            with open(self.config_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except Exception as e:
            raise ConfigError(f"配置文件格式错误: {str(e)}") from e

    def _apply_env_overrides(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """应用环境变量覆盖"""
        telegram = dict(config_data.get('telegram', {}))
        if os.getenv('TELEGRAMBOTAPI'):
            telegram['bot_token'] = os.environ['TELEGRAMBOTAPI']
        if os.getenv('ALLOWED_USERS'):
            telegram['allowed_users'] = parse_allowed_users(os.environ['ALLOWED_USERS'])
        config_data['telegram'] = telegram

        qbt = dict(config_data.get('qbittorrent', {}))
        for env_name, key in (('QBITTORRENT_URL', 'url'),
                              ('TORRENTUSER', 'username'),
                              ('TORRENTPASSWORD', 'password')):
            if os.getenv(env_name):
                qbt[key] = os.environ[env_name]
        config_data['qbittorrent'] = qbt

        trackers = config_data.get('trackers')
        if trackers is None:
            trackers = {name: t.model_dump() for name, t in default_trackers().items()}
        else:
            trackers = {name: dict(t) for name, t in trackers.items()}
        for env_name, (site, field) in TRACKER_ENV_VARS.items():
            value = os.getenv(env_name)
            if value and site in trackers:
                form_data = dict(trackers[site].get('form_data', {}))
                form_data[field] = value
                trackers[site]['form_data'] = form_data
        config_data['trackers'] = trackers

        categories = config_data.get('categories')
        if categories is None:
            categories = {key: c.model_dump() for key, c in default_categories().items()}
        else:
            categories = {key: dict(c) for key, c in categories.items()}
        for key, env_name in CATEGORY_ENV_VARS.items():
            value = os.getenv(env_name)
            if value and key in categories:
                categories[key]['save_path'] = value
                categories[key].pop('savePath', None)
        config_data['categories'] = categories

        return config_data

    def create_default_config(self, path: Optional[Path] = None) -> Path:
        """创建默认配置文件"""
        target = Path(path or self.config_path or get_config_path())
        default_config = {
            "telegram": {
                "bot_token": "",
                "allowed_users": [],
                "poll_timeout": 60
            },
            "qbittorrent": {
                "url": "http://localhost:8080",
                "username": "admin",
                "password": "",
                "timeout": 30
            },
            "trackers": {name: t.model_dump() for name, t in default_trackers().items()},
            "categories": {
                key: {"label": c.label, "savePath": c.save_path}
                for key, c in default_categories().items()
            },
            "request_timeout": 30,
            "list_page_size": 20,
            "log_level": "INFO",
            "log_file": None
        }

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, 'w', encoding='utf-8') as f:
                json.dump(default_config, f, indent=4, ensure_ascii=False)
            self.logger.info(f"已创建默认配置文件: {target}")
            return target
        except OSError as e:
            raise ConfigError(f"创建默认配置失败: {str(e)}") from e


def get_config_path() -> Path:
    """获取默认配置文件路径"""
    config_path = os.getenv('QBBOT_CONFIG')
    if config_path:
        return Path(config_path)

    current_dir = Path.cwd()
    for config_file in ('config.json', 'config.toml'):
        candidate = current_dir / config_file
        if candidate.exists():
            return candidate

    return current_dir / 'config.json'
