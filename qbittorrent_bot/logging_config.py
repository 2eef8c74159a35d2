"""
日志配置模块

各组件使用 'QBittorrentBot.<组件>' 形式的记录器，统一由根记录器输出。
"""

import logging
from pathlib import Path
from typing import Optional

ROOT_LOGGER_NAME = 'QBittorrentBot'


def get_logger(component: str) -> logging.Logger:
    """获取组件日志记录器"""
    return logging.getLogger(f'{ROOT_LOGGER_NAME}.{component}')


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """配置日志系统"""
    logger = logging.getLogger(ROOT_LOGGER_NAME)

    if logger.handlers:
        return logger

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(numeric_level)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        try:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError as exc:
            logger.warning(f"无法创建日志文件 {log_file}: {exc}")

    return logger
