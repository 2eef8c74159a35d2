"""
统一异常处理模块

定义机器人核心使用的异常类型。每个远程操作都通过抛出这些异常显式报告失败，
调用方据此决定是否重连重试或直接向用户报告。
"""

from typing import Optional, Any, Dict


class QBittorrentBotError(Exception):
    """项目基础异常类"""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.details = details
        self.error_code = "BOT_ERROR"
        self.context: Dict[str, Any] = {}

    @property
    def stage(self) -> Optional[str]:
        """失败发生的阶段（tracker / daemon），未标记时为None"""
        return self.context.get("stage")

    def to_dict(self) -> Dict[str, Any]:
        """将异常转换为字典格式，便于日志记录"""
        return {
            "error_type": self.__class__.__name__,
            "message": str(self),
            "details": self.details,
            "error_code": self.error_code,
            "context": self.context,
        }


class ConfigError(QBittorrentBotError):
    """配置相关异常（缺少凭据、未知分类等），只影响单个请求"""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message, details)
        self.error_code = "CONFIG_ERROR"


class ConfigNotFoundError(ConfigError):
    """配置文件未找到异常"""

    def __init__(self, config_path: str):
        super().__init__(f"配置文件未找到: {config_path}", details={"path": config_path})
        self.config_path = config_path
        self.error_code = "CONFIG_NOT_FOUND"


class ValidationError(QBittorrentBotError):
    """输入校验失败，在任何远程调用之前抛出"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, details={"field": field})
        self.field = field
        self.error_code = "VALIDATION_ERROR"


class ConnectivityError(QBittorrentBotError):
    """网络传输失败（连接、超时等）"""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message, details={"url": url})
        self.url = url
        self.error_code = "CONNECTIVITY_ERROR"


class AuthError(QBittorrentBotError):
    """远端明确拒绝登录"""

    def __init__(self, message: str, site: Optional[str] = None):
        super().__init__(message, details={"site": site})
        self.site = site
        self.error_code = "AUTH_ERROR"


class ReconnectError(AuthError):
    """重连后仍无法登录"""

    def __init__(self, message: str, site: Optional[str] = None):
        super().__init__(message, site=site)
        self.error_code = "RECONNECT_ERROR"


class RemoteError(QBittorrentBotError):
    """远端返回非2xx响应"""

    BODY_SNIPPET_LENGTH = 200

    def __init__(self, message: str, status_code: int, body: str = ""):
        snippet = (body or "")[:self.BODY_SNIPPET_LENGTH]
        super().__init__(message, details={"status_code": status_code, "body": snippet})
        self.status_code = status_code
        self.body = snippet
        self.error_code = "REMOTE_ERROR"

    def __str__(self) -> str:
        base = super().__str__()
        if self.body:
            return f"{base} (HTTP {self.status_code}: {self.body})"
        return f"{base} (HTTP {self.status_code})"


class FormatError(QBittorrentBotError):
    """下载的种子内容格式不正确"""

    def __init__(self, message: str, size: int = 0):
        super().__init__(message, details={"size": size})
        self.error_code = "FORMAT_ERROR"


class NotFoundError(QBittorrentBotError):
    """查找结果为空"""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message, details={"key": key})
        self.key = key
        self.error_code = "NOT_FOUND"


class ExtractionError(QBittorrentBotError):
    """识别到种子站链接，但无法提取种子ID"""

    def __init__(self, message: str, site: Optional[str] = None):
        super().__init__(message, details={"site": site})
        self.site = site
        self.error_code = "EXTRACTION_ERROR"


class UnauthorizedError(QBittorrentBotError):
    """请求者不在允许列表中"""

    def __init__(self, requester_id: int):
        super().__init__(f"用户 {requester_id} 无权使用此机器人", details={"requester_id": requester_id})
        self.requester_id = requester_id
        self.error_code = "UNAUTHORIZED"


def tag_stage(error: QBittorrentBotError, stage: str) -> QBittorrentBotError:
    """在异常上标记失败阶段，原样返回以便重新抛出"""
    error.context["stage"] = stage
    return error
