"""
重连重试策略

把"失败 -> 分类 -> 符合条件则重连 -> 重试一次 -> 失败"建模为纯函数，
不依赖任何网络传输，可以单独测试。

只有认证类失败（传输中断、登录被拒、401/403）会触发重连；内容类失败
（其他非2xx、格式错误、查无此项）直接失败，避免把错误的链接包装成
"正在重连……"的循环。
"""

from enum import Enum

from .exceptions import AuthError, ConnectivityError, RemoteError

# 单次调用最多尝试的次数（首次 + 重连后重试一次）
MAX_ATTEMPTS = 2

AUTH_STATUS_CODES = frozenset({401, 403})


class FailureKind(str, Enum):
    """失败类别"""

    TRANSPORT = "transport"      # 网络传输失败
    LOGIN = "login"              # 登录被拒绝
    AUTH_STATUS = "auth_status"  # 401 / 403
    CONTENT = "content"          # 其他非2xx或内容问题


class RetryAction(str, Enum):
    """策略给出的下一步动作"""

    RECONNECT_AND_RETRY = "reconnect_and_retry"
    FAIL = "fail"


def classify_failure(error: BaseException) -> FailureKind:
    """将异常归类为失败类别"""
    if isinstance(error, ConnectivityError):
        return FailureKind.TRANSPORT
    if isinstance(error, AuthError):
        return FailureKind.LOGIN
    if isinstance(error, RemoteError) and error.status_code in AUTH_STATUS_CODES:
        return FailureKind.AUTH_STATUS
    return FailureKind.CONTENT


def next_action(kind: FailureKind, attempt: int) -> RetryAction:
    """
    根据失败类别与已尝试次数决定下一步

    Args:
        kind: 失败类别
        attempt: 已完成的尝试次数（从1开始）
    """
    if kind is FailureKind.CONTENT:
        return RetryAction.FAIL
    if attempt >= MAX_ATTEMPTS:
        return RetryAction.FAIL
    return RetryAction.RECONNECT_AND_RETRY


def should_reconnect(error: BaseException, attempt: int = 1) -> bool:
    """便捷判断：该异常在当前尝试次数下是否值得重连重试"""
    return next_action(classify_failure(error), attempt) is RetryAction.RECONNECT_AND_RETRY
