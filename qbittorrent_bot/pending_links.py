"""
待处理链接表

每个请求者最多保存一个等待选择分类的链接，新链接覆盖旧链接。
由 ConversationRouter 在构造时注入并独占使用。
"""

import threading
from typing import Dict, Optional


class PendingLinkStore:
    """线程安全的 请求者ID -> 链接文本 映射"""

    def __init__(self):
        self._links: Dict[int, str] = {}
        self._lock = threading.Lock()

    def set(self, requester_id: int, link: str) -> Optional[str]:
        """保存链接，返回被覆盖的旧链接"""
        with self._lock:
            previous = self._links.get(requester_id)
            self._links[requester_id] = link
            return previous

    def get(self, requester_id: int) -> Optional[str]:
        with self._lock:
            return self._links.get(requester_id)

    def pop(self, requester_id: int) -> Optional[str]:
        """取出并移除链接"""
        with self._lock:
            return self._links.pop(requester_id, None)

    def clear(self):
        with self._lock:
            self._links.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._links)

    def __contains__(self, requester_id: int) -> bool:
        with self._lock:
            return requester_id in self._links
