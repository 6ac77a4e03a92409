"""
資料模型定義

包含 Command、CommandResult、MirrorEvent 等核心資料結構，以及錯誤類型
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ═══════════════════════════════════════════════════════════════════════════════
# 列舉類別
# ═══════════════════════════════════════════════════════════════════════════════
class SessionKind(Enum):
    """Session 類型"""

    LOCAL = "local"
    REMOTE = "remote"


class TargetSelector(Enum):
    """操作目標：本地、遠端或兩者"""

    LOCAL = "local"
    REMOTE = "remote"
    BOTH = "both"

    @classmethod
    def parse(cls, value: TargetSelector | str) -> TargetSelector:
        """接受列舉或字串（cloud 視為 remote）"""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        if normalized == "cloud":
            normalized = "remote"
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"未知的操作目標: {value}") from None

    @property
    def kinds(self) -> tuple[SessionKind, ...]:
        """此目標涵蓋的 Session 類型"""
        if self is TargetSelector.BOTH:
            return (SessionKind.LOCAL, SessionKind.REMOTE)
        return (SessionKind(self.value),)

    def includes(self, kind: SessionKind) -> bool:
        return kind in self.kinds


class CommandType(Enum):
    """指令類型"""

    NAVIGATE = "navigate"
    CLICK = "click"
    TYPE = "type"
    SCREENSHOT = "screenshot"
    EVALUATE = "evaluate"
    WAIT_FOR_SELECTOR = "waitForSelector"
    SELECT = "select"
    PRESS = "press"
    PAGE_INFO = "pageInfo"
    STATUS = "status"


class MirrorEventKind(Enum):
    """鏡像事件類型"""

    NAVIGATION = "navigation"
    CLICK = "click"
    INPUT = "input"


# ═══════════════════════════════════════════════════════════════════════════════
# 資料類別
# ═══════════════════════════════════════════════════════════════════════════════
def new_command_id() -> str:
    """產生指令 ID"""
    return uuid.uuid4().hex


@dataclass
class Command:
    """
    瀏覽器指令

    Attributes:
        type: 指令類型
        params: 指令參數（依類型而定）
        id: 指令 ID，同一條控制通道連線內唯一
        target: 操作目標（可選）
        mirrored: 是否為鏡像重播的指令（不會再次被觀察）
    """

    type: CommandType
    params: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_command_id)
    target: TargetSelector | None = None
    mirrored: bool = False


@dataclass
class CommandResult:
    """指令執行結果，以 command_id 對應到指令"""

    command_id: str
    success: bool
    data: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, command_id: str, data: Any = None) -> CommandResult:
        return cls(command_id=command_id, success=True, data=data)

    @classmethod
    def failure(cls, command_id: str, error: str | BaseException) -> CommandResult:
        return cls(command_id=command_id, success=False, error=str(error))


@dataclass
class MirrorEvent:
    """
    觀察到的瀏覽器動作

    包含足夠的資訊（URL、selector、值）以在另一端重建等效指令。
    """

    kind: MirrorEventKind
    url: str | None = None
    selector: str | None = None
    value: str | None = None

    @property
    def echo_key(self) -> tuple[str, str]:
        """用於比對回音的鍵值"""
        if self.kind is MirrorEventKind.NAVIGATION:
            return (self.kind.value, _normalize_url(self.url))
        return (self.kind.value, self.selector or "")

    def to_command(self, mirrored: bool = True) -> Command:
        """轉換為等效的指令"""
        if self.kind is MirrorEventKind.NAVIGATION:
            return Command(CommandType.NAVIGATE, {"url": self.url}, mirrored=mirrored)
        if self.kind is MirrorEventKind.CLICK:
            return Command(CommandType.CLICK, {"selector": self.selector}, mirrored=mirrored)
        return Command(
            CommandType.TYPE,
            {"selector": self.selector, "text": self.value or ""},
            mirrored=mirrored,
        )

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "url": self.url, "selector": self.selector, "value": self.value}


def _normalize_url(url: str | None) -> str:
    """忽略結尾斜線（https://a.test 與 https://a.test/ 視為相同）"""
    return (url or "").rstrip("/")


def echo_key_for(command: Command) -> tuple[str, str] | None:
    """指令執行後預期會被觀察到的事件鍵值"""
    if command.type is CommandType.NAVIGATE:
        return (MirrorEventKind.NAVIGATION.value, _normalize_url(command.params.get("url")))
    if command.type is CommandType.CLICK:
        return (MirrorEventKind.CLICK.value, command.params.get("selector", ""))
    if command.type is CommandType.TYPE:
        return (MirrorEventKind.INPUT.value, command.params.get("selector", ""))
    return None


@dataclass
class FanOutResult:
    """
    多目標操作的結果

    每一端各自的結果或錯誤，未被指定的一端為 None。
    """

    local: CommandResult | None = None
    remote: CommandResult | None = None

    @property
    def success(self) -> bool:
        """所有被指定的一端皆成功"""
        results = [r for r in (self.local, self.remote) if r is not None]
        return bool(results) and all(r.success for r in results)

    def get(self, kind: SessionKind) -> CommandResult | None:
        return self.local if kind is SessionKind.LOCAL else self.remote

    def to_dict(self) -> dict[str, Any]:
        output: dict[str, Any] = {}
        for kind in SessionKind:
            result = self.get(kind)
            if result is not None:
                output[kind.value] = {"success": result.success, "data": result.data, "error": result.error}
        return output


# ═══════════════════════════════════════════════════════════════════════════════
# 錯誤類型
# ═══════════════════════════════════════════════════════════════════════════════
class XtestError(Exception):
    """xtest CLI 錯誤基底類別"""


class ConfigError(XtestError):
    """配置不合法"""


class MalformedMessage(XtestError):
    """協定訊息無法解析（非致命，丟棄即可）"""


class DriverError(XtestError):
    """本地瀏覽器自動化操作失敗"""


class RemoteApiError(XtestError):
    """遠端 Session API 回傳非成功的回應"""

    def __init__(self, status_code: int, body: Any):
        self.status_code = status_code
        self.body = body
        super().__init__(f"遠端 API 錯誤 ({status_code}): {body}")


class RemoteApiUnreachable(XtestError):
    """遠端 Session API 無法連線或逾時"""


class ChannelReconnectExhausted(XtestError):
    """控制通道重連次數用盡（致命）"""


class CommandLost(XtestError):
    """指令發出後控制通道中斷，無法取得結果"""


class NotReady(XtestError):
    """Session Controller 尚未就緒或已停止"""
