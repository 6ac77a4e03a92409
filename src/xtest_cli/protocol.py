"""
控制通道協定

定義控制通道上傳遞的訊息格式，負責 JSON 序列化與反序列化。
純轉換，不做任何 I/O。

訊息格式：
    {"type": "status", "data": {...}}
    {"type": "command", "id": "...", "command": "navigate", "params": {...}}
    {"type": "response", "commandId": "...", "data": ...}
    {"type": "error", "commandId": "...", "error": "..."}
    {"type": "event", "data": {"kind": "navigation", "url": "..."}}
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Union

from xtest_cli.schemas import (
    Command,
    CommandResult,
    CommandType,
    MalformedMessage,
    MirrorEvent,
    MirrorEventKind,
    TargetSelector,
)

_COMMAND_TYPES = {t.value: t for t in CommandType}


# ═══════════════════════════════════════════════════════════════════════════════
# 訊息類別
# ═══════════════════════════════════════════════════════════════════════════════
@dataclass
class StatusMessage:
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class CommandMessage:
    command: Command


@dataclass
class ResponseMessage:
    command_id: str
    data: Any = None


@dataclass
class ErrorMessage:
    command_id: str
    error: str


@dataclass
class EventMessage:
    event: MirrorEvent


@dataclass
class UnknownMessage:
    """無法識別的訊息類型（向前相容，呼叫端記錄警告後忽略）"""

    type: str
    raw: dict[str, Any]


ChannelMessage = Union[StatusMessage, CommandMessage, ResponseMessage, ErrorMessage, EventMessage, UnknownMessage]


def result_message(result: CommandResult) -> ResponseMessage | ErrorMessage:
    """將執行結果轉為 response 或 error 訊息"""
    if result.success:
        return ResponseMessage(command_id=result.command_id, data=result.data)
    return ErrorMessage(command_id=result.command_id, error=result.error or "未知錯誤")


# ═══════════════════════════════════════════════════════════════════════════════
# 序列化
# ═══════════════════════════════════════════════════════════════════════════════
def to_payload(message: ChannelMessage) -> dict[str, Any]:
    """轉為可 JSON 序列化的字典"""
    if isinstance(message, StatusMessage):
        return {"type": "status", "data": message.data}
    if isinstance(message, CommandMessage):
        command = message.command
        payload: dict[str, Any] = {
            "type": "command",
            "id": command.id,
            "command": command.type.value,
            "params": command.params,
        }
        if command.target is not None:
            payload["target"] = command.target.value
        if command.mirrored:
            payload["mirrored"] = True
        return payload
    if isinstance(message, ResponseMessage):
        return {"type": "response", "commandId": message.command_id, "data": message.data}
    if isinstance(message, ErrorMessage):
        return {"type": "error", "commandId": message.command_id, "error": message.error}
    if isinstance(message, EventMessage):
        return {"type": "event", "data": message.event.to_dict()}
    if isinstance(message, UnknownMessage):
        return dict(message.raw)
    raise TypeError(f"無法序列化的訊息: {type(message).__name__}")


def encode(message: ChannelMessage) -> str:
    """序列化為 JSON 字串"""
    return json.dumps(to_payload(message), ensure_ascii=False, default=str)


# ═══════════════════════════════════════════════════════════════════════════════
# 反序列化
# ═══════════════════════════════════════════════════════════════════════════════
def _require_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise MalformedMessage(f"訊息缺少欄位 {key}: {payload.get('type')}")
    return value


def _parse_params(payload: dict[str, Any]) -> dict[str, Any]:
    params = payload.get("params")
    if params is None:
        return {}
    if not isinstance(params, dict):
        raise MalformedMessage("params 必須是物件")
    return params


def _parse_target(payload: dict[str, Any]) -> TargetSelector | None:
    target = payload.get("target")
    if target is None:
        return None
    try:
        return TargetSelector.parse(target)
    except ValueError as e:
        raise MalformedMessage(str(e)) from e


def _parse_command(payload: dict[str, Any], type_name: str) -> CommandMessage:
    command_type = _COMMAND_TYPES.get(type_name)
    if command_type is None:
        raise MalformedMessage(f"未知的指令類型: {type_name}")
    command = Command(
        type=command_type,
        params=_parse_params(payload),
        id=_require_str(payload, "id"),
        target=_parse_target(payload),
        mirrored=bool(payload.get("mirrored", False)),
    )
    return CommandMessage(command=command)


def _parse_event(data: Any) -> EventMessage:
    if not isinstance(data, dict):
        raise MalformedMessage("event 訊息缺少 data 物件")
    try:
        kind = MirrorEventKind(data.get("kind"))
    except ValueError as e:
        raise MalformedMessage(f"未知的事件類型: {data.get('kind')}") from e
    required = "url" if kind is MirrorEventKind.NAVIGATION else "selector"
    _require_str(data, required)
    return EventMessage(
        event=MirrorEvent(
            kind=kind,
            url=data.get("url"),
            selector=data.get("selector"),
            value=data.get("value"),
        )
    )


def decode(raw: str | bytes) -> ChannelMessage:
    """
    反序列化控制通道訊息

    Args:
        raw: JSON 文字

    Returns:
        對應的訊息物件；無法識別的 type 回傳 UnknownMessage

    Raises:
        MalformedMessage: 不是合法 JSON 物件、缺少 type 或必要欄位
    """
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedMessage(f"無法解析訊息: {e}") from e

    if not isinstance(payload, dict):
        raise MalformedMessage("訊息必須是 JSON 物件")

    msg_type = payload.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise MalformedMessage("訊息缺少 type 欄位")

    if msg_type == "status" and "id" not in payload:
        data = payload.get("data", {})
        if not isinstance(data, dict):
            raise MalformedMessage("status 訊息的 data 必須是物件")
        return StatusMessage(data=data)

    if msg_type == "command":
        return _parse_command(payload, _require_str(payload, "command"))

    if msg_type == "response":
        return ResponseMessage(command_id=_require_str(payload, "commandId"), data=payload.get("data"))

    if msg_type == "error":
        error = payload.get("error")
        return ErrorMessage(
            command_id=_require_str(payload, "commandId"),
            error=str(error) if error is not None else "未知錯誤",
        )

    if msg_type == "event":
        return _parse_event(payload.get("data"))

    # 服務端推送的導航通知 {type: "navigation", url}
    if msg_type == "navigation":
        return _parse_event({"kind": "navigation", "url": payload.get("url")})

    # 服務端直接推送的指令 {id, type: <指令類型>, params}
    if msg_type in _COMMAND_TYPES and "id" in payload:
        return _parse_command(payload, msg_type)

    return UnknownMessage(type=msg_type, raw=payload)
