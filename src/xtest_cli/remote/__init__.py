"""
雲端瀏覽器連線模組

提供控制通道（WebSocket）與遠端 Session API（HTTP），
並透過 RemoteSessionAdapter 操作雲端瀏覽器。
"""

from xtest_cli.remote.api_client import RemoteSessionApi
from xtest_cli.remote.control_channel import ChannelState, ControlChannel
from xtest_cli.remote.session_adapter import RemoteSessionAdapter

__all__ = ["RemoteSessionApi", "ChannelState", "ControlChannel", "RemoteSessionAdapter"]
