"""Chat channels module with plugin architecture."""

from sportello.channels.base import BaseChannel
from sportello.channels.manager import ChannelManager

__all__ = ["BaseChannel", "ChannelManager"]
