"""
Built-in task plugins.

A plugin binds one task type to a handler on a dispatcher.
"""
from .direct_message import DirectMessagePlugin

PLUGINS = {
    DirectMessagePlugin.name: DirectMessagePlugin,
}

__all__ = [
    "DirectMessagePlugin",
    "PLUGINS",
]
