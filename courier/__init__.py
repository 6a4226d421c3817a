"""
courier - reliable reply delivery for chat bridges
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("courier-chat")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
__logo__ = "📨"
