"""
Core server components
"""

from .config import ServerConfig, load_config
from .http_parser import HTTPParser
from .plugin_loader import load_capability
from .request_handler import RequestHandler, Router
from .server_core import LanguageServer

# Expose public interface
__all__ = [
    "LanguageServer",
    "HTTPParser",
    "RequestHandler",
    "Router",
    "ServerConfig",
    "load_config",
    "load_capability",
]
