from .core import (
    LanguageServer, HTTPParser, RequestHandler, Router, ServerConfig,
    load_config, load_capability
)

__version__ = '1.0.0'

__all__ = [
    # Core components
    'LanguageServer',
    'HTTPParser',
    'RequestHandler',
    'Router',

    # Startup
    'ServerConfig',
    'load_config',
    'load_capability',
]
