"""imaputils configuration package.

What:
  Provide a cohesive import surface for configuration loading, validation,
  password resolution, and folder pattern helpers.

Why:
  Centralising the exports shields callers from the internal layout and makes
  sure every consumer goes through the validated schema types.

Interfaces:
  - load_config / read_password: Resolve the YAML document and password files.
  - AppConfig / ServerEndpoint / FolderFlagPolicy / LimitSettings: Pydantic
    models (and the flag policy value type) used by the services.
  - compile_pattern / FolderPatterns: Folder glob patterns.
"""

from .loader import load_config, read_password
from .patterns import FolderPatterns, compile_pattern
from .schema import AppConfig, FolderFlagPolicy, LimitSettings, ServerEndpoint

__all__ = [
    "load_config",
    "read_password",
    "compile_pattern",
    "FolderPatterns",
    "AppConfig",
    "FolderFlagPolicy",
    "LimitSettings",
    "ServerEndpoint",
]
