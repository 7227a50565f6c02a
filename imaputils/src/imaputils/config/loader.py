"""Strict loaders for the imaputils configuration document and password files.

What:
  Locate, parse, and validate the YAML configuration shared by
  ``imaputils replicate`` and ``imaputils train``, and resolve password
  settings that point at files.

Why:
  Configuration lives outside the package (typically
  ``/etc/imaputils/<app>.cfg``) and is edited by hand. Centralising parsing
  enforces consistent validation and error messages so the replicator never
  starts with half-initialised settings. The resulting :class:`AppConfig` is
  constructed once by the CLI and handed to every component explicitly; no
  module keeps a process-wide copy.

How:
  Resolve candidate file locations based on an explicit argument, the
  ``IMAPUTILS_CONFIG`` environment variable, and the per-application default
  path. Parse YAML payloads with ``yaml.safe_load`` and validate them using
  the Pydantic models from :mod:`imaputils.config.schema`.

Interfaces:
  :func:`load_config`, :func:`read_password`.

Invariants:
  - All configuration must pass strict Pydantic validation before it is
    returned to callers.
  - Filesystem and YAML failures are converted into
    :class:`~imaputils.errors.ConfigurationError` with the path in the message.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml
from pydantic import ValidationError as _PydanticValidationError

from ..errors import ConfigurationError
from .schema import PASSWORD_FILE_MARKER, AppConfig


CONFIG_ENV = "IMAPUTILS_CONFIG"
CONFIG_DIR = Path("/etc/imaputils")


def _candidate_paths(path: Optional[Path], app: str) -> Iterable[Path]:
    """Yield configuration file locations in priority order.

    What:
      Produce the ordered list of paths that should be inspected for the
      configuration document.

    Why:
      Cron jobs pass the path explicitly, interactive use relies on the
      environment, and packaged installs rely on ``/etc``; this helper captures
      that precedence chain.

    Args:
      path: Explicit path requested by the caller, or ``None``.
      app: Application name used for the default file name.

    Yields:
      Candidate paths ordered from most specific to least specific.
    """

    seen: set[Path] = set()
    candidates = []
    if path is not None:
        candidates.append(path)
    env_path = os.environ.get(CONFIG_ENV)
    if env_path:
        candidates.append(Path(env_path))
    candidates.append(CONFIG_DIR / f"{app}.cfg")
    for candidate in candidates:
        candidate = candidate.expanduser()
        if candidate not in seen:
            seen.add(candidate)
            yield candidate


def _parse_config_payload(text: str, source: Path) -> dict[str, Any]:
    """Parse configuration text into a dictionary payload.

    Raises:
      ConfigurationError: If the file cannot be parsed or does not contain a
      mapping at the top level.
    """

    try:
        payload = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {source}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"{source} must contain a mapping at the top-level")
    return payload


def load_config(path: Optional[Path | str] = None, *, app: str = "imap-replicator") -> AppConfig:
    """Resolve, parse, and validate the configuration.

    What:
      Locate the configuration document using the precedence chain, parse it,
      and return a validated :class:`AppConfig` instance.

    Why:
      The CLI builds one configuration object per process and passes it by
      reference to the connection layer, the replicators, and the checkpoint
      store. Loading is therefore a plain function without caching.

    How:
      Convert string paths to :class:`~pathlib.Path`, iterate through the
      candidate paths until an existing file is found, read it, and validate
      the payload with :meth:`AppConfig.model_validate`.

    Args:
      path: Optional explicit location of the configuration file. When given
        and missing, the loader fails instead of falling back.
      app: Application name selecting the default ``/etc`` file.

    Returns:
      The validated configuration.

    Raises:
      ConfigurationError: If no configuration file can be located, read, or
      validated.
    """

    requested = Path(path).expanduser() if path is not None else None
    if requested is not None and not requested.exists():
        raise ConfigurationError(f"Configuration file missing: {requested}")

    searched: list[str] = []
    for candidate in _candidate_paths(requested, app):
        if not candidate.is_file():
            searched.append(str(candidate))
            continue
        try:
            text = candidate.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(f"Unable to read configuration file {candidate}: {exc}") from exc
        payload = _parse_config_payload(text, candidate)
        try:
            return AppConfig.model_validate(payload)
        except _PydanticValidationError as exc:
            raise ConfigurationError(f"Invalid configuration in {candidate}: {exc}") from exc

    raise ConfigurationError(
        f"Set {CONFIG_ENV} or create {CONFIG_DIR / (app + '.cfg')} "
        f"(searched: {', '.join(searched) or '<none>'})"
    )


def read_password(value: Optional[str]) -> Optional[str]:
    """Resolve a password setting.

    A value starting with ``<`` names a file holding the password; anything
    else is the literal password. A single trailing newline is stripped from
    file contents since editors add one.

    Raises:
      ConfigurationError: If the referenced password file cannot be read.
    """

    if value is None or not value.startswith(PASSWORD_FILE_MARKER):
        return value
    location = Path(value[len(PASSWORD_FILE_MARKER):]).expanduser()
    try:
        secret = location.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Unable to read password file {location}: {exc}") from exc
    if secret.endswith("\r\n"):
        return secret[:-2]
    if secret.endswith("\n"):
        return secret[:-1]
    return secret
