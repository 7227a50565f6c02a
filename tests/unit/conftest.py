"""Pytest fixtures for unit tests requiring IMAP and ManageSieve fakes.

What:
  Ensure ``tests/unit`` is importable and expose fixtures that replace the
  network clients with in-memory servers, plus a ready-made configuration and
  a logger writing to a buffer.

Why:
  Sessions, replicators and the training scanner all construct their clients
  internally. Patching the constructors keeps production code unchanged while
  tests assert on server state and command counts.

How:
  Monkeypatch ``imaputils.imap.client.IMAPClient`` and
  ``imaputils.imap.sieve.Client`` with factories that look servers up by host
  name in dictionaries owned by the fixtures.

Interfaces:
  :func:`servers`, :func:`sieve_servers`, :func:`app_config`,
  :func:`log_stream`, :func:`logger` (pytest fixtures).

Invariants & Safety:
  - Each test receives fresh backends to eliminate state leakage.
  - The configuration points ``statefolder`` at the test's ``tmp_path``.
"""

import io
import sys
from pathlib import Path

import pytest

from imaputils.config.schema import AppConfig
from imaputils.utils.logging import JsonLogger

UNIT_DIR = Path(__file__).resolve().parent
if str(UNIT_DIR) not in sys.path:
    sys.path.insert(0, str(UNIT_DIR))

from fakes import DST_HOST, SRC_HOST, FakeImapBackend, FakeSieveClient



@pytest.fixture
def servers(monkeypatch: pytest.MonkeyPatch):
    """Map host names to fresh :class:`FakeImapBackend` instances.

    What:
      Returns a dictionary with one backend for the source host and one for
      the destination host.

    Why:
      Replication connects two sessions; tests seed and inspect each side
      independently.

    How:
      Replaces ``IMAPClient`` in :mod:`imaputils.imap.client` with a factory
      that returns the backend registered for the requested host.
    """

    backends = {SRC_HOST: FakeImapBackend(), DST_HOST: FakeImapBackend()}
    monkeypatch.setattr(
        "imaputils.imap.client.IMAPClient",
        lambda host, port=None, ssl=True: backends[host],
    )
    return backends


@pytest.fixture
def sieve_servers(monkeypatch: pytest.MonkeyPatch):
    """Map host names to fresh :class:`FakeSieveClient` instances."""

    clients = {SRC_HOST: FakeSieveClient(SRC_HOST), DST_HOST: FakeSieveClient(DST_HOST)}
    monkeypatch.setattr("imaputils.imap.sieve.Client", lambda host, port=4190: clients[host])
    return clients


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Return a configuration using admin proxy logins on both sides."""

    return AppConfig.model_validate(
        {
            "imap": {
                "src": {"server": SRC_HOST, "proxyusr": "admin", "proxypwd": "secret"},
                "dst": {"server": DST_HOST, "proxyusr": "admin", "proxypwd": "secret"},
            },
            "folders": {"junk": ["Spam"], "corpus": ["Corpus.*", "Spam"], "ignore": ["Trash"]},
            "statefolder": str(tmp_path / "state"),
        }
    )


@pytest.fixture
def log_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def logger(log_stream: io.StringIO) -> JsonLogger:
    return JsonLogger(stream=log_stream, component="test", verbose=True)
