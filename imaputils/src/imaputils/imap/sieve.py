"""ManageSieve sessions built on :mod:`sievelib`.

What:
  Connect to a ManageSieve server with the same credentials and proxy
  semantics as the IMAP session of the same role, and expose script listing,
  download, upload, activation and deletion.

Why:
  Filter scripts are part of a mailbox from the user's point of view; a
  migration that leaves them behind silently changes mail delivery. Failures
  must read exactly like IMAP login failures so operators can tell which
  identity was refused.

How:
  :meth:`SieveSession.connect` resolves the password like
  :meth:`~imaputils.imap.client.ImapSession.connect`, then calls
  :meth:`sievelib.managesieve.Client.connect` with ``authz_id`` set to the
  mailbox owner whenever an administrator logs in on their behalf. Commands
  that report failure through a ``False``/``None`` return value are turned
  into :class:`~imaputils.errors.ServerError` carrying the server message.

Interfaces:
  :class:`SieveScript`, :class:`SieveSession`.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from sievelib.managesieve import Client, Error

from ..config.loader import read_password
from ..config.schema import ServerEndpoint
from ..errors import AuthenticationError, ConfigurationError, ServerError
from ..utils.logging import JsonLogger, get_logger
from .auth import failure_message


SIEVE_MECHANISMS = ("PLAIN", "LOGIN", "DIGEST-MD5")


@dataclass(frozen=True)
class SieveScript:
    name: str
    active: bool = False


class SieveSession:
    """Authenticated ManageSieve connection for one user."""

    def __init__(self, client: Client, user: str, *, logger: Optional[JsonLogger] = None):
        self.client = client
        self.user = user
        self._logger = logger or get_logger("imaputils.sieve")

    @classmethod
    def connect(
        cls,
        endpoint: ServerEndpoint,
        user: str,
        password: Optional[str] = None,
        *,
        port: int = 4190,
        logger: Optional[JsonLogger] = None,
    ) -> "SieveSession":
        """Open and authenticate a ManageSieve session for ``user``.

        Raises:
          ConfigurationError: If no password is available or the mechanism is
            not usable with ManageSieve.
          AuthenticationError: If the server refuses the login.
          ServerError: If the server cannot be reached.
        """

        log = logger or get_logger("imaputils.sieve")
        mech = endpoint.mech
        if mech not in SIEVE_MECHANISMS:
            raise ConfigurationError(f"{mech} is not supported for ManageSieve logins")
        proxy_user = endpoint.proxyusr
        secret = read_password(endpoint.proxypwd) if proxy_user else read_password(password)
        if secret is None:
            raise ConfigurationError(f"no password configured for {proxy_user or user} on {endpoint.server}")
        if proxy_user and mech == "LOGIN":
            raise ConfigurationError("LOGIN does not support authorizing as another user")

        client = Client(endpoint.server, port)
        try:
            connected = client.connect(
                proxy_user or user,
                secret,
                authz_id=user if proxy_user else "",
                authmech=mech,
            )
        except Error as exc:
            log.error(
                "sieve_connect_failed",
                server=endpoint.server,
                error=str(exc),
                error_class=type(exc).__name__,
            )
            raise ServerError(f"Failed to connect to {endpoint.server}: {exc}") from exc
        if not connected:
            raise AuthenticationError(
                failure_message(user, mech, proxy_user),
                user=user,
                mechanism=mech,
                proxy_user=proxy_user,
            )
        log.info("sieve_session_opened", server=endpoint.server, user=user, proxy_user=proxy_user)
        return cls(client, user, logger=log)

    def __enter__(self) -> "SieveSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        try:
            self.client.logout()
        except (Error, OSError) as exc:
            self._logger.warning("sieve_logout_failed", user=self.user, error=str(exc))

    def _failed(self, action: str) -> ServerError:
        message = self.client.errmsg
        if isinstance(message, bytes):
            message = message.decode("utf-8", "replace")
        return ServerError(f"Cannot {action}: {message}")

    def scripts(self) -> List[SieveScript]:
        active, others = self.client.listscripts()
        if active is None and others is None:
            raise self._failed("list scripts")
        result = [SieveScript(active, True)] if active else []
        result.extend(SieveScript(name) for name in others or ())
        return result

    def get_script(self, name: str) -> str:
        content = self.client.getscript(name)
        if content is None:
            raise self._failed(f"get script {name}")
        return content

    def put_script(self, name: str, content: str) -> None:
        if not self.client.putscript(name, content):
            raise self._failed(f"put script {name}")

    def set_active(self, name: str) -> None:
        if not self.client.setactive(name):
            raise self._failed(f"activate script {name}")

    def delete_script(self, name: str) -> None:
        if not self.client.deletescript(name):
            raise self._failed(f"delete script {name}")
