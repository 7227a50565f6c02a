"""SASL authentication for IMAP sessions, including admin proxy logins.

What:
  Authenticate an :class:`imapclient.IMAPClient` with ``LOGIN``, ``PLAIN``,
  ``CRAM-MD5`` or ``DIGEST-MD5``. ``PLAIN`` and ``DIGEST-MD5`` can log in as
  an administrator (the authentication identity) while acting as a mailbox
  owner (the authorization identity).

Why:
  Replication runs for hundreds of users with a single admin credential. The
  mechanisms that carry an authorization identity make that possible without
  knowing every user's password; failures have to say which of the two
  identities was refused.

How:
  ``LOGIN`` and ``PLAIN`` use the helpers ``imapclient`` already ships.
  ``CRAM-MD5`` and ``DIGEST-MD5`` hand a challenge/response callable to
  :meth:`imapclient.IMAPClient.sasl_login`. :class:`DigestMD5` computes the
  RFC 2831 response and answers the trailing ``rspauth`` challenge with an
  empty response.

Interfaces:
  :func:`authenticate`, :class:`CramMD5`, :class:`DigestMD5`,
  :func:`parse_challenge`.

Invariants & Safety:
  - Passwords never appear in exceptions or log entries.
  - Mechanisms that cannot carry an authorization identity refuse a proxy
    user with :class:`~imaputils.errors.ConfigurationError` before contacting
    the server.
"""
from __future__ import annotations

import hashlib
import hmac
import re
import time
from typing import Any, Callable, Dict, Optional

from imapclient.exceptions import IMAPClientError

from ..errors import AuthenticationError, ConfigurationError


_CHALLENGE_ITEM = re.compile(r'\s*([A-Za-z][\w-]*)\s*=\s*("(?:[^"\\]|\\.)*"|[^,]*)\s*(?:,|$)')


def parse_challenge(challenge: bytes | str) -> Dict[str, str]:
    """Split a DIGEST-MD5 challenge into its ``key=value`` directives."""

    text = challenge.decode("utf-8") if isinstance(challenge, bytes) else challenge
    result: Dict[str, str] = {}
    for match in _CHALLENGE_ITEM.finditer(text):
        key, value = match.group(1).lower(), match.group(2).strip()
        if value.startswith('"') and value.endswith('"') and len(value) >= 2:
            value = re.sub(r"\\(.)", r"\1", value[1:-1])
        result[key] = value
    return result


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


class CramMD5:
    """Challenge/response callable for ``CRAM-MD5`` (RFC 2195)."""

    def __init__(self, user: str, password: str):
        self.user = user
        self.password = password

    def __call__(self, challenge: bytes) -> bytes:
        digest = hmac.new(self.password.encode("utf-8"), challenge, hashlib.md5).hexdigest()
        return f"{self.user} {digest}".encode("utf-8")


class DigestMD5:
    """Challenge/response callable for ``DIGEST-MD5`` (RFC 2831, ``qop=auth``).

    ``authz_user`` is the identity to act as; ``None`` authenticates as
    ``auth_user`` only. ``clock`` supplies the value the client nonce is
    derived from.
    """

    NONCE_COUNT = "00000001"

    def __init__(
        self,
        auth_user: str,
        password: str,
        *,
        authz_user: Optional[str] = None,
        host: str = "",
        clock: Callable[[], float] = time.time,
    ):
        self.auth_user = auth_user
        self.password = password
        self.authz_user = authz_user
        self.host = host
        self._clock = clock
        self._step = 0

    def cnonce(self) -> str:
        return hashlib.md5(repr(self._clock()).encode("ascii")).hexdigest()

    def __call__(self, challenge: bytes) -> bytes:
        self._step += 1
        directives = parse_challenge(challenge)
        if self._step > 1 or "rspauth" in directives:
            return b""
        return self.respond(directives).encode("utf-8")

    def respond(self, directives: Dict[str, str]) -> str:
        """Build the digest-response for a parsed first challenge.

        Raises:
          ConfigurationError: If the challenge lacks ``nonce``, ``qop`` or
          ``algorithm``, uses an algorithm other than ``md5-sess`` or does not
          offer ``qop=auth``.
        """

        for required in ("nonce", "qop", "algorithm"):
            if required not in directives:
                raise ConfigurationError(f"DIGEST-MD5 challenge lacks '{required}'")
        if directives["algorithm"].lower() != "md5-sess":
            raise ConfigurationError(f"unsupported DIGEST-MD5 algorithm '{directives['algorithm']}'")
        qops = {item.strip().lower() for item in directives["qop"].split(",")}
        if "auth" not in qops:
            raise ConfigurationError(f"unsupported DIGEST-MD5 qop '{directives['qop']}'")

        realm = directives.get("realm", "")
        nonce = directives["nonce"]
        cnonce = self.cnonce()
        uri = f"imap/{self.host}"
        secret = hashlib.md5(f"{self.auth_user}:{realm}:{self.password}".encode("utf-8")).digest()
        a1 = secret + f":{nonce}:{cnonce}".encode("utf-8")
        if self.authz_user:
            a1 += f":{self.authz_user}".encode("utf-8")
        a2 = f"AUTHENTICATE:{uri}".encode("utf-8")
        response = hashlib.md5(
            ":".join(
                (
                    hashlib.md5(a1).hexdigest(),
                    nonce,
                    self.NONCE_COUNT,
                    cnonce,
                    "auth",
                    hashlib.md5(a2).hexdigest(),
                )
            ).encode("utf-8")
        ).hexdigest()

        fields = [
            f"username={_quote(self.auth_user)}",
            f"realm={_quote(realm)}",
            f"nonce={_quote(nonce)}",
            f"cnonce={_quote(cnonce)}",
            f"nc={self.NONCE_COUNT}",
            "qop=auth",
            f"digest-uri={_quote(uri)}",
            f"response={response}",
            "charset=utf-8",
        ]
        if self.authz_user:
            fields.append(f"authzid={_quote(self.authz_user)}")
        return ",".join(fields)


def failure_message(user: str, mechanism: str, proxy_user: Optional[str]) -> str:
    if proxy_user:
        return f"Failed to authorize as {user} by authenticating as {proxy_user} via {mechanism}"
    return f"Failed to authenticate as {user} via {mechanism}"


def authenticate(
    client: Any,
    mechanism: str,
    user: str,
    password: str,
    *,
    proxy_user: Optional[str] = None,
    host: str = "",
) -> None:
    """Log ``client`` in as ``user``.

    Args:
      client: Connected ``IMAPClient``.
      mechanism: One of ``LOGIN``, ``PLAIN``, ``CRAM-MD5``, ``DIGEST-MD5``.
      user: Mailbox owner to act as.
      password: Password of ``proxy_user`` when given, else of ``user``.
      proxy_user: Administrator identity to authenticate as.
      host: Server name used in the DIGEST-MD5 ``digest-uri``.

    Raises:
      ConfigurationError: For unknown mechanisms or a proxy user combined with
        a mechanism that cannot carry one.
      AuthenticationError: If the server rejects the credentials.
    """

    mech = mechanism.upper()
    if proxy_user and mech in ("LOGIN", "CRAM-MD5"):
        raise ConfigurationError(f"{mech} does not support authorizing as another user")
    try:
        if mech == "LOGIN":
            client.login(user, password)
        elif mech == "PLAIN":
            if proxy_user:
                client.plain_login(proxy_user, password, authorization_identity=user)
            else:
                client.plain_login(user, password)
        elif mech == "CRAM-MD5":
            client.sasl_login("CRAM-MD5", CramMD5(user, password))
        elif mech == "DIGEST-MD5":
            if proxy_user:
                digest = DigestMD5(proxy_user, password, authz_user=user, host=host)
            else:
                digest = DigestMD5(user, password, host=host)
            client.sasl_login("DIGEST-MD5", digest)
        else:
            raise ConfigurationError(f"unsupported authentication mechanism '{mechanism}'")
    except IMAPClientError as exc:
        raise AuthenticationError(
            failure_message(user, mech, proxy_user),
            user=user,
            mechanism=mech,
            proxy_user=proxy_user,
        ) from exc
