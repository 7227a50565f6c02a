"""Copy Sieve filter scripts from one account to another."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from ..imap.sieve import SieveSession
from ..utils.logging import JsonLogger, get_logger


@dataclass
class SieveResult:
    copied: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    active: Optional[str] = None


class SieveReplicator:
    """Mirror the scripts of ``src`` on ``dst``.

    Every source script is uploaded and the active one is activated on the
    destination. Destination scripts without a source counterpart are deleted
    unless ``dont_delete`` is set.
    """

    def __init__(
        self,
        src: SieveSession,
        dst: SieveSession,
        *,
        dont_delete: bool = False,
        logger: Optional[JsonLogger] = None,
    ):
        self.src = src
        self.dst = dst
        self.dont_delete = dont_delete
        self._logger = logger or get_logger("imaputils.sieve")

    def replicate(self) -> SieveResult:
        result = SieveResult()
        for script in self.src.scripts():
            self._logger.info("sieve_copy", script=script.name, active=script.active)
            self.dst.put_script(script.name, self.src.get_script(script.name))
            if script.active:
                self.dst.set_active(script.name)
                result.active = script.name
            result.copied.append(script.name)
        if self.dont_delete:
            return result
        for script in self.dst.scripts():
            if script.name in result.copied:
                continue
            self._logger.info("sieve_remove", script=script.name)
            self.dst.delete_script(script.name)
            result.removed.append(script.name)
        return result
