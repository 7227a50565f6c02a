"""Pydantic models describing the imaputils configuration document."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..errors import ConfigurationError


SUPPORTED_MECHANISMS = ("LOGIN", "PLAIN", "CRAM-MD5", "DIGEST-MD5")
PASSWORD_FILE_MARKER = "<"


class ServerEndpoint(BaseModel):
    """Connection parameters for one side (source or destination) of a job."""

    model_config = ConfigDict(extra="forbid")

    server: str
    port: int = Field(default=143, gt=0, lt=65536)
    ssl: bool = False
    mech: str = "PLAIN"
    proxyusr: Optional[str] = None
    proxypwd: Optional[str] = None
    prefix: str = ""
    dont_delete: bool = False

    @field_validator("mech")
    @classmethod
    def _validate_mech(cls, value: str) -> str:
        mech = value.upper()
        if mech not in SUPPORTED_MECHANISMS:
            raise ValueError(
                f"unsupported authentication mechanism '{value}' "
                f"(expected one of {', '.join(SUPPORTED_MECHANISMS)})"
            )
        return mech


class ImapSettings(BaseModel):
    """Source and destination servers."""

    model_config = ConfigDict(extra="forbid")

    src: ServerEndpoint
    dst: Optional[ServerEndpoint] = None
    user_prefix: str = "user"


class SieveSettings(BaseModel):
    """ManageSieve replication toggle and port."""

    model_config = ConfigDict(extra="forbid")

    replicate: bool = False
    port: int = Field(default=4190, gt=0, lt=65536)


@dataclass(frozen=True)
class FolderFlagPolicy:
    """Flags forced onto / stripped from source messages before diffing."""

    add: FrozenSet[str] = frozenset()
    remove: FrozenSet[str] = frozenset()


class FolderSettings(BaseModel):
    """Folder selection patterns and per-folder flag policies."""

    model_config = ConfigDict(extra="forbid")

    ignore: List[str] = Field(default_factory=list)
    junk: List[str] = Field(default_factory=list)
    corpus: List[str] = Field(default_factory=list)
    flags: Dict[str, List[str]] = Field(default_factory=dict)

    @field_validator("flags")
    @classmethod
    def _validate_flags(cls, value: Dict[str, List[str]]) -> Dict[str, List[str]]:
        for key in value:
            if len(key) < 2 or key[0] not in "+-":
                raise ValueError(f"flag policy key '{key}' must look like '+Flag' or '-Flag'")
        return value

    def flag_policy(self, folder: str) -> FolderFlagPolicy:
        """Resolve the add/remove flag sets that apply to ``folder``.

        A policy entry applies when its folder list names ``folder`` exactly or
        contains the wildcard ``*``.
        """

        add: set[str] = set()
        remove: set[str] = set()
        for key, folders in self.flags.items():
            if folder not in folders and "*" not in folders:
                continue
            if key[0] == "+":
                add.add(key[1:])
            else:
                remove.add(key[1:])
        return FolderFlagPolicy(add=frozenset(add), remove=frozenset(remove))


class LimitSettings(BaseModel):
    """Batch sizes and the per-run training budget."""

    model_config = ConfigDict(extra="forbid")

    msgs_per_run: Optional[int] = Field(default=None, ge=0)
    batchsize: int = Field(default=8, gt=0)
    scan_batch_size: int = Field(default=1024, gt=0)
    add_batch_size: int = Field(default=64, gt=0)


class ReplicateSettings(BaseModel):
    """Replicator tuning knobs."""

    model_config = ConfigDict(extra="forbid")

    parallel_query: bool = False


class DspamSettings(BaseModel):
    """Location of the classifier binary and its opt-in directory."""

    model_config = ConfigDict(extra="forbid")

    command: str = "/usr/bin/dspam"
    opt_in: Optional[str] = None


class AppConfig(BaseModel):
    """Root configuration shared by the replicator and the trainer."""

    model_config = ConfigDict(extra="forbid")

    imap: ImapSettings
    sieve: SieveSettings = Field(default_factory=SieveSettings)
    folders: FolderSettings = Field(default_factory=FolderSettings)
    limits: LimitSettings = Field(default_factory=LimitSettings)
    replicate: ReplicateSettings = Field(default_factory=ReplicateSettings)
    statefolder: str = "/var/lib/imaputils"
    dspam: DspamSettings = Field(default_factory=DspamSettings)

    def endpoint(self, role: str) -> ServerEndpoint:
        """Return the endpoint for ``role`` (``"src"`` or ``"dst"``)."""

        if role == "src":
            return self.imap.src
        if role == "dst":
            if self.imap.dst is None:
                raise ConfigurationError("imap.dst is not configured")
            return self.imap.dst
        raise ConfigurationError(f"unknown role '{role}'")
