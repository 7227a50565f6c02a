"""imaputils command-line interface.

What:
  Provide the Typer application behind the ``imaputils`` console script with
  the ``replicate``, ``replicate-one``, ``train`` and ``show-flags`` commands.

Why:
  The tools run from cron on mail servers. Every invocation must load one
  validated configuration, process each unit of work independently, and
  report failure through the exit status so the scheduler can alert.

How:
  Each command loads the configuration with
  :func:`imaputils.config.load_config`, builds the services with an explicit
  :class:`~imaputils.config.schema.AppConfig` and a JSON logger, and converts
  failures into ``typer.Exit(code=1)`` after logging the message and error
  class.

Interfaces:
  ``app`` (Typer application), ``replicate``, ``replicate_one``, ``train``,
  ``show_flags``, ``main``.

Invariants & Safety:
  - Exit codes follow shell expectations (``0`` success, ``1`` failure).
  - A failing or malformed user pair never stops the remaining pairs.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple

import typer
from imapclient.exceptions import IMAPClientError

from .config.loader import load_config
from .config.schema import AppConfig
from .errors import ImapUtilsError
from .imap.client import ImapSession
from .replicate.mailbox import MailboxReplicator
from .train.classifier import DspamClassifier
from .train.processor import ImapProcessor
from .utils.logging import JsonLogger, get_logger


app = typer.Typer(help="IMAP mailbox replication and spam-training scans")

LOGGER = logging.getLogger("imaputils.cli")


def _load(config_path: Path, app_name: str) -> AppConfig:
    try:
        return load_config(config_path, app=app_name)
    except ImapUtilsError as exc:
        LOGGER.error("config_load_failed: %s (%s)", exc, type(exc).__name__)
        raise typer.Exit(code=1) from exc


def _parse_pair(pair: str) -> Optional[Tuple[str, str]]:
    src_user, sep, dst_user = pair.partition(":")
    if not sep or not src_user or not dst_user or ":" in dst_user:
        return None
    return src_user, dst_user


def _replicate_pair(
    config: AppConfig,
    src_user: str,
    dst_user: str,
    logger: JsonLogger,
    *,
    src_password: Optional[str] = None,
    dst_password: Optional[str] = None,
) -> bool:
    """Replicate one pair; return whether it fully succeeded."""

    LOGGER.info("pair_start src=%s dst=%s", src_user, dst_user)
    try:
        result = MailboxReplicator(
            config,
            src_user,
            dst_user,
            src_password=src_password,
            dst_password=dst_password,
            logger=logger,
        ).run()
    except (ImapUtilsError, IMAPClientError, OSError) as exc:
        LOGGER.error("pair_failed src=%s dst=%s: %s (%s)", src_user, dst_user, exc, type(exc).__name__)
        return False
    if not result.ok:
        LOGGER.error(
            "pair_incomplete src=%s dst=%s failed_folders=%s",
            src_user,
            dst_user,
            ", ".join(folder.src for folder in result.failed_folders),
        )
        return False
    LOGGER.info("pair_done src=%s dst=%s folders=%d", src_user, dst_user, len(result.folders))
    return True


@app.command("replicate")
def replicate(
    config_path: Path = typer.Argument(..., help="Path to the YAML configuration"),
    pairs: List[str] = typer.Argument(..., help="One or more source_user:destination_user pairs"),
    *,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every skipped message"),
) -> None:
    """Replicate mailboxes (and Sieve scripts) for each user pair."""

    config = _load(config_path, "imap-replicator")
    logger = get_logger("imaputils.replicate", verbose=verbose)
    failed = False
    for pair in pairs:
        parsed = _parse_pair(pair)
        if parsed is None:
            LOGGER.error("invalid_pair %r: expected source_user:destination_user (ValueError)", pair)
            failed = True
            continue
        if not _replicate_pair(config, *parsed, logger):
            failed = True
    if failed:
        raise typer.Exit(code=1)


@app.command("replicate-one")
def replicate_one(
    config_path: Path = typer.Argument(..., help="Path to the YAML configuration"),
    src_user: str = typer.Argument(..., help="Source mailbox owner"),
    dst_user: str = typer.Argument(..., help="Destination mailbox owner"),
    *,
    src_password_file: Optional[Path] = typer.Option(None, help="File holding the source password"),
    dst_password_file: Optional[Path] = typer.Option(None, help="File holding the destination password"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every skipped message"),
) -> None:
    """Replicate a single user with per-user passwords instead of proxy logins."""

    config = _load(config_path, "imap-replicator")
    logger = get_logger("imaputils.replicate", verbose=verbose)
    ok = _replicate_pair(
        config,
        src_user,
        dst_user,
        logger,
        src_password=f"<{src_password_file}" if src_password_file else None,
        dst_password=f"<{dst_password_file}" if dst_password_file else None,
    )
    if not ok:
        raise typer.Exit(code=1)


@app.command("train")
def train(
    config_path: Path = typer.Argument(..., help="Path to the YAML configuration"),
    *,
    user: Optional[str] = typer.Option(None, help="Only scan this user"),
    limit: Optional[int] = typer.Option(None, min=0, help="Maximum messages per user and run"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log unchanged folders"),
) -> None:
    """Scan user mailboxes and feed reclassified messages to DSPAM."""

    config = _load(config_path, "imap-train")
    logger = get_logger("imaputils.train", verbose=verbose)
    classifier = DspamClassifier(config.dspam.command, config.dspam.opt_in, logger=logger)
    processor = ImapProcessor(
        config,
        classifier,
        valid_user=classifier.valid_user,
        limit=limit,
        logger=logger,
    )
    try:
        result = processor.process_user(user) if user else processor.process_users()
    except (ImapUtilsError, IMAPClientError, OSError) as exc:
        LOGGER.error("train_failed: %s (%s)", exc, type(exc).__name__)
        raise typer.Exit(code=1) from exc
    LOGGER.info(
        "train_done users=%d skipped=%d failed=%d",
        len(result.users),
        len(result.skipped),
        len(result.failed),
    )
    if not result.ok:
        raise typer.Exit(code=1)


@app.command("show-flags")
def show_flags(
    config_path: Path = typer.Argument(..., help="Path to the YAML configuration"),
    user: str = typer.Argument(..., help="Mailbox owner"),
    folder: str = typer.Argument(..., help="Folder to list"),
    *,
    password_file: Optional[Path] = typer.Option(None, help="File holding the password"),
) -> None:
    """Print subject and flags of every message in a source folder."""

    config = _load(config_path, "imap-replicator")
    endpoint = config.endpoint("src")
    password: Optional[str] = None
    if password_file is not None:
        password = f"<{password_file}"
    elif not endpoint.proxyusr:
        password = typer.prompt("Password", hide_input=True)
    logger = get_logger("imaputils.show-flags")
    try:
        with ImapSession.connect(endpoint, user, password, logger=logger, heartbeat=False) as session:
            session.examine(folder)
            uids = session.search("ALL")
            response = session.fetch(uids, ["BODY.PEEK[HEADER.FIELDS (SUBJECT)]", "FLAGS"])
            for uid in sorted(response):
                data = response[uid]
                header = b""
                for key, value in data.items():
                    if key.upper().startswith(b"BODY[HEADER.FIELDS") and value:
                        header = value
                unfolded = header.decode("utf-8", "replace").replace("\r", "").replace("\n", "")
                subject = unfolded.partition(":")[2].strip()
                flags = ", ".join(
                    flag.decode("utf-8", "replace") if isinstance(flag, bytes) else str(flag)
                    for flag in data.get(b"FLAGS", ())
                )
                typer.echo(f"{subject} ({flags})")
            session.release()
    except (ImapUtilsError, IMAPClientError, OSError) as exc:
        LOGGER.error("show_flags_failed: %s (%s)", exc, type(exc).__name__)
        raise typer.Exit(code=1) from exc


def main() -> None:
    """Execute the Typer application entry point."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
