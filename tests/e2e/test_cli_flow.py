"""End-to-end runs of the CLI against in-memory IMAP servers.

What:
  Drive ``imaputils replicate`` and ``imaputils train`` from a YAML file on
  disk through the real loader, sessions, replicators, checkpoint store and a
  stand-in ``dspam`` executable.

Why:
  Unit tests cover each layer with hand-built objects; these scenarios prove
  the layers agree on configuration keys, password files and state paths the
  way an operator's cron job uses them.

How:
  Write the configuration into ``tmp_path``, replace ``IMAPClient`` with
  :class:`FakeImapBackend` instances keyed by host, invoke the Typer app with
  :class:`typer.testing.CliRunner` and inspect server and state directory
  contents afterwards.

Invariants & Safety:
  - No network access; the only subprocess is the shell script standing in for
    ``dspam``.
"""

import stat

import pytest
from typer.testing import CliRunner

from fakes import DST_HOST, SRC_HOST, FakeImapBackend, make_message
from imaputils.cli import app


runner = CliRunner()


@pytest.fixture
def backends(monkeypatch):
    servers = {SRC_HOST: FakeImapBackend(), DST_HOST: FakeImapBackend(delimiter="/")}
    monkeypatch.setattr(
        "imaputils.imap.client.IMAPClient",
        lambda host, port=None, ssl=True: servers[host],
    )
    return servers


@pytest.fixture
def config_file(tmp_path):
    password = tmp_path / "admin.pw"
    password.write_text("secret\n")
    dspam = tmp_path / "dspam"
    dspam.write_text(f'#!/bin/sh\necho "$@" >> "{tmp_path / "dspam.log"}"\ncat > /dev/null\n')
    dspam.chmod(dspam.stat().st_mode | stat.S_IXUSR)
    opt_in = tmp_path / "opt-in"
    opt_in.mkdir()
    (opt_in / "alice.dspam").write_text("")
    path = tmp_path / "imaputils.cfg"
    path.write_text(
        f"""
imap:
  src:
    server: {SRC_HOST}
    mech: DIGEST-MD5
    proxyusr: admin
    proxypwd: <{password}
  dst:
    server: {DST_HOST}
    proxyusr: admin
    proxypwd: <{password}
folders:
  ignore: [Trash]
  junk: [Spam]
limits:
  batchsize: 2
statefolder: {tmp_path / "state"}
dspam:
  command: {dspam}
  opt_in: {opt_in}
"""
    )
    return path


def test_replicate_command_copies_mailbox(backends, config_file):
    src, dst = backends[SRC_HOST], backends[DST_HOST]
    src.add_folder("Projects", subscribed=True)
    src.add_folder("Projects.2024")
    src.add_folder("Trash")
    src.deliver("INBOX", make_message("welcome", message_id="<1@src>"), ["\\Seen"])
    src.deliver("Projects.2024", make_message("plan", message_id="<2@src>"), ["\\Flagged"])
    src.deliver("Trash", make_message("junk", message_id="<3@src>"))

    first = runner.invoke(app, ["replicate", str(config_file), "alice:alice"])
    appends = dst.calls["multiappend"]
    second = runner.invoke(app, ["replicate", str(config_file), "alice:alice"])

    assert first.exit_code == 0, first.output
    assert second.exit_code == 0, second.output
    assert dst.flags_of("INBOX") == {b"welcome": {"\\Seen"}}
    assert dst.flags_of("Projects/2024") == {b"plan": {"\\Flagged"}}
    assert "Trash" not in dst.folders
    assert "Projects" in dst.subscribed
    assert dst.calls["multiappend"] == appends
    assert ("DIGEST-MD5", "", None) in src.logins


def test_train_command_retrains_and_skips_unchanged_folders(backends, config_file, tmp_path):
    src = backends[SRC_HOST]
    src.add_folder("user.alice")
    src.add_folder("user.bob")
    src.add_folder("Spam")
    src.deliver("INBOX", make_message("rescued", signature="sig1"), ["$ClassifiedJunk", "Junk"])
    src.deliver("Spam", make_message("missed", signature="sig2"), ["$ClassifiedInnocent"])

    first = runner.invoke(app, ["train", str(config_file)])
    runner.invoke(app, ["train", str(config_file)])
    fetches = src.calls["fetch"]
    third = runner.invoke(app, ["train", str(config_file)])

    assert first.exit_code == 0, first.output
    assert third.exit_code == 0, third.output
    calls = (tmp_path / "dspam.log").read_text().splitlines()
    assert calls == [
        "--client --user alice --signature=sig1 --source=error --class=innocent",
        "--client --user alice --signature=sig2 --source=error --class=spam",
    ]
    assert src.flags_of("INBOX")[b"rescued"] == {"$ClassifiedInnocent"}
    assert src.flags_of("Spam")[b"missed"] == {"$ClassifiedJunk"}
    assert src.calls["fetch"] == fetches
    assert (tmp_path / "state" / "alice.INBOX").read_text().startswith("uidvalidity: 1\n")
