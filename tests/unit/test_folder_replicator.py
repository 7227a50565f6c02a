"""Tests for single-folder replication against in-memory servers."""
from __future__ import annotations

import json

import pytest

from fakes import DST_HOST, SRC_HOST, make_message
from imaputils.core.identity import identity_of
from imaputils.imap.client import ImapSession
from imaputils.replicate.folder import FolderReplicator


@pytest.fixture
def sessions(servers, app_config, logger):
    src = ImapSession.connect(app_config.endpoint("src"), "alice", logger=logger, heartbeat=False)
    dst = ImapSession.connect(app_config.endpoint("dst"), "alice", logger=logger, heartbeat=False)
    yield src, dst
    src.close()
    dst.close()


def _replicator(sessions, config, logger, **kwargs) -> FolderReplicator:
    src, dst = sessions
    return FolderReplicator(src, dst, config, logger=logger, **kwargs)


def _events(log_stream, name):
    return [entry for entry in map(json.loads, log_stream.getvalue().splitlines()) if entry["msg"] == name]


def test_missing_destination_folder_is_created_and_subscribed(servers, sessions, app_config, logger) -> None:
    src, dst = servers[SRC_HOST], servers[DST_HOST]
    src.add_folder("Archive", subscribed=True)
    src.deliver("Archive", make_message("one", message_id="<1@x>"), ["\\Seen"])
    src.deliver("Archive", make_message("two", message_id="<2@x>"), ["\\Flagged", "\\Recent"])

    result = _replicator(sessions, app_config, logger).replicate("Archive", "Archive")

    assert result.ok
    assert result.created
    assert result.added == 2
    assert "Archive" in dst.subscribed
    assert dst.flags_of("Archive") == {b"one": {"\\Seen"}, b"two": {"\\Flagged"}}
    assert src.calls["select"] == 0


def test_destination_converges_on_source(servers, sessions, app_config, logger) -> None:
    src, dst = servers[SRC_HOST], servers[DST_HOST]
    src.deliver("INBOX", make_message("same", message_id="<1@x>"), ["\\Seen"])
    src.deliver("INBOX", make_message("reflag", message_id="<2@x>"), ["\\Seen", "\\Answered"])
    src.deliver("INBOX", make_message("new", message_id="<3@x>"))
    dst.deliver("INBOX", make_message("same", message_id="<1@x>"), ["\\Seen"])
    dst.deliver("INBOX", make_message("reflag", message_id="<2@x>"), ["\\Seen"])
    dst.deliver("INBOX", make_message("stale", message_id="<4@x>"))

    result = _replicator(sessions, app_config, logger).replicate("INBOX", "INBOX")

    assert (result.added, result.updated, result.removed, result.failed) == (1, 1, 1, 0)
    assert dst.flags_of("INBOX") == {
        b"same": {"\\Seen"},
        b"reflag": {"\\Answered", "\\Seen"},
        b"new": set(),
    }
    assert not result.created


def test_second_run_is_a_no_op(servers, sessions, app_config, logger, log_stream) -> None:
    src, dst = servers[SRC_HOST], servers[DST_HOST]
    for number in range(5):
        src.deliver("INBOX", make_message(f"m{number}", message_id=f"<{number}@x>"), ["\\Seen"])
    replicator = _replicator(sessions, app_config, logger)
    replicator.replicate("INBOX", "INBOX")
    appends = dst.calls["multiappend"]
    stores = dst.calls["set_flags"] + dst.calls["add_flags"]

    result = replicator.replicate("INBOX", "INBOX")

    assert (result.added, result.updated, result.removed) == (0, 0, 0)
    assert dst.calls["multiappend"] == appends
    assert dst.calls["set_flags"] + dst.calls["add_flags"] == stores
    plans = _events(log_stream, "folder_plan")
    assert [(plan["add"], plan["update"], plan["remove"]) for plan in plans] == [(5, 0, 0), (0, 0, 0)]


def test_dont_delete_keeps_destination_extras(servers, sessions, app_config, logger) -> None:
    dst = servers[DST_HOST]
    dst.deliver("INBOX", make_message("local", message_id="<9@x>"))

    result = _replicator(sessions, app_config, logger, dont_delete=True).replicate("INBOX", "INBOX")

    assert result.removed == 0
    assert b"local" in dst.flags_of("INBOX")
    assert dst.calls["expunge"] == 0


def test_deletion_leaves_foreign_deleted_messages_alone(servers, sessions, app_config, logger) -> None:
    src, dst = servers[SRC_HOST], servers[DST_HOST]
    src.deliver("INBOX", make_message("theirs", message_id="<1@x>"), ["\\Deleted"])
    dst.deliver("INBOX", make_message("theirs", message_id="<1@x>"), ["\\Deleted"])
    dst.deliver("INBOX", make_message("extra", message_id="<2@x>"))

    result = _replicator(sessions, app_config, logger).replicate("INBOX", "INBOX")

    assert result.removed == 1
    assert dst.flags_of("INBOX") == {b"theirs": {"\\Deleted"}}


def test_subscription_removed_when_source_is_unsubscribed(servers, sessions, app_config, logger) -> None:
    src, dst = servers[SRC_HOST], servers[DST_HOST]
    src.add_folder("Lists")
    dst.add_folder("Lists", subscribed=True)

    _replicator(sessions, app_config, logger).replicate("Lists", "Lists")

    assert "Lists" not in dst.subscribed


def test_flag_policy_applies_to_appended_and_existing_messages(servers, sessions, app_config, logger) -> None:
    src, dst = servers[SRC_HOST], servers[DST_HOST]
    app_config.folders.flags = {"+Archived": ["INBOX"], "-$Label": ["*"]}
    src.deliver("INBOX", make_message("old", message_id="<1@x>"), ["$Label"])
    src.deliver("INBOX", make_message("fresh", message_id="<2@x>"), ["$Label", "\\Seen"])
    dst.deliver("INBOX", make_message("old", message_id="<1@x>"), ["Archived"])

    result = _replicator(sessions, app_config, logger).replicate("INBOX", "INBOX")

    assert result.updated == 0
    assert dst.flags_of("INBOX") == {b"old": {"Archived"}, b"fresh": {"Archived", "\\Seen"}}


def test_multiappend_failure_falls_back_to_single_appends(servers, sessions, app_config, logger, log_stream) -> None:
    src, dst = servers[SRC_HOST], servers[DST_HOST]
    dst.multiappend_fails = True
    rejected = make_message("too-big", message_id="<3@x>")
    dst.reject_append.add(rejected)
    src.deliver("INBOX", make_message("a", message_id="<1@x>"))
    src.deliver("INBOX", make_message("b", message_id="<2@x>"))
    src.deliver("INBOX", rejected)

    result = _replicator(sessions, app_config, logger).replicate("INBOX", "INBOX")

    assert result.ok
    assert (result.added, result.failed) == (2, 1)
    assert set(dst.flags_of("INBOX")) == {b"a", b"b"}
    assert dst.calls["append"] == 3
    [warning] = _events(log_stream, "append_failed")
    assert (warning["failed"], warning["total"]) == (1, 3)


def test_rejected_appends_are_logged_without_verbose(servers, sessions, app_config, logger, log_stream) -> None:
    src, dst = servers[SRC_HOST], servers[DST_HOST]
    logger.verbose = False
    dst.multiappend_fails = True
    first = make_message("huge", message_id="<1@x>")
    second = make_message("also huge", message_id="<2@x>")
    dst.reject_append.update({first, second})
    uids = {src.deliver("INBOX", first): first, src.deliver("INBOX", second): second}
    src.deliver("INBOX", make_message("fine", message_id="<3@x>"))

    result = _replicator(sessions, app_config, logger).replicate("INBOX", "INBOX")

    assert (result.added, result.failed) == (1, 2)
    rejected = _events(log_stream, "append_rejected")
    assert sorted(entry["uid"] for entry in rejected) == sorted(uids)
    for entry in rejected:
        assert entry["lvl"] == "WARN"
        assert entry["dst"] == "INBOX"
        assert entry["size"] == len(uids[entry["uid"]])
    [fallback] = _events(log_stream, "multiappend_failed")
    assert (fallback["lvl"], fallback["count"]) == ("INFO", 3)


def test_appends_are_batched_in_identity_order(servers, sessions, app_config, logger) -> None:
    src, dst = servers[SRC_HOST], servers[DST_HOST]
    for number in range(2500):
        src.deliver("INBOX", make_message(f"m{number}", message_id=f"<{number}@bulk>"))

    result = _replicator(sessions, app_config, logger).replicate("INBOX", "INBOX")

    assert result.added == 2500
    assert dst.calls["multiappend"] == 40
    appended = [
        identity_of(message.envelope)
        for _, message in sorted(dst.folders["INBOX"].messages.items())
    ]
    assert appended == sorted(appended)


def test_parallel_query_gives_same_plan(servers, sessions, app_config, logger) -> None:
    src, dst = servers[SRC_HOST], servers[DST_HOST]
    app_config.replicate.parallel_query = True
    src.deliver("INBOX", make_message("a", message_id="<1@x>"))
    dst.deliver("INBOX", make_message("b", message_id="<2@x>"))

    result = _replicator(sessions, app_config, logger).replicate("INBOX", "INBOX")

    assert (result.added, result.removed) == (1, 1)
    assert set(dst.flags_of("INBOX")) == {b"a"}


def test_messages_without_envelope_are_counted_as_broken(servers, sessions, app_config, logger, log_stream) -> None:
    src = servers[SRC_HOST]
    src.deliver("INBOX", make_message("fine", message_id="<1@x>"))
    src.deliver("INBOX", make_message("odd", message_id="<2@x>"), envelope=None)

    result = _replicator(sessions, app_config, logger).replicate("INBOX", "INBOX")

    assert (result.added, result.broken) == (1, 1)
    assert _events(log_stream, "message_without_envelope")


def test_duplicate_source_messages_are_appended_once(servers, sessions, app_config, logger) -> None:
    src, dst = servers[SRC_HOST], servers[DST_HOST]
    raw = make_message("dup", message_id="<1@x>")
    src.deliver("INBOX", raw)
    src.deliver("INBOX", raw)

    result = _replicator(sessions, app_config, logger).replicate("INBOX", "INBOX")

    assert (result.added, result.duplicates) == (1, 1)
    assert len(dst.folders["INBOX"].messages) == 1


def test_both_sessions_are_released(servers, sessions, app_config, logger) -> None:
    src_session, dst_session = sessions

    _replicator(sessions, app_config, logger).replicate("INBOX", "INBOX")

    assert src_session.folder is None
    assert dst_session.folder is None
