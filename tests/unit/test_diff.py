"""Tests for the merge-join replication diff."""
from __future__ import annotations

import io
import json

from imaputils.core.diff import diff_messages
from imaputils.core.identity import MessageIdentity
from imaputils.core.messages import MessageRecord
from imaputils.utils.logging import JsonLogger


def rec(uid: int, key: str, *flags: str) -> MessageRecord:
    return MessageRecord(uid, MessageIdentity.from_id_str(key, description=key), frozenset(flags))


def test_identical_folders_produce_empty_plan() -> None:
    source = [rec(1, "a", "\\Seen"), rec(2, "b"), rec(3, "c", "\\Flagged")]
    dest = [rec(10, "c", "\\Flagged"), rec(11, "a", "\\Seen"), rec(12, "b")]

    plan = diff_messages(source, dest)

    assert plan.added == []
    assert plan.removed == []
    assert plan.updated == {}
    assert plan.empty


def test_extra_source_message_is_added_once_with_source_uid() -> None:
    plan = diff_messages([rec(1, "a"), rec(2, "b")], [rec(10, "a")])

    assert [record.uid for record in plan.added] == [2]
    assert plan.removed == []


def test_extra_destination_message_is_removed_once_with_destination_uid() -> None:
    plan = diff_messages([rec(1, "a")], [rec(10, "a"), rec(11, "b")])

    assert [record.uid for record in plan.removed] == [11]
    assert plan.added == []


def test_flag_difference_updates_destination_uid_to_source_flags() -> None:
    plan = diff_messages([rec(1, "a", "\\Seen")], [rec(10, "a")])

    assert plan.updated == {frozenset({"\\Seen"}): [rec(10, "a")]}


def test_policy_suppresses_spurious_update() -> None:
    source = [rec(1, "a", "\\Seen", "$Label")]
    dest = [rec(10, "a", "\\Seen", "Archived")]

    plan = diff_messages(source, dest, add_flags={"Archived"}, remove_flags={"$Label"})

    assert plan.updated == {}


def test_policy_shapes_update_and_added_flags() -> None:
    source = [rec(1, "a", "$Label"), rec(2, "b", "$Label")]
    dest = [rec(10, "a")]

    plan = diff_messages(source, dest, add_flags={"Archived"}, remove_flags={"$Label"})

    assert plan.updated == {frozenset({"Archived"}): [rec(10, "a")]}
    assert [record.flags for record in plan.added] == [frozenset({"Archived"})]
    assert plan.added[0].uid == 2


def test_duplicate_source_identities_keep_first_and_warn() -> None:
    stream = io.StringIO()
    logger = JsonLogger(stream=stream)
    source = [rec(1, "a"), rec(2, "a"), rec(3, "b"), rec(4, "b")]

    plan = diff_messages(source, [rec(10, "a")], logger=logger)

    assert plan.duplicates == 2
    assert [record.uid for record in plan.added] == [3]
    warnings = [json.loads(line) for line in stream.getvalue().splitlines()]
    assert {entry["msg"] for entry in warnings} == {"duplicate_message"}
    assert all(entry["lvl"] == "WARN" for entry in warnings)


def test_duplicate_warning_names_uids_and_hash_only() -> None:
    stream = io.StringIO()
    identity = MessageIdentity.from_id_str("dup", description="bob@example.org:Secret plans")
    source = [MessageRecord(7, identity, frozenset()), MessageRecord(9, identity, frozenset())]

    diff_messages(source, [], logger=JsonLogger(stream=stream))

    [entry] = [json.loads(line) for line in stream.getvalue().splitlines()]
    assert (entry["uid"], entry["first_uid"]) == (9, 7)
    assert entry["hash"] == f"{identity.hash:016x}"
    assert "Secret plans" not in stream.getvalue()


def test_duplicates_in_source_tail_are_skipped() -> None:
    plan = diff_messages([rec(1, "x"), rec(2, "x")], [])

    assert len(plan.added) == 1
    assert plan.duplicates == 1


def test_added_records_follow_identity_order() -> None:
    source = [rec(uid, f"m{uid}") for uid in range(50)]

    plan = diff_messages(source, [])

    identities = [record.identity for record in plan.added]
    assert identities == sorted(identities)
    assert len(identities) == 50


def test_remaining_destination_tail_is_removed() -> None:
    dest = [rec(10, "a"), rec(11, "b"), rec(12, "c")]

    plan = diff_messages([], dest)

    assert sorted(record.uid for record in plan.removed) == [10, 11, 12]
