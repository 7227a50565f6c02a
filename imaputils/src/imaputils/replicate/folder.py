"""Replication of a single folder from a source to a destination session.

What:
  Bring one destination folder in line with its source folder: create it if
  needed, mirror the subscription state, then delete, re-flag and append
  messages according to the :class:`~imaputils.core.diff.ReplicationPlan`.

Why:
  Folder replication is the unit of work that can fail independently (quota,
  odd folder names, broken messages). Keeping it self-contained lets the
  mailbox replicator isolate failures per folder and keeps every network call
  bounded by a batch size.

How:
  ``EXAMINE`` the source so nothing changes there, ``SELECT`` the destination
  (creating it when the select is refused), list both sides with
  :func:`~imaputils.core.messages.query_messages` (optionally in parallel on
  the two independent sessions), diff them and apply the plan in the order
  delete, update, add. Appends try ``MULTIAPPEND`` per batch and fall back to
  single ``APPEND`` commands. Both sessions are released with ``EXAMINE ""``
  afterwards.

Interfaces:
  :class:`FolderResult`, :class:`FolderReplicator`.

Invariants & Safety:
  - The source folder is never opened read-write.
  - Deletion stores ``\\Deleted`` and expunges exactly the same UIDs, so
    messages deleted by somebody else are left alone.
  - Appended messages carry the effective flags from the diff.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from imapclient.exceptions import IMAPClientError

from ..config.schema import AppConfig
from ..core.diff import ReplicationPlan, diff_messages
from ..core.messages import MessageRecord, QueryResult, query_messages
from ..errors import PartialApplyFailure
from ..imap.client import ImapSession
from ..utils.logging import JsonLogger, get_logger
from ..utils.progress import BatchProgress, batches


@dataclass
class FolderResult:
    """Outcome of replicating one folder."""

    src: str
    dst: str
    added: int = 0
    updated: int = 0
    removed: int = 0
    failed: int = 0
    duplicates: int = 0
    broken: int = 0
    skipped: int = 0
    created: bool = False
    error: Optional[str] = None
    error_class: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def counts(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("src", "dst", "error", "error_class"):
            data.pop(key)
        return data


class FolderReplicator:
    """Applies the replication plan for folder pairs between two sessions."""

    def __init__(
        self,
        src: ImapSession,
        dst: ImapSession,
        config: AppConfig,
        *,
        dont_delete: bool = False,
        logger: Optional[JsonLogger] = None,
    ):
        self.src = src
        self.dst = dst
        self.config = config
        self.dont_delete = dont_delete
        self._logger = logger or get_logger("imaputils.replicate")

    @property
    def scan_batch_size(self) -> int:
        return self.config.limits.scan_batch_size

    @property
    def add_batch_size(self) -> int:
        return self.config.limits.add_batch_size

    def replicate(self, folder_src: str, folder_dst: str) -> FolderResult:
        """Replicate ``folder_src`` into ``folder_dst``.

        Errors propagate to the caller; the sessions are released either way.
        """

        result = FolderResult(folder_src, folder_dst)
        try:
            self.src.examine(folder_src)
            result.created = self._open_destination(folder_dst)
            self._sync_subscription(folder_src, folder_dst)
            self.dst.select(folder_dst)

            src_query, dst_query = self._query_both(folder_src, folder_dst)
            result.broken = src_query.broken + dst_query.broken
            policy = self.config.folders.flag_policy(folder_dst)
            plan = diff_messages(
                src_query.records,
                dst_query.records,
                policy.add,
                policy.remove,
                logger=self._logger,
            )
            result.duplicates = plan.duplicates
            self._logger.info(
                "folder_plan",
                src=folder_src,
                dst=folder_dst,
                add=len(plan.added),
                update=sum(len(records) for records in plan.updated.values()),
                remove=len(plan.removed),
                dont_delete=self.dont_delete,
            )
            self._apply(plan, folder_dst, result)
        finally:
            self._release(self.src)
            self._release(self.dst)
        if result.failed:
            self._logger.warning("folder_incomplete", src=folder_src, dst=folder_dst, failed=result.failed)
        return result

    # Steps --------------------------------------------------------------
    def _open_destination(self, folder: str) -> bool:
        try:
            self.dst.select(folder)
            return False
        except IMAPClientError:
            self._logger.info("folder_create", dst=folder)
            self.dst.create_folder(folder)
            return True

    def _sync_subscription(self, folder_src: str, folder_dst: str) -> None:
        src_subscribed = any(info.name == folder_src for info in self.src.list_subscribed(folder_src))
        dst_subscribed = any(info.name == folder_dst for info in self.dst.list_subscribed(folder_dst))
        if src_subscribed and not dst_subscribed:
            self._logger.info("subscription_update", dst=folder_dst, subscribed=True)
            self.dst.subscribe(folder_dst)
        elif dst_subscribed and not src_subscribed:
            self._logger.info("subscription_update", dst=folder_dst, subscribed=False)
            self.dst.unsubscribe(folder_dst)

    def _query(self, session: ImapSession, tag: str) -> QueryResult:
        return query_messages(session, tag, batch_size=self.scan_batch_size, logger=self._logger)

    def _query_both(self, folder_src: str, folder_dst: str) -> tuple[QueryResult, QueryResult]:
        src_tag, dst_tag = f"src:{folder_src}", f"dst:{folder_dst}"
        if not self.config.replicate.parallel_query:
            return self._query(self.src, src_tag), self._query(self.dst, dst_tag)
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="imap-query") as pool:
            src_future = pool.submit(self._query, self.src, src_tag)
            dst_future = pool.submit(self._query, self.dst, dst_tag)
            return src_future.result(), dst_future.result()

    def _apply(self, plan: ReplicationPlan, folder_dst: str, result: FolderResult) -> None:
        if not self.dont_delete:
            result.removed = self._delete(plan.removed, result)
        result.updated = self._update(plan.updated, result)
        result.added = self._add(plan.added, folder_dst, result)

    def _delete(self, records: List[MessageRecord], result: FolderResult) -> int:
        done = 0
        progress = BatchProgress(self._logger, "delete", len(records), dst=result.dst)
        for batch in batches(records, self.scan_batch_size):
            uids = [record.uid for record in batch]
            try:
                self.dst.delete_messages(uids)
                done += len(uids)
            except IMAPClientError as exc:
                result.failed += len(uids)
                self._logger.warning("delete_failed", dst=result.dst, count=len(uids), error=str(exc))
            progress.advance(len(batch))
        return done

    def _update(self, updated: Dict[Any, List[MessageRecord]], result: FolderResult) -> int:
        done = 0
        for flags, records in updated.items():
            progress = BatchProgress(self._logger, "update", len(records), dst=result.dst, flags=flags)
            for batch in batches(records, self.scan_batch_size):
                uids = [record.uid for record in batch]
                try:
                    self.dst.set_flags(uids, flags)
                    done += len(uids)
                except IMAPClientError as exc:
                    result.failed += len(uids)
                    self._logger.warning("update_failed", dst=result.dst, count=len(uids), error=str(exc))
                progress.advance(len(batch))
        return done

    def _add(self, records: List[MessageRecord], folder_dst: str, result: FolderResult) -> int:
        done = 0
        progress = BatchProgress(self._logger, "add", len(records), dst=folder_dst)
        for batch in batches(records, self.add_batch_size):
            messages = self._fetch_bodies(batch, result)
            if messages:
                try:
                    self._append_batch(folder_dst, messages)
                    done += len(messages)
                except PartialApplyFailure as exc:
                    done += exc.total - exc.failed
                    result.failed += exc.failed
                    self._logger.warning(
                        "append_failed",
                        dst=folder_dst,
                        failed=exc.failed,
                        total=exc.total,
                    )
            progress.advance(len(batch))
        return done

    def _fetch_bodies(
        self, batch: Sequence[MessageRecord], result: FolderResult
    ) -> List[Tuple[int, Dict[str, Any]]]:
        """Return ``(source uid, append item)`` pairs for the records of ``batch``."""

        response = self.src.fetch([record.uid for record in batch], ["BODY.PEEK[]", "INTERNALDATE", "FLAGS"])
        messages = []
        for record in batch:
            data = response.get(record.uid) or {}
            body = data.get(b"BODY[]")
            if not body:
                result.skipped += 1
                self._logger.warning("message_without_body", src=result.src, uid=record.uid)
                continue
            messages.append(
                (record.uid, {"msg": body, "flags": sorted(record.flags), "date": data.get(b"INTERNALDATE")})
            )
        return messages

    def _append_batch(self, folder: str, messages: List[Tuple[int, Dict[str, Any]]]) -> None:
        """Append ``messages``, falling back to one ``APPEND`` per message.

        Raises:
          PartialApplyFailure: If some messages could not be appended.
        """

        try:
            self.dst.multiappend(folder, [message for _, message in messages])
            return
        except IMAPClientError as exc:
            self._logger.info("multiappend_failed", dst=folder, count=len(messages), error=str(exc))
        failed = 0
        for uid, message in messages:
            try:
                self.dst.append(folder, message["msg"], message["flags"], message["date"])
            except IMAPClientError as exc:
                failed += 1
                self._logger.warning(
                    "append_rejected",
                    dst=folder,
                    uid=uid,
                    size=len(message["msg"]),
                    error=str(exc),
                )
        if failed:
            raise PartialApplyFailure(
                f"{failed} of {len(messages)} messages could not be appended to {folder}",
                failed=failed,
                total=len(messages),
            )

    def _release(self, session: ImapSession) -> None:
        try:
            session.release()
        except OSError as exc:
            self._logger.warning("release_failed", user=session.user, error=str(exc))
