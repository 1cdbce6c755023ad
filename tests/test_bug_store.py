import json
import unittest
from unittest.mock import patch

from sqlalchemy import event
from fakes import make_session

from bugbridge.models import OperationRecord
from bugbridge.services.bug_store import BugCache, BugStore
from bugbridge.services.errors import (
    BugNotFoundError,
    IdentityNotFoundError,
    InvariantViolation,
    MultipleMatchError,
    NoMatchingOperationError,
)
from bugbridge.services.operations import SetMetadataOperation, Status, operation_from_payload


class BugStoreTests(unittest.TestCase):
    def setUp(self):
        self.db = make_session()
        self.store = BugStore(self.db)
        self.alice = self.store.new_identity("Alice", None, "alice", None, {"gitlab-login": "alice"})

    def tearDown(self):
        self.db.close()

    def test_new_bug_is_committed_with_its_create_operation(self):
        bug = self.store.new_bug(self.alice, 1700000000, "Title", "Body", {"origin": "gitlab"})

        self.assertFalse(bug.needs_commit())
        reloaded = self.store.resolve_bug(bug.id)
        snap = reloaded.snapshot()
        self.assertEqual(snap.title, "Title")
        self.assertEqual(snap.status, Status.OPEN)
        self.assertEqual(snap.author_id, self.alice.id)
        self.assertEqual([c.message for c in snap.comments], ["Body"])
        self.assertEqual(snap.get_create_metadata("origin"), "gitlab")

    def test_staged_operations_are_only_persisted_on_commit(self):
        bug = self.store.new_bug(self.alice, 1, "T", "B")
        bug.add_comment(self.alice, 2, "hello")
        bug.close(self.alice, 3)

        self.assertTrue(bug.needs_commit())
        self.assertEqual(len(self.store.resolve_bug(bug.id).snapshot().operations), 1)

        bug.commit()
        snap = self.store.resolve_bug(bug.id).snapshot()
        self.assertEqual(snap.status, Status.CLOSED)
        self.assertEqual([c.message for c in snap.comments], ["B", "hello"])
        seqs = [row.seq for row in self.db.query(OperationRecord).filter_by(bug_id=bug.id).order_by(OperationRecord.seq)]
        self.assertEqual(seqs, [0, 1, 2])

    def test_edit_comment_requires_an_existing_target(self):
        bug = self.store.new_bug(self.alice, 1, "T", "B")
        with self.assertRaises(NoMatchingOperationError):
            bug.edit_comment(self.alice, 2, "nope", "x")

    def test_set_title_records_previous_title(self):
        bug = self.store.new_bug(self.alice, 1, "Old", "B")
        op = bug.set_title(self.alice, 2, "New")

        self.assertEqual(op.was, "Old")
        self.assertEqual(bug.snapshot().title, "New")

    def test_labels_snapshot_is_sorted_and_applies_removals(self):
        bug = self.store.new_bug(self.alice, 1, "T", "B")
        bug.change_labels(self.alice, 2, added=["b", "a"])
        bug.change_labels(self.alice, 3, removed=["b"], added=["c"])

        self.assertEqual(bug.snapshot().labels, ["a", "c"])

    def test_set_metadata_first_value_wins_and_target_is_untouched(self):
        bug = self.store.new_bug(self.alice, 1, "T", "B")
        comment = bug.add_comment(self.alice, 2, "hello")
        bug.set_metadata(comment.id, {"gitlab-id": "note/1", "gitlab-url": None})
        bug.set_metadata(comment.id, {"gitlab-id": "note/2"})
        bug.commit()

        reloaded = self.store.resolve_bug(bug.id)
        self.assertEqual(reloaded.resolve_operation_with_metadata("gitlab-id", "note/1"), comment.id)
        with self.assertRaises(NoMatchingOperationError):
            reloaded.resolve_operation_with_metadata("gitlab-id", "note/2")

        # The stored comment row keeps its original metadata.
        row = self.db.query(OperationRecord).filter_by(id=comment.id).one()
        self.assertEqual(json.loads(row.op_metadata), {})
        snap = reloaded.snapshot()
        self.assertNotIn("gitlab-url", snap.operations[1].metadata)
        self.assertIsInstance(snap.operations[2], SetMetadataOperation)

    def test_snapshot_does_not_leak_metadata_into_loaded_operations(self):
        bug = self.store.new_bug(self.alice, 1, "T", "B")
        create_id = bug.snapshot().operations[0].id
        bug.set_metadata(create_id, {"k": "v"})

        self.assertEqual(bug.snapshot().get_create_metadata("k"), "v")
        self.assertEqual(bug._operations[0].metadata, {})

    def test_resolve_bug_matcher_sees_tags_added_later(self):
        first = self.store.new_bug(self.alice, 1, "A", "a", {"gitlab-id": "1"})
        second = self.store.new_bug(self.alice, 2, "B", "b")
        second.set_metadata(second.snapshot().operations[0].id, {"gitlab-id": "2"})
        second.commit()

        found = self.store.resolve_bug_matcher(lambda e: e.create_metadata.get("gitlab-id") == "2")
        self.assertEqual(found.id, second.id)
        found = self.store.resolve_bug_matcher(lambda e: e.create_metadata.get("gitlab-id") == "1")
        self.assertEqual(found.id, first.id)

    def test_resolve_bug_matcher_none_or_several(self):
        self.store.new_bug(self.alice, 1, "A", "a", {"origin": "gitlab"})
        self.store.new_bug(self.alice, 2, "B", "b", {"origin": "gitlab"})

        with self.assertRaises(BugNotFoundError):
            self.store.resolve_bug_matcher(lambda e: False)
        with self.assertRaises(MultipleMatchError):
            self.store.resolve_bug_matcher(lambda e: e.create_metadata.get("origin") == "gitlab")

    def test_resolve_bug_matcher_query_count_does_not_grow_with_the_store(self):
        engine = self.db.get_bind()
        statements = []

        def count(conn, cursor, statement, *args):
            statements.append(statement)

        def queries_for_one_lookup():
            statements.clear()
            event.listen(engine, "before_cursor_execute", count)
            try:
                with self.assertRaises(BugNotFoundError):
                    self.store.resolve_bug_matcher(lambda e: False)
            finally:
                event.remove(engine, "before_cursor_execute", count)
            return len(statements)

        self.store.new_bug(self.alice, 1, "A", "a")
        small = queries_for_one_lookup()
        for i in range(10):
            bug = self.store.new_bug(self.alice, i, f"T{i}", "B")
            bug.set_metadata(bug.snapshot().operations[0].id, {"gitlab-id": str(i)})
            bug.commit()

        self.assertEqual(queries_for_one_lookup(), small)

    def test_metadata_lookup_uses_the_index(self):
        bug = self.store.new_bug(self.alice, 1, "T", "B")
        first = bug.add_comment(self.alice, 2, "one", {"gitlab-id": "note/1"})
        second = bug.add_comment(self.alice, 3, "two")
        # Tagging the first comment again with another value never replaces its tag.
        bug.set_metadata(first.id, {"gitlab-id": "note/9"})
        bug.set_metadata(second.id, {"gitlab-id": "note/2"})

        with patch.object(BugCache, "snapshot", side_effect=AssertionError("snapshot rebuilt")):
            self.assertEqual(bug.resolve_operation_with_metadata("gitlab-id", "note/1"), first.id)
            self.assertEqual(bug.resolve_operation_with_metadata("gitlab-id", "note/2"), second.id)
            with self.assertRaises(NoMatchingOperationError):
                bug.resolve_operation_with_metadata("gitlab-id", "note/9")

        bug.commit()
        reloaded = self.store.resolve_bug(bug.id)
        self.assertEqual(reloaded.resolve_operation_with_metadata("gitlab-id", "note/2"), second.id)

    def test_metadata_lookup_returns_the_earliest_operation(self):
        bug = self.store.new_bug(self.alice, 1, "T", "B")
        first = bug.add_comment(self.alice, 2, "one")
        bug.add_comment(self.alice, 3, "two", {"k": "v"})
        bug.set_metadata(first.id, {"k": "v"})

        self.assertEqual(bug.resolve_operation_with_metadata("k", "v"), first.id)

    def test_resolve_unknown_bug(self):
        with self.assertRaises(BugNotFoundError):
            self.store.resolve_bug("missing")

    def test_all_bug_ids(self):
        ids = [self.store.new_bug(self.alice, i, f"T{i}", "B").id for i in range(3)]
        self.assertCountEqual(self.store.all_bug_ids(), ids)

    def test_identity_lookup_by_immutable_metadata(self):
        found = self.store.resolve_identity_immutable_metadata("gitlab-login", "alice")
        self.assertEqual(found.id, self.alice.id)
        self.assertEqual(found.get_metadata("gitlab-login"), "alice")

        with self.assertRaises(IdentityNotFoundError):
            self.store.resolve_identity_immutable_metadata("gitlab-login", "nobody")

        self.store.new_identity("Alice 2", None, "alice2", None, {"gitlab-login": "alice"})
        with self.assertRaises(MultipleMatchError):
            self.store.resolve_identity_immutable_metadata("gitlab-login", "alice")


class OperationPayloadTests(unittest.TestCase):
    def test_unknown_kind_is_an_invariant_violation(self):
        with self.assertRaises(InvariantViolation):
            operation_from_payload("teleport", op_id="x", author_id="a", unix_time=0, payload={}, metadata={})

    def test_snapshot_without_create_operation(self):
        from bugbridge.services.operations import AddCommentOperation, Snapshot

        snap = Snapshot.build("bug", [AddCommentOperation(author_id="a", unix_time=0, message="m")])
        with self.assertRaises(InvariantViolation):
            snap.create_operation


if __name__ == "__main__":
    unittest.main()
