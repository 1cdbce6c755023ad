import logging
import unittest
from collections import Counter
from datetime import datetime, timezone

from fakes import BOB, FakeGitLab, drain, issue, label_event, make_session, make_settings, note

from bugbridge.models import Identity, OperationRecord
from bugbridge.services.bug_store import BugStore
from bugbridge.services.errors import MappingError, MissingIdentityTokenError, MultipleMatchError
from bugbridge.services.importer import GitLabImporter
from bugbridge.services.metadata import METAKEY_GITLAB_ID
from bugbridge.services.operations import Status
from bugbridge.services.results import ResultKind, SyncContext

logging.disable(logging.CRITICAL)


class ImporterTestCase(unittest.TestCase):
    def setUp(self):
        self.db = make_session()
        self.store = BugStore(self.db)
        self.settings = make_settings()
        self.fake = FakeGitLab()

    def tearDown(self):
        self.db.close()

    def run_import(self, since=None):
        importer = GitLabImporter(self.settings, self.store, client_factory=self.fake.client_factory)
        return drain(importer.import_all(SyncContext(), since))

    @staticmethod
    def kinds(results):
        return Counter(r.kind for r in results)

    def only_bug(self):
        ids = self.store.all_bug_ids()
        self.assertEqual(len(ids), 1)
        return self.store.resolve_bug(ids[0])

    def op_count(self):
        return self.db.query(OperationRecord).count()


class ImportTests(ImporterTestCase):
    def setUp(self):
        super().setUp()
        self.fake.issues = [issue(1, title="issue 1", description="Desc\r\n"), issue(2)]
        self.fake.notes = {
            1: [
                note(10, "hello\r\n", author=BOB),
                note(11, "closed", system=True),
                note(12, "changed title from **issue 1** to **renamed**", system=True),
                note(13, "assigned to @bob", system=True),
                note(14, "reopened", system=True, author=BOB),
            ]
        }
        self.fake.label_events = {
            1: [
                label_event(20, "add", "bug"),
                label_event(21, "add", "ui"),
                label_event(22, "remove", "bug", author=BOB),
            ]
        }

    def test_first_import_builds_bugs(self):
        results = self.run_import()
        kinds = self.kinds(results)

        self.assertEqual(kinds[ResultKind.BUG], 2)
        self.assertEqual(kinds[ResultKind.IDENTITY], 2)
        self.assertEqual(kinds[ResultKind.COMMENT], 1)
        self.assertEqual(kinds[ResultKind.STATUS_CHANGE], 2)
        self.assertEqual(kinds[ResultKind.TITLE_EDITION], 1)
        self.assertEqual(kinds[ResultKind.LABEL_CHANGE], 3)
        self.assertEqual(kinds[ResultKind.ERROR], 0)

        bugs = [self.store.resolve_bug(i).snapshot() for i in self.store.all_bug_ids()]
        first = next(s for s in bugs if s.get_create_metadata(METAKEY_GITLAB_ID) == "1")
        self.assertEqual(first.title, "renamed")
        self.assertEqual(first.status, Status.OPEN)
        self.assertEqual(first.labels, ["ui"])
        self.assertEqual([c.message for c in first.comments], ["Desc", "hello"])
        self.assertEqual(first.get_create_metadata("origin"), "gitlab")
        self.assertEqual(first.get_create_metadata("gitlab-project-id"), "group/proj")
        self.assertEqual(first.get_create_metadata("gitlab-base-url"), "https://gitlab.example")

    def test_operations_are_tagged_with_namespaced_ids(self):
        self.run_import()
        bug_ids = self.store.all_bug_ids()
        tags = set()
        for bug_id in bug_ids:
            for op in self.store.resolve_bug(bug_id).snapshot().operations:
                if op.get_metadata(METAKEY_GITLAB_ID):
                    tags.add(op.get_metadata(METAKEY_GITLAB_ID))
        self.assertEqual(
            tags,
            {"1", "2", "note/10", "note/11", "note/12", "note/14", "label-event/20", "label-event/21", "label-event/22"},
        )

    def test_import_is_idempotent(self):
        self.run_import()
        ops = self.op_count()
        identities = self.db.query(Identity).count()

        results = self.run_import()

        self.assertEqual(self.op_count(), ops)
        self.assertEqual(self.db.query(Identity).count(), identities)
        self.assertEqual(set(self.kinds(results)), {ResultKind.NOTHING})

    def test_identities_are_fetched_once(self):
        self.run_import()
        user_calls = [c for c in self.fake.calls if c[0] == "get_user"]
        self.assertEqual(sorted(user_calls), [("get_user", 1), ("get_user", 2)])

    def test_since_is_forwarded_as_updated_after(self):
        since = datetime(2024, 5, 1, tzinfo=timezone.utc)
        self.run_import(since)
        self.assertEqual(self.fake.last_updated_after, since)


class CommentEditionTests(ImporterTestCase):
    def setUp(self):
        super().setUp()
        self.fake.issues = [issue(1, description="v1")]
        self.fake.notes = {1: [note(10, "hello")]}

    def test_edited_comment_is_imported_once(self):
        self.run_import()
        self.fake.notes[1] = [note(10, "hello edited", updated_minutes=5)]

        results = self.run_import()
        self.assertEqual(self.kinds(results)[ResultKind.COMMENT_EDITION], 1)
        comments = self.only_bug().snapshot().comments
        self.assertEqual(comments[1].message, "hello edited")
        self.assertIsNotNone(comments[1].edited_unix_time)

        ops = self.op_count()
        results = self.run_import()
        self.assertEqual(self.kinds(results)[ResultKind.COMMENT_EDITION], 0)
        self.assertEqual(self.op_count(), ops)

    def test_description_change_edits_first_comment(self):
        self.run_import()
        self.fake.issues = [issue(1, description="v2")]
        self.fake.notes[1].append(note(11, "changed the description", system=True))

        results = self.run_import()
        self.assertEqual(self.kinds(results)[ResultKind.COMMENT_EDITION], 1)
        self.assertEqual(self.only_bug().snapshot().comments[0].message, "v2")

        results = self.run_import()
        self.assertEqual(self.kinds(results)[ResultKind.COMMENT_EDITION], 0)

    def test_description_note_matching_current_text_is_a_no_op(self):
        self.fake.notes[1].append(note(11, "changed the description", system=True))
        results = self.run_import()
        self.assertEqual(self.kinds(results)[ResultKind.COMMENT_EDITION], 0)


class ImportErrorTests(ImporterTestCase):
    def test_missing_default_token(self):
        self.settings = make_settings(tokens={"bob": "tok-bob"})
        importer = GitLabImporter(self.settings, self.store, client_factory=self.fake.client_factory)
        with self.assertRaises(MissingIdentityTokenError):
            importer.import_all(SyncContext())

    def test_importer_uses_default_login_token(self):
        self.settings = make_settings(tokens={"alice": "tok-alice", "bob": "tok-bob"})
        self.run_import()
        self.assertEqual(self.fake.tokens, ["tok-alice"])

    def test_unexpected_label_action_only_skips_that_issue(self):
        self.fake.issues = [issue(1), issue(2)]
        self.fake.label_events = {1: [label_event(20, "shuffle", "bug")]}

        results = self.run_import()

        errors = [r for r in results if r.kind == ResultKind.ERROR]
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0].error, MappingError)
        self.assertEqual(errors[0].entity_id, "1")
        self.assertEqual(len(self.store.all_bug_ids()), 2)

    def test_deleted_label_is_ignored(self):
        self.fake.issues = [issue(1)]
        self.fake.label_events = {1: [label_event(20, "add", None), label_event(21, "add", "ok")]}

        results = self.run_import()

        self.assertEqual(self.kinds(results)[ResultKind.ERROR], 0)
        self.assertEqual(self.only_bug().snapshot().labels, ["ok"])

    def test_listing_error_is_reported_once_and_ends_the_pass(self):
        self.fake.issues = [issue(1), issue(2)]
        self.fake.notes = {1: [note(10, "a")]}
        self.fake.fail["list_issue_notes"] = RuntimeError("notes down")

        results = self.run_import()

        errors = [r for r in results if r.kind == ResultKind.ERROR]
        self.assertEqual(len(errors), 1)
        self.assertEqual(str(errors[0].error), "notes down")
        self.assertIs(results[-1], errors[0])
        # Issue 1 was created before the failure; issue 2 never reached.
        self.assertEqual(len(self.store.all_bug_ids()), 1)

    def test_ambiguous_identity_aborts_the_pass(self):
        self.fake.issues = [issue(1), issue(2)]
        for name in ("a", "b"):
            self.store.new_identity(name, None, name, None, {"gitlab-id": "1"})

        results = self.run_import()

        errors = [r for r in results if r.kind == ResultKind.ERROR]
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0].error, MultipleMatchError)
        self.assertEqual(self.store.all_bug_ids(), [])

    def test_cancelled_context_imports_nothing(self):
        self.fake.issues = [issue(1)]
        ctx = SyncContext()
        ctx.cancel()
        importer = GitLabImporter(self.settings, self.store, client_factory=self.fake.client_factory)

        results = drain(importer.import_all(ctx))

        self.assertEqual(results, [])
        self.assertEqual(self.fake.calls, [])

    def test_cancel_during_an_issue_stops_without_error(self):
        self.fake.issues = [issue(1), issue(2)]
        self.fake.notes = {1: [note(10, "from bob", author=BOB)]}
        ctx = SyncContext()
        list_notes = self.fake.list_issue_notes

        def cancel_then_list(*args, **kwargs):
            ctx.cancel()
            return list_notes(*args, **kwargs)

        self.fake.list_issue_notes = cancel_then_list
        importer = GitLabImporter(self.settings, self.store, client_factory=self.fake.client_factory)

        results = drain(importer.import_all(ctx))

        self.assertEqual(self.kinds(results)[ResultKind.ERROR], 0)
        # Bob's identity would need one more remote call.
        self.assertNotIn(("get_user", BOB.id), self.fake.calls)
        # Issue 2 is never started.
        self.assertEqual(len(self.store.all_bug_ids()), 1)


if __name__ == "__main__":
    unittest.main()
