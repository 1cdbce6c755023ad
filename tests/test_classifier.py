import unittest

from bugbridge.services.classifier import NoteKind, classify_note, extract_new_title


class ClassifyNoteTests(unittest.TestCase):
    def test_non_system_notes_are_comments(self):
        self.assertEqual(classify_note(False, "hello"), (NoteKind.COMMENT, "hello"))
        # Even when the body looks like a system sentence.
        self.assertEqual(classify_note(False, "closed"), (NoteKind.COMMENT, "closed"))

    def test_system_note_table(self):
        cases = [
            ("closed", NoteKind.CLOSED),
            ("reopened", NoteKind.REOPENED),
            ("changed the description", NoteKind.DESCRIPTION_CHANGED),
            ("locked this issue", NoteKind.LOCKED),
            ("unlocked this issue", NoteKind.UNLOCKED),
            ("changed due date to March 3, 2024", NoteKind.DUE_DATE_CHANGED),
            ("removed due date", NoteKind.DUE_DATE_REMOVED),
            ("assigned to @alice", NoteKind.ASSIGNED),
            ("unassigned @alice", NoteKind.UNASSIGNED),
            ("changed milestone to %v1.0", NoteKind.MILESTONE_CHANGED),
            ("removed milestone", NoteKind.MILESTONE_REMOVED),
            ("mentioned in issue #4", NoteKind.MENTIONED_IN_ISSUE),
            ("mentioned in merge request !7", NoteKind.MENTIONED_IN_MERGE_REQUEST),
            ("added ~1 label", NoteKind.UNKNOWN),
            ("closed via merge request !3", NoteKind.UNKNOWN),
            ("", NoteKind.UNKNOWN),
        ]
        for body, expected in cases:
            with self.subTest(body=body):
                kind, _ = classify_note(True, body)
                self.assertEqual(kind, expected)

    def test_title_change_extracts_new_title(self):
        kind, title = classify_note(True, "changed title from **first** to **second**")
        self.assertEqual(kind, NoteKind.TITLE_CHANGED)
        self.assertEqual(title, "second")

    def test_title_change_without_separator_is_unknown(self):
        self.assertEqual(classify_note(True, "changed title from something odd"), (NoteKind.UNKNOWN, ""))


class ExtractNewTitleTests(unittest.TestCase):
    def test_diff_markers_are_removed(self):
        body = "changed title from **fourth issue** to **fourth issue{+ changed+}**"
        self.assertEqual(extract_new_title(body), "fourth issue changed")

        body = "changed title from **fourth issue{- changed-}** to **fourth issue**"
        self.assertEqual(extract_new_title(body), "fourth issue")

    def test_removed_parts_keep_their_text(self):
        body = "changed title from **a{- b-}** to **a{- c-}**"
        self.assertEqual(extract_new_title(body), "a c")

    def test_only_first_separator_splits(self):
        body = "changed title from **x** to **y** to **z**"
        self.assertEqual(extract_new_title(body), "y** to **z")


if __name__ == "__main__":
    unittest.main()
