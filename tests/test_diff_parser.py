from __future__ import annotations

from hypothesis import given, strategies as st

from labpilot.diff_parser import (
    DiffRefs,
    MergeRequestDiff,
    count_line_changes,
    create_position,
    filter_lines_needing_review,
    get_reviewable_lines,
    map_diffs_to_file_changes,
    parse_diff_content,
    parse_merge_request_diffs,
    should_exclude_from_review,
)
from labpilot.models import FileChange


DIFF = """@@ -1,4 +1,5 @@
 import os
-def load(path):
+def load(path, *, strict=False):
+    if strict and not os.path.exists(path):
     return open(path).read()

\\ No newline at end of file
"""

REFS = DiffRefs(base_sha="base", head_sha="head", start_sha="start")


def test_parse_diff_content_numbers_lines() -> None:
    lines = parse_diff_content(DIFF)

    assert [line.line_type for line in lines] == ["context", "delete", "add", "add", "context", "context"]
    assert (lines[0].old_line, lines[0].new_line) == (1, 1)
    assert (lines[1].old_line, lines[1].new_line) == (2, None)
    assert (lines[2].old_line, lines[2].new_line) == (None, 2)
    assert (lines[3].old_line, lines[3].new_line) == (None, 3)
    assert (lines[4].old_line, lines[4].new_line) == (3, 4)
    assert lines[2].content == "def load(path, *, strict=False):"


def test_parse_diff_content_handles_multiple_hunks_and_headers() -> None:
    text = (
        "diff --git a/x.py b/x.py\n--- a/x.py\n+++ b/x.py\n"
        "@@ -10,2 +10,2 @@\n a\n-b\n+c\n"
        "@@ -20 +20,2 @@\n d\n+e\n"
    )

    lines = parse_diff_content(text)

    assert [(line.line_type, line.old_line, line.new_line) for line in lines] == [
        ("context", 10, 10),
        ("delete", 11, None),
        ("add", None, 11),
        ("context", 20, 20),
        ("add", None, 21),
    ]


@given(st.text())
def test_parse_diff_content_is_total(text: str) -> None:
    for line in parse_diff_content(text):
        assert line.line_type in ("add", "delete", "context")
        assert line.old_line is not None or line.new_line is not None


def test_parse_merge_request_diffs_excludes_generated_and_docs() -> None:
    parsed = parse_merge_request_diffs(
        [
            MergeRequestDiff(old_path="app.py", new_path="app.py", diff=DIFF),
            MergeRequestDiff(old_path="README.md", new_path="README.md", diff="@@ -1 +1 @@\n-a\n+b\n"),
            MergeRequestDiff(old_path="", new_path="api/v1.pb.go", diff="@@ -0,0 +1 @@\n+x\n", new_file=True),
            MergeRequestDiff(old_path="docs/guide.py", new_path="docs/guide.py", diff=""),
        ],
        REFS,
    )

    assert [parsed_file.new_path for parsed_file in parsed.files] == ["app.py"]
    assert parsed.base_sha == "base"
    assert parsed.head_sha == "head"
    assert parsed.start_sha == "start"


def test_should_exclude_from_review() -> None:
    assert should_exclude_from_review("openapi.yaml")
    assert should_exclude_from_review("svc/Swagger.JSON")
    assert should_exclude_from_review("notes.txt")
    assert not should_exclude_from_review("src/docs_helper.py")


def test_parsed_diff_find_file_is_rename_aware() -> None:
    parsed = parse_merge_request_diffs(
        [
            MergeRequestDiff(
                old_path="old_name.py",
                new_path="new_name.py",
                diff="@@ -1 +1 @@\n-a = 1\n+a = 2\n",
                renamed_file=True,
            )
        ],
        None,
    )

    by_new = parsed.find_file("new_name.py")
    by_old = parsed.find_file("old_name.py")
    assert by_new is not None and by_new is by_old
    assert by_new.is_renamed
    assert parsed.find_file("missing.py") is None
    assert parsed.base_sha == ""


def test_get_reviewable_lines_and_filter() -> None:
    parsed = parse_merge_request_diffs([MergeRequestDiff(old_path="app.py", new_path="app.py", diff=DIFF)], REFS)

    reviewable = get_reviewable_lines(parsed)

    assert [item.line_number for item in reviewable] == [1, 2, 3, 4, 5]
    assert all(item.line.line_type != "delete" for item in reviewable)

    filtered = filter_lines_needing_review(reviewable)

    assert [(item.line_number, item.review_reason) for item in filtered] == [
        (2, "Function definition"),
        (3, "Control flow logic"),
    ]


def test_filter_keeps_added_lines_without_reason() -> None:
    parsed = parse_merge_request_diffs(
        [
            MergeRequestDiff(
                old_path="a.py",
                new_path="a.py",
                diff="@@ -0,0 +1,3 @@\n+from x import y\n+total = 3\n+total += compute(y)\n",
            )
        ],
        REFS,
    )

    filtered = filter_lines_needing_review(get_reviewable_lines(parsed))

    assert [(item.line_number, item.review_reason) for item in filtered] == [(3, None)]


def test_create_position_for_add_and_context_lines() -> None:
    parsed = parse_merge_request_diffs([MergeRequestDiff(old_path="app.py", new_path="app.py", diff=DIFF)], REFS)
    parsed_file = parsed.files[0]
    added = parsed_file.lines[2]
    context = parsed_file.lines[4]

    add_position = create_position(parsed, parsed_file, added, 2)
    context_position = create_position(parsed, parsed_file, context, 4)

    assert add_position.to_payload() == {
        "position_type": "text",
        "base_sha": "base",
        "head_sha": "head",
        "start_sha": "start",
        "old_path": "app.py",
        "new_path": "app.py",
        "new_line": 2,
    }
    assert (context_position.old_line, context_position.new_line) == (3, 4)


def test_map_diffs_to_file_changes() -> None:
    changes = map_diffs_to_file_changes(
        [
            MergeRequestDiff(old_path="", new_path="new.py", diff="", new_file=True),
            MergeRequestDiff(old_path="gone.py", new_path="gone.py", diff="", deleted_file=True),
            MergeRequestDiff(old_path="a.py", new_path="b.py", diff="", renamed_file=True),
        ]
    )

    assert changes == (
        FileChange(path="new.py", change_type="created"),
        FileChange(path="gone.py", change_type="deleted"),
        FileChange(path="b.py", change_type="modified"),
    )


def test_count_line_changes() -> None:
    additions, deletions = count_line_changes(
        [
            MergeRequestDiff(old_path="app.py", new_path="app.py", diff=DIFF),
            MergeRequestDiff(old_path="b.py", new_path="b.py", diff="@@ -1,2 +0,0 @@\n-x\n-y\n"),
        ]
    )

    assert (additions, deletions) == (2, 3)
    assert count_line_changes([]) == (0, 0)
