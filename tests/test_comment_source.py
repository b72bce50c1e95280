import json
from datetime import datetime, timezone

import pytest

from comment_source import (
    AuthorInfo,
    build_events,
    collect_authors,
    comment_text,
    load_comment_dump,
    parse_comment_record,
    parse_comment_records,
    parse_timestamp,
)


def raw_comment(cid, user, created_at, text=None, gift=None, name=None, avatar=None, hide=0):
    comment = {"id": cid, "user_id": user, "created_at": created_at, "type": 1, "is_hide": hide, "content": {}}
    if text is not None:
        comment["content"]["text"] = text
    if gift is not None:
        comment["content"]["gift"] = gift
    if name or avatar:
        comment["userInfo"] = {"userName": name, "profileImageUrl": avatar}
    return comment


class TestLoadCommentDump:
    def test_json_array(self, tmp_path):
        path = tmp_path / "c.json"
        path.write_text(json.dumps([raw_comment("1", "u1", "2024-05-01T12:00:00Z", "hi")]), encoding="utf-8")
        assert len(load_comment_dump(path)) == 1

    def test_object_with_comments(self, tmp_path):
        path = tmp_path / "c.json"
        path.write_text(json.dumps({"liveId": "x", "comments": [{"data": {}}, {"data": {}}]}), encoding="utf-8")
        assert len(load_comment_dump(path)) == 2

    def test_json_lines(self, tmp_path):
        path = tmp_path / "c.jsonl"
        lines = [json.dumps(raw_comment(str(i), "u1", "2024-05-01T12:00:00Z", "hi")) for i in range(3)]
        path.write_text("\n".join(lines) + "\n\n", encoding="utf-8")
        assert len(load_comment_dump(path)) == 3

    def test_bad_json_line(self, tmp_path):
        path = tmp_path / "c.jsonl"
        path.write_text('{"id": 1}\nnot json\n', encoding="utf-8")
        with pytest.raises(ValueError):
            load_comment_dump(path)

    def test_empty_file(self, tmp_path):
        path = tmp_path / "c.json"
        path.write_text("", encoding="utf-8")
        assert load_comment_dump(path) == []


class TestParseCommentRecord:
    def test_full_record(self):
        record = parse_comment_record(
            raw_comment("9", "u1", "2024-05-01T12:00:00.250Z", "hello", name="Alice", avatar="https://cdn/a.jpg")
        )
        assert record.user_id == "u1"
        assert record.hidden is False
        assert record.text == "hello"
        assert record.user_name == "Alice"
        assert record.profile_image_url == "https://cdn/a.jpg"
        assert record.created_at == datetime(2024, 5, 1, 12, 0, 0, 250000, tzinfo=timezone.utc)

    def test_wrapped_record(self):
        record = parse_comment_record({"source": "vod_segment", "data": raw_comment("1", "u2", "2024-05-01T12:00:00Z", "x")})
        assert record.user_id == "u2"

    def test_missing_user(self):
        with pytest.raises(ValueError):
            parse_comment_record({"id": "1", "created_at": "2024-05-01T12:00:00Z"})

    def test_missing_time(self):
        with pytest.raises(ValueError):
            parse_comment_record({"id": "1", "user_id": "u1"})

    def test_bad_records_are_skipped(self):
        logs = []
        records = parse_comment_records(
            [raw_comment("1", "u1", "2024-05-01T12:00:00Z", "ok"), {"id": "2"}, "junk"],
            log_fn=logs.append,
        )
        assert [r.text for r in records] == ["ok"]
        assert logs[-1] == "Skipped 2 malformed comment(s)"


class TestTimestamps:
    def test_epoch_milliseconds_and_seconds_agree(self):
        assert parse_timestamp(1714564800000) == parse_timestamp(1714564800)

    def test_naive_iso_is_utc(self):
        assert parse_timestamp("2024-05-01T12:00:00") == datetime(2024, 5, 1, 12, tzinfo=timezone.utc)

    def test_offset_iso(self):
        assert parse_timestamp("2024-05-01T21:00:00+09:00") == datetime(2024, 5, 1, 12, tzinfo=timezone.utc)


class TestBuildEvents:
    def test_sorted_and_relative(self):
        records = [
            parse_comment_record(raw_comment("3", "u3", "2024-05-01T12:00:05Z", "third")),
            parse_comment_record(raw_comment("1", "u1", "2024-05-01T12:00:00Z", "first")),
            parse_comment_record(raw_comment("2", "u2", "2024-05-01T12:00:00.100Z", "second")),
        ]
        events = build_events(records)
        assert [(e.author_id, e.text, e.timestamp_ms) for e in events] == [
            ("u1", "first", 0),
            ("u2", "second", 100),
            ("u3", "third", 5000),
        ]

    def test_ties_keep_dump_order(self):
        records = [
            parse_comment_record(raw_comment(str(i), f"u{i}", "2024-05-01T12:00:00Z", f"c{i}")) for i in range(4)
        ]
        assert [e.text for e in build_events(records)] == ["c0", "c1", "c2", "c3"]

    def test_gift_and_empty_comments(self):
        gift = parse_comment_record(raw_comment("1", "u1", "2024-05-01T12:00:00Z", gift=5))
        empty = parse_comment_record(raw_comment("2", "u1", "2024-05-01T12:00:01Z", text="   "))
        assert comment_text(gift) == "[Gift: 5]"
        assert comment_text(empty) == ""
        assert [e.text for e in build_events([gift, empty])] == ["[Gift: 5]"]

    def test_hidden_comments_dropped(self):
        records = [
            parse_comment_record(raw_comment("1", "u1", "2024-05-01T12:00:00Z", "moderated", hide=1)),
            parse_comment_record(raw_comment("2", "u2", "2024-05-01T12:00:02Z", "shown")),
        ]
        assert records[0].hidden is True
        events = build_events(records)
        assert [(e.text, e.timestamp_ms) for e in events] == [("shown", 0)]

    def test_empty(self):
        assert build_events([]) == []


class TestCollectAuthors:
    def test_keeps_known_metadata(self):
        records = [
            parse_comment_record(raw_comment("1", "u1", "2024-05-01T12:00:00Z", "a", name="Alice", avatar="https://cdn/a.jpg")),
            parse_comment_record(raw_comment("2", "u1", "2024-05-01T12:00:01Z", "b")),
            parse_comment_record(raw_comment("3", "u2", "2024-05-01T12:00:02Z", "c")),
        ]
        authors = collect_authors(records)
        assert authors["u1"] == AuthorInfo("u1", "Alice", "https://cdn/a.jpg")
        assert authors["u2"] == AuthorInfo("u2", None, None)

    def test_hidden_only_authors_left_out(self):
        records = [
            parse_comment_record(raw_comment("1", "u1", "2024-05-01T12:00:00Z", "x", avatar="https://cdn/a.jpg", hide=1)),
            parse_comment_record(raw_comment("2", "u2", "2024-05-01T12:00:01Z", "y")),
        ]
        assert list(collect_authors(records)) == ["u2"]
