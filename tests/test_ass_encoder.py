import base64

import pytest

from ass_encoder import AssEncoder, ass_colour, escape_text, format_ass_time
from conftest import make_png
from danmaku_config import DanmakuConfig
from danmaku_errors import EncodingError
from lane_scheduler import CommentEvent, LaneAssignment


def assignment(text="hello", lane=0, start=0, end=8000, author="u1"):
    return LaneAssignment(CommentEvent(author, text, start), lane, start, end)


@pytest.fixture
def encoder():
    return AssEncoder(DanmakuConfig({"title": "Test Live"}))


class TestTimeFormat:
    @pytest.mark.parametrize(
        "ms, expected",
        [
            (0, "0:00:00.00"),
            (61005, "0:01:01.00"),
            (3600000, "1:00:00.00"),
            (1239, "0:00:01.23"),
            (36000000 * 3 + 59999, "30:00:59.99"),
        ],
    )
    def test_format(self, ms, expected):
        assert format_ass_time(ms) == expected

    def test_negative_rejected(self):
        with pytest.raises(EncodingError):
            format_ass_time(-1)


class TestHelpers:
    def test_colour_is_bgr(self):
        assert ass_colour("#112233") == "&H00332211"
        assert ass_colour("#000000", alpha=0x80) == "&H80000000"

    def test_bad_colour(self):
        with pytest.raises(EncodingError):
            ass_colour("#12")

    def test_escape_braces_and_newlines(self):
        assert escape_text("a{b}\nc") == "a｛b｝\\Nc"

    def test_escape_breaks_override_sequences(self):
        assert escape_text("x\\Ny") == "x\\\u200bNy"


class TestAssEncoder:
    def test_sections_in_order(self, encoder):
        doc = encoder.encode([assignment()])
        script = doc.index("[Script Info]")
        styles = doc.index("[V4+ Styles]")
        events = doc.index("[Events]")
        assert script < styles < events
        assert "[Graphics]" not in doc
        assert "Title: Test Live" in doc
        assert "PlayResX: 1920" in doc
        assert "PlayResY: 1080" in doc
        assert "Style: Danmaku,@Microsoft YaHei,24,&H00FFFFFF,&H000000FF,&H00000000,&H80000000," in doc

    def test_dialogue_line(self, encoder):
        doc = encoder.encode([assignment("hello", lane=0, start=1000, end=9000)])
        assert "Dialogue: 0,0:00:01.00,0:00:09.00,Danmaku,,0,0,0,,{\\move(2020,20.4,-192,20.4)}hello" in doc

    def test_lane_sets_vertical_offset(self, encoder):
        text = encoder.event_text(assignment("hello", lane=1))
        assert text.startswith("{\\move(2020,61.2,-192,61.2)}")

    def test_one_line_per_assignment(self, encoder):
        doc = encoder.encode([assignment(start=i * 100, end=i * 100 + 8000) for i in range(5)])
        assert doc.count("Dialogue: ") == 5

    def test_author_name_and_avatar(self, encoder, tmp_path, png_bytes):
        avatar = tmp_path / "u1.png"
        avatar.write_bytes(png_bytes)

        doc = encoder.encode([assignment("hi")], {"u1": "Alice"}, {"u1": avatar})

        assert doc.index("[V4+ Styles]") < doc.index("[Graphics]") < doc.index("[Events]")
        lines = doc.splitlines()
        idx = lines.index("filename: u1.png")
        assert base64.b64decode(lines[idx + 1]) == png_bytes
        assert "{\\img(u1.png)}Alice: hi" in doc

    def test_shared_avatar_embedded_once(self, encoder, tmp_path, png_bytes):
        avatar = tmp_path / "shared.png"
        avatar.write_bytes(png_bytes)
        doc = encoder.encode([assignment(author="a"), assignment(author="b")], None, {"a": avatar, "b": avatar})
        assert doc.count("filename: shared.png") == 1

    def test_same_name_different_files_kept_apart(self, encoder, tmp_path):
        first = tmp_path / "a" / "avatar.png"
        second = tmp_path / "b" / "avatar.png"
        first.parent.mkdir()
        second.parent.mkdir()
        first.write_bytes(make_png(colour=(255, 0, 0, 255)))
        second.write_bytes(make_png(colour=(0, 0, 255, 255)))

        doc = encoder.encode([assignment(author="a"), assignment(author="b")], None, {"a": first, "b": second})

        lines = doc.splitlines()
        assert base64.b64decode(lines[lines.index("filename: avatar.png") + 1]) == first.read_bytes()
        assert base64.b64decode(lines[lines.index("filename: avatar_1.png") + 1]) == second.read_bytes()
        assert "{\\img(avatar.png)}hello" in doc
        assert "{\\img(avatar_1.png)}hello" in doc

    def test_write_replaces_file(self, encoder, tmp_path):
        target = tmp_path / "ass" / "track.ass"
        path = encoder.write(target, [assignment()])
        assert path == target
        assert target.read_text(encoding="utf-8").startswith("[Script Info]")
        assert [p.name for p in target.parent.iterdir()] == ["track.ass"]

    def test_write_failure_leaves_nothing(self, encoder, tmp_path):
        target = tmp_path / "track.ass"
        with pytest.raises(EncodingError):
            encoder.write(target, [assignment()], None, {"u1": tmp_path / "missing.png"})
        assert list(tmp_path.iterdir()) == []
