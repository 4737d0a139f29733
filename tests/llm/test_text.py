"""Tests for persona_rooms.llm.text: reply post-processing."""

import pytest

from persona_rooms.llm.text import (
    clean_excessive_quotes,
    extract_speaker_segments,
    parse_affection,
    strip_line_labels,
    unwrap_quoted_reply,
)


class TestSpeakerLabels:
    def test_strip_line_labels(self) -> None:
        assert strip_line_labels("[小美]: 你好\n[小美]: 再見") == "你好\n再見"

    def test_keep_own_segments(self) -> None:
        text = "開頭\n[小美]: 我的話\n[阿明]: 別人的話\n[小美]: 還是我"
        assert extract_speaker_segments(text, "小美") == "開頭\n我的話\n還是我"

    def test_no_tags_keeps_everything(self) -> None:
        assert extract_speaker_segments("只有我", "小美") == "只有我"

    def test_only_other_speaker(self) -> None:
        assert extract_speaker_segments("[阿明]: 不是我", "小美") == ""


class TestQuotes:
    def test_emphasis_double_corner_removed(self) -> None:
        assert clean_excessive_quotes("這是『重點』喔") == "這是重點喔"

    def test_sentence_double_corner_kept(self) -> None:
        assert clean_excessive_quotes("他說『真的嗎？』") == "他說『真的嗎？』"

    def test_corner_at_line_start_kept(self) -> None:
        assert clean_excessive_quotes("「好」") == "「好」"

    def test_corner_after_action_kept(self) -> None:
        assert clean_excessive_quotes("*點頭* 「好」") == "*點頭* 「好」"

    def test_inline_emphasis_corner_removed(self) -> None:
        assert clean_excessive_quotes("我喜歡「貓」") == "我喜歡貓"

    @pytest.mark.parametrize("text,expected", [
        ("「你好呀」", "你好呀"),
        ("“hello”", "hello"),
        ('"hello"', "hello"),
        ("「一」和「二」", "「一」和「二」"),
        ("嗯「今天天氣真的很好我們出去玩吧」", "今天天氣真的很好我們出去玩吧"),
        ("他說了很長一段開場白「短」", "他說了很長一段開場白「短」"),
        ("沒有引號", "沒有引號"),
    ])
    def test_unwrap_quoted_reply(self, text: str, expected: str) -> None:
        assert unwrap_quoted_reply(text) == expected


class TestAffection:
    @pytest.mark.parametrize("text,body,value", [
        ("你好\n45", "你好", 45),
        ("你好\n-12", "你好", -12),
        ("你好\n+3", "你好", 3),
        ("你好\n好感度：50", "你好", 50),
        ("hi\nAffection: 7", "hi", 7),
        ("45", "", 45),
        ("沒有數字", "沒有數字", None),
        ("數字在中間 45 不算", "數字在中間 45 不算", None),
    ])
    def test_parse_affection(self, text: str, body: str, value) -> None:
        assert parse_affection(text) == (body, value)
