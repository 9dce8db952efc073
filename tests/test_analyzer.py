import json
from datetime import datetime, timedelta, timezone

from noteme.analyzer import (
    AnalysisContext,
    AnalysisError,
    Analyzer,
    build_ask_context,
    detect_context,
    repair,
)
from noteme.llm import LLMError
from noteme.models import AnalysisResult
from noteme.prompts import NOT_FOUND_ANSWER


class ScriptedChat:
    def __init__(self, *answers):
        self.answers = list(answers)
        self.calls = []

    def complete(self, system_prompt, user_prompt, *, temperature=0.3, json_mode=False, max_tokens=None):
        self.calls.append(
            {
                "system": system_prompt,
                "user": user_prompt,
                "temperature": temperature,
                "json_mode": json_mode,
                "max_tokens": max_tokens,
            }
        )
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


def test_detect_context_examples():
    assert detect_context("chúng ta cần họp để chốt deadline dự án") == "meeting"
    assert detect_context("hôm nay thầy giảng về khái niệm mới") == "lecture"
    assert detect_context("tôi đang suy nghĩ về một ý tưởng") == "thinking"


def test_detect_context_is_case_insensitive_and_prefers_meeting_on_tie():
    assert detect_context("TEAM review") == "meeting"
    # one meeting keyword ("task") against one lecture keyword ("ví dụ")
    assert detect_context("task này là ví dụ") == "meeting"


def test_repair_fills_gaps_in_order():
    result = repair(AnalysisResult(summary=["a", "b", "c", "d"]), "lecture")

    assert result.context == "lecture"
    assert result.brief == "- a\n- b\n- c"
    assert result.key_points == ["a", "b", "c"]


def test_repair_keeps_model_values():
    original = AnalysisResult(
        context="meeting", summary=["a"], key_points=["k"], brief="- tóm tắt"
    )
    result = repair(original, "thinking")

    assert result.context == "meeting"
    assert result.brief == "- tóm tắt"
    assert result.key_points == ["k"]


def test_repair_without_summary_leaves_empty_fields():
    result = repair(AnalysisResult(), "thinking")
    assert result.context == "thinking"
    assert result.brief == ""
    assert result.key_points == []


def test_analyze_parses_and_repairs_model_output():
    chat = ScriptedChat(
        "```json\n"
        + json.dumps(
            {
                "context": "",
                "summary": ["Chốt deadline thứ sáu", "Gửi báo cáo"],
                "action_items": ["Gửi báo cáo cho khách hàng"],
                "key_points": [],
                "zalo_brief": "",
            },
            ensure_ascii=False,
        )
        + "\n```"
    )
    result = Analyzer(chat).analyze("chúng ta cần họp để chốt deadline dự án")

    assert result.context == "meeting"
    assert result.summary == ["Chốt deadline thứ sáu", "Gửi báo cáo"]
    assert result.action_items == ["Gửi báo cáo cho khách hàng"]
    assert result.key_points == ["Chốt deadline thứ sáu", "Gửi báo cáo"]
    assert result.brief == "- Chốt deadline thứ sáu\n- Gửi báo cáo"
    assert chat.calls[0]["json_mode"] is True
    assert "Context: meeting" in chat.calls[0]["user"]


def test_analyze_tolerates_missing_fields():
    chat = ScriptedChat(json.dumps({"summary": None}))
    result = Analyzer(chat).analyze("tôi đang suy nghĩ về một ý tưởng")

    assert result.context == "thinking"
    assert result.summary == []
    assert result.action_items == []


def test_analyze_keeps_every_list_item_in_order():
    chat = ScriptedChat(
        json.dumps({"context": "meeting", "summary": ["Mở đầu", "", "Kết luận"], "action_items": [None, "Gọi lại"]})
    )
    result = Analyzer(chat).analyze("họp nhóm")

    assert result.summary == ["Mở đầu", "", "Kết luận"]
    assert result.action_items == ["", "Gọi lại"]


def test_analyze_uses_context_hint():
    chat = ScriptedChat(json.dumps({"summary": ["x"]}))
    result = Analyzer(chat).analyze("tôi đang suy nghĩ", context_hint="lecture")
    assert result.context == "lecture"


def test_analyze_failures_raise():
    for answer in (LLMError("down"), "definitely not json"):
        try:
            Analyzer(ScriptedChat(answer)).analyze("nội dung")
        except AnalysisError:
            pass
        else:
            raise AssertionError("Expected AnalysisError")


def _entry(recording_id, created_at, transcript="", **fields):
    return AnalysisContext(
        recording_id=recording_id,
        created_at=created_at,
        analysis=AnalysisResult(**fields),
        transcript=transcript,
    )


def test_build_ask_context_orders_and_truncates():
    now = datetime(2024, 5, 1, tzinfo=timezone.utc)
    entries = [
        _entry("rec_new", now, transcript="b" * 600, context="lecture", summary=["bài mới"]),
        _entry(
            "rec_old",
            now - timedelta(days=1),
            transcript="ngắn",
            context="meeting",
            action_items=["gửi báo cáo"],
            key_points=["thứ sáu"],
        ),
    ]
    context = build_ask_context(entries)

    assert context.index("rec_old") < context.index("rec_new")
    assert "=== Ghi âm 1 (ID: rec_old" in context
    assert "Loại: meeting" in context
    assert "Action Items:\n- gửi báo cáo" in context
    assert "Điểm quan trọng:\n- thứ sáu" in context
    assert "Tóm tắt:\n- bài mới" in context
    assert "b" * 500 + "..." in context
    assert "b" * 501 not in context


def test_ask_sends_one_capped_call():
    chat = ScriptedChat("Deadline là thứ sáu.")
    entries = [_entry("rec_1", datetime.now(timezone.utc), summary=["Deadline thứ sáu"], context="meeting")]

    answer = Analyzer(chat).ask("Deadline khi nào?", entries)

    assert answer == "Deadline là thứ sáu."
    assert len(chat.calls) == 1
    call = chat.calls[0]
    assert call["max_tokens"] == 500
    assert call["temperature"] == 0.3
    assert call["json_mode"] is False
    assert NOT_FOUND_ANSWER in call["system"]
    assert "Câu hỏi: Deadline khi nào?" in call["user"]


def test_ask_without_entries_or_model_fails():
    chat = ScriptedChat()
    try:
        Analyzer(chat).ask("Có gì mới?", [])
    except AnalysisError:
        pass
    else:
        raise AssertionError("Expected AnalysisError with no analyses")
    assert chat.calls == []

    entries = [_entry("rec_1", datetime.now(timezone.utc), summary=["x"])]
    try:
        Analyzer(ScriptedChat(LLMError("timeout"))).ask("Có gì mới?", entries)
    except AnalysisError:
        pass
    else:
        raise AssertionError("Expected AnalysisError when the model fails")
