"""Structured analysis of transcripts and question answering across recordings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, List, Optional, Sequence

from .llm import ChatModel, LLMError, parse_json_object
from .models import AnalysisResult
from .prompts import (
    ANALYSIS_SYSTEM_PROMPT,
    ANALYSIS_USER_PROMPT,
    ASK_SYSTEM_PROMPT,
    ASK_USER_PROMPT,
    NOT_FOUND_ANSWER,
)

logger = logging.getLogger(__name__)

CONTEXT_MEETING = "meeting"
CONTEXT_LECTURE = "lecture"
CONTEXT_THINKING = "thinking"

MEETING_KEYWORDS = (
    "họp",
    "dự án",
    "deadline",
    "gửi",
    "báo cáo",
    "khách hàng",
    "đồng nghiệp",
    "team",
    "nhóm",
    "thống nhất",
    "chốt",
    "phê duyệt",
    "approve",
    "task",
    "công việc",
    "nhiệm vụ",
)

LECTURE_KEYWORDS = (
    "bài giảng",
    "thầy",
    "cô",
    "chương",
    "ví dụ",
    "kiến thức",
    "học",
    "giải thích",
    "định nghĩa",
    "khái niệm",
    "nguyên lý",
    "phương pháp",
)

ANALYSIS_TEMPERATURE = 0.3
ASK_TEMPERATURE = 0.3
ASK_MAX_TOKENS = 500
TRANSCRIPT_EXCERPT_CHARS = 500
BRIEF_ITEMS = 3


class AnalysisError(RuntimeError):
    """Raised when a transcript cannot be analysed or a question answered."""


@dataclass(slots=True)
class AnalysisContext:
    """One analysed recording handed to :meth:`Analyzer.ask`."""

    recording_id: str
    created_at: datetime
    analysis: AnalysisResult
    transcript: str = ""


def detect_context(transcript: str) -> str:
    """Classify a transcript as meeting, lecture or thinking by keyword hits."""

    text = transcript.lower()
    meeting = sum(1 for keyword in MEETING_KEYWORDS if keyword in text)
    lecture = sum(1 for keyword in LECTURE_KEYWORDS if keyword in text)
    if meeting > 0 and meeting >= lecture:
        return CONTEXT_MEETING
    if lecture > 0:
        return CONTEXT_LECTURE
    return CONTEXT_THINKING


def repair(result: AnalysisResult, detected: str) -> AnalysisResult:
    """Fill gaps left by the model, in a fixed order."""

    if not result.context:
        result.context = detected
    if not result.brief and result.summary:
        result.brief = "\n".join(f"- {item}" for item in result.summary[:BRIEF_ITEMS]).strip()
    if not result.key_points and result.summary:
        result.key_points = list(result.summary[:BRIEF_ITEMS])
    return result


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return ["" if item is None else str(item) for item in value]


def _string(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def result_from_payload(payload: dict) -> AnalysisResult:
    return AnalysisResult(
        context=_string(payload.get("context")),
        summary=_string_list(payload.get("summary")),
        action_items=_string_list(payload.get("action_items")),
        key_points=_string_list(payload.get("key_points")),
        brief=_string(payload.get("zalo_brief")),
    )


def _excerpt(transcript: str) -> str:
    if len(transcript) > TRANSCRIPT_EXCERPT_CHARS:
        return transcript[:TRANSCRIPT_EXCERPT_CHARS] + "..."
    return transcript


def _bullets(lines: List[str], items: Iterable[str]) -> None:
    for item in items:
        lines.append(f"- {item}")


def build_ask_context(entries: Sequence[AnalysisContext]) -> str:
    """Render analysed recordings, oldest first, as the context for a question."""

    ordered = sorted(entries, key=lambda entry: entry.created_at)
    blocks: List[str] = []
    for index, entry in enumerate(ordered, start=1):
        analysis = entry.analysis
        lines = [
            f"=== Ghi âm {index} (ID: {entry.recording_id}, {entry.created_at.isoformat()}) ===",
            f"Loại: {analysis.context}",
        ]
        if analysis.summary:
            lines.append("Tóm tắt:")
            _bullets(lines, analysis.summary)
        if analysis.action_items:
            lines.append("Action Items:")
            _bullets(lines, analysis.action_items)
        if analysis.key_points:
            lines.append("Điểm quan trọng:")
            _bullets(lines, analysis.key_points)
        if entry.transcript:
            lines.append(f"Transcript: {_excerpt(entry.transcript)}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


class Analyzer:
    """Extract summaries, action items and key points with the language model."""

    def __init__(self, chat: ChatModel) -> None:
        self._chat = chat

    def analyze(self, transcript: str, context_hint: Optional[str] = None) -> AnalysisResult:
        if not transcript.strip():
            raise AnalysisError("transcript is empty")

        detected = detect_context(transcript)
        context = context_hint or detected
        logger.info("Analysing transcript (%d chars, context=%s)", len(transcript), context)
        try:
            content = self._chat.complete(
                ANALYSIS_SYSTEM_PROMPT,
                ANALYSIS_USER_PROMPT.format(transcript=transcript, context=context),
                temperature=ANALYSIS_TEMPERATURE,
                json_mode=True,
            )
            payload = parse_json_object(content)
        except LLMError as exc:
            raise AnalysisError(f"analysis failed: {exc}") from exc

        return repair(result_from_payload(payload), context)

    def ask(self, question: str, entries: Sequence[AnalysisContext]) -> str:
        """Answer a question grounded only in previously analysed recordings."""

        if not question.strip():
            raise AnalysisError("question is empty")
        if not entries:
            raise AnalysisError("no analysed recordings available")

        user_prompt = ASK_USER_PROMPT.format(
            context=build_ask_context(entries),
            question=question.strip(),
            not_found=NOT_FOUND_ANSWER,
        )
        try:
            answer = self._chat.complete(
                ASK_SYSTEM_PROMPT,
                user_prompt,
                temperature=ASK_TEMPERATURE,
                max_tokens=ASK_MAX_TOKENS,
            )
        except LLMError as exc:
            raise AnalysisError(f"ask failed: {exc}") from exc
        answer = answer.strip()
        if not answer:
            raise AnalysisError("language model returned an empty answer")
        return answer
