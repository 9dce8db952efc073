"""Best-effort rewriting of raw speech-to-text output."""

from __future__ import annotations

import logging

from .llm import ChatModel, parse_json_object
from .prompts import CLEAN_SYSTEM_PROMPT, CLEAN_USER_PROMPT

logger = logging.getLogger(__name__)

CLEAN_TEMPERATURE = 0.2


class TranscriptCleaner:
    """Fix recognition errors in a transcript with the language model.

    Cleaning never fails the pipeline: whenever the model cannot be reached or
    answers something unusable the raw transcript is returned unchanged.
    """

    def __init__(self, chat: ChatModel) -> None:
        self._chat = chat

    def clean(self, raw: str) -> str:
        if not raw.strip():
            return raw
        try:
            content = self._chat.complete(
                CLEAN_SYSTEM_PROMPT,
                CLEAN_USER_PROMPT.format(transcript=raw),
                temperature=CLEAN_TEMPERATURE,
                json_mode=True,
            )
            payload = parse_json_object(content)
        except Exception as exc:
            logger.warning("Transcript cleaning failed, keeping raw text: %s", exc)
            return raw

        cleaned = payload.get("cleaned_text")
        if not isinstance(cleaned, str) or not cleaned.strip():
            logger.warning("Transcript cleaning returned no cleaned_text, keeping raw text")
            return raw
        return cleaned.strip()
