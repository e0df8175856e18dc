"""AI conversation partner that replies to the learner and reports corrections."""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from .json_utils import parse_ai_feedback
from .llm_client import LLMClient, LLMError, get_llm_client
from ..config import settings
from ..models.schemas import AIFeedback, ContextPayload, MistakeCategory

logger = logging.getLogger(__name__)


SYSTEM_PROMPT_TEMPLATE = """You are a helpful {target_language} language practice partner.
Topic: {topic_name}. {topic_description}
User level: {proficiency_level}. The learner's native language is {native_language}.

Engage in natural conversation, correct mistakes gently, provide encouraging
feedback and ask a follow-up question about the topic.

Reply with a single JSON object and nothing else:
{{
  "sentence_status": "correct" or "has_errors",
  "feedback": "<your conversational reply, including any correction>",
  "grammar_category": "<one of: {categories}> or null",
  "mistakes": [
    {{
      "original_text": "<what the learner wrote>",
      "corrected_text": "<the corrected form>",
      "category": "<one of the categories above>",
      "explanation": "<short explanation>",
      "severity": "minor" | "medium" | "major"
    }}
  ]
}}
Leave "mistakes" empty when the sentence is correct."""


class ConversationPartner(ABC):
    """Anything that can answer a learner utterance given the turn context."""

    @abstractmethod
    async def send(self, utterance: str, context: ContextPayload) -> AIFeedback:
        pass


class LLMConversationPartner(ConversationPartner):
    """Conversation partner backed by a chat LLM."""

    def __init__(self, llm_client: Optional[LLMClient] = None, max_tokens: Optional[int] = None):
        self.llm_client = llm_client or get_llm_client()
        self.max_tokens = max_tokens or settings.llm_max_tokens

    def build_system_prompt(self, context: ContextPayload) -> str:
        return SYSTEM_PROMPT_TEMPLATE.format(
            target_language=context.target_language,
            native_language=context.native_language,
            topic_name=context.topic_name,
            topic_description=context.topic_description,
            proficiency_level=context.proficiency_level,
            categories=", ".join(c.value for c in MistakeCategory),
        )

    @staticmethod
    def build_messages(utterance: str, context: ContextPayload) -> List[Dict[str, str]]:
        """Map "User: ..." / "AI: ..." history lines onto chat roles."""
        messages = []
        for line in context.conversation_history:
            if line.startswith("User: "):
                messages.append({"role": "user", "content": line[len("User: "):]})
            elif line.startswith("AI: "):
                messages.append({"role": "assistant", "content": line[len("AI: "):]})
            else:
                logger.debug(f"Skipping unlabelled history line: {line[:50]!r}")
        messages.append({"role": "user", "content": utterance})
        return messages

    async def send(self, utterance: str, context: ContextPayload) -> AIFeedback:
        """
        Ask the LLM for a reply to one utterance.

        Raises:
            LLMError: If the provider call fails or the reply is empty
        """
        text, usage = await self.llm_client.generate(
            messages=self.build_messages(utterance, context),
            system_prompt=self.build_system_prompt(context),
            max_tokens=self.max_tokens,
        )
        logger.info(
            f"LLM reply for session {context.session_id} turn {context.current_turn + 1}: "
            f"{usage.get('input_tokens', 0)} in / {usage.get('output_tokens', 0)} out tokens"
        )
        if not text or not text.strip():
            raise LLMError("Empty response from LLM")
        return parse_ai_feedback(text)
