"""Error recovery for AI collaborator failures during a turn."""

import asyncio
import logging
import re
from enum import Enum

logger = logging.getLogger(__name__)


FALLBACK_REPLY = "That is interesting! Can you tell me more?"
RETRY_LATER_REPLY = "Sorry, I lost my train of thought for a moment. Could you say that again?"


class AIErrorType(Enum):
    """Kinds of failure the AI collaborator call can end in."""
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    INVALID_OUTPUT = "invalid_output"
    UNKNOWN = "unknown"


class RecoveryStrategy(Enum):
    USE_FALLBACK_RESPONSE = "use_fallback_response"
    RETRY_LATER = "retry_later"


class ErrorRecovery:
    """Classifies AI call failures and picks a neutral reply for the learner."""

    ERROR_PATTERNS = {
        AIErrorType.TIMEOUT: [
            r"timeout",
            r"timed.*out",
        ],
        AIErrorType.RATE_LIMIT: [
            r"rate.*limit",
            r"\b429\b",
            r"too.*many.*requests",
            r"quota",
        ],
        AIErrorType.NETWORK: [
            r"connection.*error",
            r"connect.*failed",
            r"network",
            r"request failed",
        ],
        AIErrorType.INVALID_OUTPUT: [
            r"empty.*response",
            r"invalid.*json",
            r"no.*json",
            r"validation.*failed",
        ],
    }

    RECOVERY_STRATEGIES = {
        AIErrorType.TIMEOUT: RecoveryStrategy.USE_FALLBACK_RESPONSE,
        AIErrorType.RATE_LIMIT: RecoveryStrategy.RETRY_LATER,
        AIErrorType.NETWORK: RecoveryStrategy.RETRY_LATER,
        AIErrorType.INVALID_OUTPUT: RecoveryStrategy.USE_FALLBACK_RESPONSE,
        AIErrorType.UNKNOWN: RecoveryStrategy.USE_FALLBACK_RESPONSE,
    }

    FALLBACK_REPLIES = {
        RecoveryStrategy.USE_FALLBACK_RESPONSE: FALLBACK_REPLY,
        RecoveryStrategy.RETRY_LATER: RETRY_LATER_REPLY,
    }

    @classmethod
    def classify_error(cls, exception: BaseException) -> AIErrorType:
        """
        Classify an exception into an AIErrorType.

        asyncio timeouts carry no message, so they are matched by type first.
        """
        if isinstance(exception, (asyncio.TimeoutError, TimeoutError)):
            return AIErrorType.TIMEOUT

        error_message = str(exception).lower()
        for error_type, patterns in cls.ERROR_PATTERNS.items():
            for pattern in patterns:
                if re.search(pattern, error_message, re.IGNORECASE):
                    logger.info(f"Classified error as {error_type.value}: {error_message[:100]}")
                    return error_type

        logger.warning(f"Could not classify error: {error_message[:100]}")
        return AIErrorType.UNKNOWN

    @classmethod
    def get_recovery_strategy(cls, error_type: AIErrorType) -> RecoveryStrategy:
        return cls.RECOVERY_STRATEGIES.get(error_type, RecoveryStrategy.USE_FALLBACK_RESPONSE)

    @classmethod
    def get_fallback_reply(cls, recovery_strategy: RecoveryStrategy) -> str:
        """
        Neutral conversational reply used in place of the AI response.

        Transient failures (rate limit, network) ask the learner to repeat
        themselves; everything else keeps the conversation moving. Neither
        reply carries a correction, so the turn is classified as correct.
        """
        return cls.FALLBACK_REPLIES.get(recovery_strategy, FALLBACK_REPLY)

    @classmethod
    def log_error_recovery(
        cls,
        session_id: str,
        turn_index: int,
        error_type: AIErrorType,
        recovery_strategy: RecoveryStrategy,
        original_error: str,
    ) -> None:
        logger.warning(
            f"Error recovery triggered for session {session_id}, turn {turn_index}:\n"
            f"  Error type: {error_type.value}\n"
            f"  Recovery strategy: {recovery_strategy.value}\n"
            f"  Original error: {original_error[:200]}"
        )


class ErrorRecoveryContext:
    """Context for one failed AI call."""

    def __init__(
        self,
        session_id: str,
        turn_index: int,
        user_text: str,
        error: BaseException,
    ):
        self.session_id = session_id
        self.turn_index = turn_index
        self.user_text = user_text
        self.error = error
        self.error_type = ErrorRecovery.classify_error(error)
        self.recovery_strategy = ErrorRecovery.get_recovery_strategy(self.error_type)

        ErrorRecovery.log_error_recovery(
            session_id=session_id,
            turn_index=turn_index,
            error_type=self.error_type,
            recovery_strategy=self.recovery_strategy,
            original_error=str(error) or type(error).__name__,
        )

    def get_fallback_response(self) -> str:
        return ErrorRecovery.get_fallback_reply(self.recovery_strategy)
