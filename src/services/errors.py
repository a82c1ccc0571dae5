"""
Standardized Error Handling

Every stage (capture, agent session, story generation, audio, storage)
reports problems as an AppError. Exceptions, rejected calls and structural
validation failures are all normalized through ErrorHandler.from_unknown
before they reach the ErrorRegistry, which the presentation layer reads.
"""

import logging
import random
import time
from typing import Any, Dict, Mapping, Optional

from src.models import ErrorType, ErrorSeverity

logger = logging.getLogger(__name__)


# Stable stage keys for the registry
STAGE_STORY_GENERATION = "story_generation"
STAGE_CONVERSATION = "conversation"
STAGE_AUDIO_GENERATION = "audio_generation"
STAGE_STORAGE_SAVE = "storage_save"
STAGE_STORAGE_LOAD = "storage_load"
STAGE_STORY_LOAD = "story_load"


class AppError(Exception):
    """Typed, severity-tagged error stored in the registry"""

    def __init__(
        self,
        type: ErrorType,
        severity: ErrorSeverity,
        message: str,
        user_message: str,
        original_error: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
        timestamp: Optional[float] = None,
    ):
        super().__init__(message)
        self.type = type
        self.severity = severity
        self.message = message
        self.user_message = user_message
        self.original_error = original_error
        self.context = context or {}
        self.timestamp = timestamp if timestamp is not None else time.time()

    @property
    def is_recoverable(self) -> bool:
        return self.severity != ErrorSeverity.CRITICAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "user_message": self.user_message,
            "context": self.context,
            "timestamp": self.timestamp,
            "recoverable": self.is_recoverable,
            "friendly_message": ChildFriendlyErrors.for_error(self),
        }

    def __repr__(self) -> str:
        return f"AppError({self.type.value}, {self.severity.value}, {self.message!r})"


class ErrorHandler:
    """Builds, normalizes and logs AppErrors"""

    USER_MESSAGES = {
        ErrorType.CONVERSATION: "Could not connect to the StoryWriter Agent. Please try again.",
        ErrorType.STORY_GENERATION: "Having trouble creating your story. Let's try again! ✨",
        ErrorType.AUDIO: "Audio generation is temporarily unavailable. Story creation will continue.",
        ErrorType.STORAGE: "Could not save your story. Please try again.",
        ErrorType.VALIDATION: "Please check your input and try again.",
        ErrorType.SYSTEM: "Something went wrong. Please try again.",
    }

    @staticmethod
    def create_error(
        type: ErrorType,
        severity: ErrorSeverity,
        message: str,
        user_message: str,
        original_error: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> AppError:
        return AppError(type, severity, message, user_message, original_error, context)

    @classmethod
    def from_unknown(
        cls,
        error: Any,
        type: ErrorType = ErrorType.SYSTEM,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
    ) -> AppError:
        """
        Convert anything a stage might produce into an AppError.

        AppErrors pass through unchanged (extra context is merged in), so a
        stage that already classified its failure keeps that classification.
        """
        if isinstance(error, AppError):
            if context:
                error.context = {**error.context, **context}
            return error

        original = error if isinstance(error, BaseException) else None
        if isinstance(error, BaseException):
            message = str(error) or error.__class__.__name__
        elif isinstance(error, str):
            message = error
        elif isinstance(error, Mapping) and "message" in error:
            message = str(error["message"])
        else:
            message = "Unknown error occurred"

        return cls.create_error(
            type, severity, message, cls.generate_user_message(type), original, context
        )

    @classmethod
    def generate_user_message(cls, type: ErrorType) -> str:
        return cls.USER_MESSAGES.get(type, cls.USER_MESSAGES[ErrorType.SYSTEM])

    @staticmethod
    def log_error(error: AppError):
        """Log with a level matching the severity"""
        extra = {
            "error_type": error.type.value,
            "severity": error.severity.value,
            **error.context,
        }
        if error.original_error is not None:
            extra["original_error"] = f"{error.original_error.__class__.__name__}: {error.original_error}"

        if error.severity == ErrorSeverity.CRITICAL:
            logger.critical(f"[{error.type.value}] {error.message} | {extra}")
        else:
            logger.warning(f"[{error.type.value}] {error.message} | {extra}")

    @classmethod
    def handle_error(cls, error: AppError):
        cls.log_error(error)
        if error.severity == ErrorSeverity.CRITICAL:
            logger.critical(
                f"CRITICAL ERROR - consider restarting the app "
                f"(error_id={error.type.value}_{int(error.timestamp * 1000)})"
            )


class ChildFriendlyErrors:
    """Alternative child-facing wording, picked at random per display"""

    MESSAGES = {
        "story_generation": [
            "Our story elves are working extra hard! Let's try again... 🧝‍♀️",
            "The story magic needs a moment to recharge! ✨",
            "Our story machine is being extra careful with your tale! 🔧",
            "Sometimes the best stories need a second try! 📚",
            "The story creators are making sure everything is perfect! 🎨",
        ],
        "conversation": [
            "The StoryWriter Agent is taking a quick break! Let's try connecting again. 🤖",
            "Our story friend needs a moment to wake up! Try again in a second. 😊",
            "The connection sprites are being silly! Let's try once more. 🧚‍♀️",
        ],
        "audio": [
            "The voice magic is resting right now, but your story is still amazing! 🎭",
            "Our story narrator is taking a quick break, but we can still read together! 📖",
        ],
    }

    @classmethod
    def get_random_message(cls, category: str) -> str:
        messages = cls.MESSAGES.get(category, cls.MESSAGES["story_generation"])
        return random.choice(messages)

    @classmethod
    def for_error(cls, error: AppError) -> str:
        category = {
            ErrorType.CONVERSATION: "conversation",
            ErrorType.AUDIO: "audio",
        }.get(error.type, "story_generation")
        return cls.get_random_message(category)


class ErrorRegistry:
    """
    Keyed map of the current error per stage.

    A later add under the same key replaces the earlier error, so a stage
    that retries and succeeds only has to remove its own key.
    """

    def __init__(self, on_change=None):
        self._errors: Dict[str, AppError] = {}
        self._on_change = on_change

    def add_error(self, key: str, error: AppError):
        self._errors[key] = error
        ErrorHandler.handle_error(error)
        if self._on_change:
            self._on_change(key, error)

    def remove_error(self, key: str):
        if self._errors.pop(key, None) is not None and self._on_change:
            self._on_change(key, None)

    def clear_errors(self):
        keys = list(self._errors)
        self._errors.clear()
        if self._on_change:
            for key in keys:
                self._on_change(key, None)

    def has_error(self, key: Optional[str] = None) -> bool:
        if key is None:
            return bool(self._errors)
        return key in self._errors

    def get_error(self, key: str) -> Optional[AppError]:
        return self._errors.get(key)

    @property
    def errors(self) -> Dict[str, AppError]:
        return dict(self._errors)

    def recoverable_errors(self) -> Dict[str, AppError]:
        return {key: err for key, err in self._errors.items() if err.is_recoverable}

    def has_critical_error(self) -> bool:
        return any(not err.is_recoverable for err in self._errors.values())

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {key: err.to_dict() for key, err in self._errors.items()}
