"""
StoryWriter Logging System

Clean terminal output for key conversation events + detailed file logging for debugging.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Any, Dict
import json
import os

from src.config.limits import TRANSCRIPT_PREVIEW_LENGTH


class StoryWriterLogger:
    """
    Two-mode logging system:
    - Terminal: Clean, timestamped key events only
    - Debug file: Full detailed logs for troubleshooting
    """

    def __init__(self, debug_mode: bool = False, settings=None):
        self.debug_mode = debug_mode
        self.settings = settings
        self.log_dir = Path("logs")

        # JSONL log of every story backend call
        if settings and settings.debug_generation_calls:
            self.debug_log_dir = Path(settings.debug_log_dir)
            self.debug_log_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self.generation_calls_log = self.debug_log_dir / f"generation_calls_{timestamp}.jsonl"

        # Setup file logger for debug mode
        if debug_mode:
            self.log_dir.mkdir(exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_file = self.log_dir / f"storywriter_debug_{timestamp}.txt"

            self.file_logger = logging.getLogger("storywriter_debug")
            self.file_logger.setLevel(logging.DEBUG)

            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s | %(levelname)s | %(name)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            self.file_logger.addHandler(file_handler)

            print(f"📝 Debug mode enabled. Logging to: {log_file}")

    def _timestamp(self) -> str:
        """Get formatted timestamp"""
        return datetime.now().strftime("%H:%M:%S")

    def _terminal_log(self, emoji: str, message: str, color: str = ""):
        """Print clean log to terminal"""
        timestamp = self._timestamp()

        # ANSI color codes
        colors = {
            "green": "\033[92m",
            "blue": "\033[94m",
            "yellow": "\033[93m",
            "red": "\033[91m",
            "cyan": "\033[96m",
            "reset": "\033[0m"
        }

        color_code = colors.get(color, "")
        reset = colors["reset"] if color_code else ""

        print(f"{color_code}[{timestamp}] {emoji} {message}{reset}")

    def _debug_log(self, level: str, component: str, message: str, data: Optional[dict] = None):
        """Write detailed log to debug file"""
        if self.debug_mode and hasattr(self, 'file_logger'):
            log_msg = f"{component} | {message}"
            if data:
                log_msg += f" | Data: {data}"

            log_func = getattr(self.file_logger, level.lower(), self.file_logger.info)
            log_func(log_msg)

    @staticmethod
    def _preview(text: str, length: int = TRANSCRIPT_PREVIEW_LENGTH) -> str:
        return text[:length] + "..." if len(text) > length else text

    # ===== Conversation Lifecycle =====

    def conversation_started(self, conversation_id: str):
        """Log when a new conversation attempt begins"""
        self._terminal_log("🎤", f"Conversation started ({conversation_id[:8]})", "cyan")
        self._debug_log("info", "CONVERSATION", "Started", {"conversation_id": conversation_id})

    def turn_captured(self, conversation_id: str, role: str, content: str, turn_count: int):
        """Log a captured dialogue turn (file only, turns are frequent)"""
        self._debug_log("debug", "CONVERSATION", f"{role} turn captured", {
            "conversation_id": conversation_id,
            "content": content,
            "turn_count": turn_count
        })

    def flush_accepted(self, conversation_id: str, reason: str, turn_count: int,
                       user_turns: int, transcript_length: int):
        """Log when the capture buffer is finalized into a transcript"""
        msg = (f"Conversation finalized by {reason}: {turn_count} turns "
               f"({user_turns} from user), transcript {transcript_length} chars")
        self._terminal_log("📝", msg, "green")
        self._debug_log("info", "CONVERSATION", "Flush accepted", {
            "conversation_id": conversation_id,
            "reason": reason,
            "turn_count": turn_count,
            "user_turns": user_turns,
            "transcript_length": transcript_length
        })

    def flush_rejected(self, conversation_id: str, reason: str, user_turns: int, min_required: int):
        """Log when a flush is refused because the child barely spoke"""
        msg = f"Not enough to make a story ({reason}): {user_turns}/{min_required} user turns"
        self._terminal_log("⚠️", msg, "yellow")
        self._debug_log("warning", "CONVERSATION", "Flush rejected", {
            "conversation_id": conversation_id,
            "reason": reason,
            "user_turns": user_turns,
            "min_required": min_required
        })

    def phase_changed(self, conversation_id: str, old_phase: str, new_phase: str, reason: str = ""):
        """Log a phase transition"""
        msg = f"Phase {old_phase} → {new_phase}"
        if reason:
            msg += f" ({reason})"
        self._terminal_log("🔀", msg, "blue")
        self._debug_log("info", "PHASE", msg, {"conversation_id": conversation_id})

    # ===== Story Generation =====

    def generation_started(self, conversation_id: str, transcript: str):
        """Log when story generation begins"""
        self._terminal_log("✨", f"Generating story from {len(transcript)} char transcript", "cyan")
        self._debug_log("info", "GENERATION", "Started", {
            "conversation_id": conversation_id,
            "transcript_preview": self._preview(transcript)
        })

    def story_ready(self, conversation_id: str, title: str, page_count: int,
                    duration: Optional[float] = None):
        """Log when a story is shown to the child"""
        msg = f"Story ready: \"{title}\" ({page_count} pages)"
        if duration:
            msg += f" in {duration:.1f}s"
        self._terminal_log("📖", msg, "green")
        self._debug_log("info", "GENERATION", "Story ready", {
            "conversation_id": conversation_id,
            "title": title,
            "page_count": page_count,
            "duration": duration
        })

    def generation_discarded(self, conversation_id: str, token: int, current_token: int):
        """Log when a superseded generation finishes after a reset"""
        msg = f"Discarding late generation result (token {token}, current {current_token})"
        self._terminal_log("🗑️", msg, "yellow")
        self._debug_log("warning", "GENERATION", msg, {"conversation_id": conversation_id})

    def error(self, component: str, message: str, error: Exception = None):
        """Log error"""
        msg = f"Error in {component}: {message}"
        if error:
            msg += f" ({type(error).__name__})"
        self._terminal_log("⚠️", msg, "red")
        self._debug_log("error", component, message, {
            "error_type": type(error).__name__ if error else None,
            "error_message": str(error) if error else None
        })

    def info(self, message: str):
        """Log general info"""
        self._terminal_log("ℹ️", message)
        self._debug_log("info", "SYSTEM", message)

    def warning(self, message: str):
        """Log warning"""
        self._terminal_log("⚠️", message, "yellow")
        self._debug_log("warning", "SYSTEM", message)

    def debug(self, component: str, message: str, data: Optional[dict] = None):
        """Log debug information (file only)"""
        if self.debug_mode:
            self._debug_log("debug", component, message, data)

    # ===== Debug Logging Methods =====

    def _write_json_log(self, log_file: Path, data: Dict[str, Any]):
        """Write structured JSON log entry"""
        try:
            with open(log_file, 'a') as f:
                json.dump(data, f)
                f.write('\n')
        except OSError as e:
            self.error("LOGGER", f"Failed to write JSON log: {e}")

    def generation_call(self, stage: str, attempt: int, options: Dict[str, Any],
                        latency: Optional[float] = None, status: str = "success",
                        error: Optional[str] = None):
        """Log one story backend call with its budget and outcome"""
        # Skip if debug flag not enabled
        if not self.settings or not self.settings.debug_generation_calls:
            return

        latency_str = f" in {latency:.1f}s" if latency else ""
        msg = f"Backend {stage} attempt {attempt}: {status}{latency_str}"
        emoji = "🤖" if status == "success" else "⚠️"
        color = "green" if status == "success" else "yellow"
        self._terminal_log(emoji, msg, color)

        log_data = {
            "timestamp": datetime.now().isoformat(),
            "type": "generation_call",
            "stage": stage,
            "attempt": attempt,
            "options": options,
            "latency_seconds": latency,
            "status": status,
            "error": error
        }

        if hasattr(self, 'generation_calls_log'):
            self._write_json_log(self.generation_calls_log, log_data)


# Global logger instance
_logger: Optional[StoryWriterLogger] = None


def get_logger(settings=None) -> StoryWriterLogger:
    """Get global logger instance"""
    global _logger
    if _logger is None:
        # Check environment for debug mode
        debug_mode = os.getenv("DEBUG_MODE", "false").lower() == "true"
        _logger = StoryWriterLogger(debug_mode=debug_mode, settings=settings)
    return _logger


def init_logger(debug_mode: bool = False, settings=None):
    """Initialize logger with specific debug mode and settings"""
    global _logger
    _logger = StoryWriterLogger(debug_mode=debug_mode, settings=settings)
    return _logger


def reset_logger():
    """Reset the singleton (for testing)"""
    global _logger
    _logger = None
