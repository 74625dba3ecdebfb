from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Optional, Sequence

logger = logging.getLogger(__name__)

Category = Literal["navigation", "input", "control", "accessibility"]
EventType = Literal["start", "stop", "result", "command", "error", "speechstart", "speechend", "dictation"]

EVENT_TYPES = ("start", "stop", "result", "command", "error", "speechstart", "speechend", "dictation")

MATCH_THRESHOLD = 0.7
SIMILARITY_THRESHOLD = 0.7
HELP_COMMAND_LIMIT = 5

ERROR_FEEDBACK = "Sorry, there was an error executing that command."
REPEAT_FEEDBACK = "Please refer to the on-screen instructions or ask for specific help."

_NUMBERS = re.compile(r"\d+")


@dataclass
class VoiceCommand:
    id: str
    patterns: List[str]
    action: Callable[[Dict[str, Any]], Any]
    description: str
    category: Category
    enabled: bool = True


@dataclass(frozen=True)
class CommandMatch:
    command: VoiceCommand
    confidence: float
    parameters: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command.id,
            "description": self.command.description,
            "category": self.command.category,
            "confidence": self.confidence,
            "parameters": dict(self.parameters),
        }


@dataclass(frozen=True)
class VoiceEvent:
    type: str
    data: Any = None
    timestamp: float = field(default_factory=time.time)


def levenshtein(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(
                min(
                    current[j - 1] + 1,
                    previous[j] + 1,
                    previous[j - 1] + (0 if ca == cb else 1),
                )
            )
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    longer, shorter = (a, b) if len(a) > len(b) else (b, a)
    if not longer:
        return 1.0
    return (len(longer) - levenshtein(longer, shorter)) / len(longer)


def extract_parameters(transcript: str) -> Dict[str, Any]:
    numbers = _NUMBERS.findall(transcript)
    return {"numbers": [int(n) for n in numbers]} if numbers else {}


class VoiceCommandDispatcher:
    """
    Turns recognized speech into commands.

    Speech recognition and synthesis happen on the client; the dispatcher gets
    transcripts through handle_result() and collects spoken feedback in
    `feedback` and triggered UI intents in `actions`.
    """

    def __init__(
        self,
        *,
        language: str = "en-US",
        enable_feedback: bool = True,
        enable_commands: bool = True,
        continuous: bool = True,
        speaker: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.language = language
        self.enable_feedback = enable_feedback
        self.enable_commands = enable_commands
        self.continuous = continuous
        self.speaker = speaker
        self.is_enabled = False
        self.is_listening = False
        self.is_dictation_mode = False
        self.feedback: List[str] = []
        self.actions: List[Dict[str, str]] = []
        self._commands: Dict[str, VoiceCommand] = {}
        self._listeners: Dict[str, List[Callable[[VoiceEvent], None]]] = {}
        self._register_defaults()

    def _register_defaults(self) -> None:
        defaults = [
            ("navigate_next", ["next", "continue", "go forward", "proceed"], self._navigate("next"), "Navigate to next step", "navigation"),
            ("navigate_back", ["back", "previous", "go back", "return"], self._navigate("back"), "Navigate to previous step", "navigation"),
            ("navigate_skip", ["skip", "skip this", "skip step"], self._navigate("skip"), "Skip current step", "navigation"),
            ("start_dictation", ["start dictation", "begin input", "voice input", "dictate"], lambda _p: self.start_dictation(), "Start voice dictation", "input"),
            ("stop_dictation", ["stop dictation", "end input", "finish dictation"], lambda _p: self.stop_dictation(), "Stop voice dictation", "input"),
            ("start_recording", ["start recording", "begin recording", "record audio"], self._trigger("start_recording"), "Start audio recording", "control"),
            ("stop_recording", ["stop recording", "end recording", "finish recording"], self._trigger("stop_recording"), "Stop audio recording", "control"),
            ("repeat_instructions", ["repeat", "say again", "repeat instructions"], lambda _p: self.speak(REPEAT_FEEDBACK), "Repeat last instruction", "accessibility"),
            ("help", ["help", "what can I say", "voice commands", "assistance"], lambda _p: self.speak(self.help_text()), "Get voice command help", "accessibility"),
        ]
        for cid, patterns, action, description, category in defaults:
            self.register(VoiceCommand(cid, patterns, action, description, category))

    def _navigate(self, action: str) -> Callable[[Dict[str, Any]], None]:
        def run(_params: Dict[str, Any]) -> None:
            self.actions.append({"type": "navigation", "action": action})

        return run

    def _trigger(self, action: str) -> Callable[[Dict[str, Any]], None]:
        def run(_params: Dict[str, Any]) -> None:
            self.actions.append({"type": "action", "action": action})

        return run

    # registry

    def register(self, command: VoiceCommand) -> None:
        self._commands[command.id] = command

    def unregister(self, command_id: str) -> None:
        self._commands.pop(command_id, None)

    def toggle(self, command_id: str, enabled: bool) -> None:
        command = self._commands.get(command_id)
        if command is not None:
            command.enabled = enabled

    def commands(self) -> List[VoiceCommand]:
        return list(self._commands.values())

    # events

    def add_listener(self, event_type: str, listener: Callable[[VoiceEvent], None]) -> None:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown voice event type: {event_type}")
        self._listeners.setdefault(event_type, []).append(listener)

    def remove_listener(self, event_type: str, listener: Callable[[VoiceEvent], None]) -> None:
        listeners = self._listeners.get(event_type) or []
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, event_type: str, data: Any = None) -> None:
        event = VoiceEvent(type=event_type, data=data)
        for listener in list(self._listeners.get(event_type) or []):
            try:
                listener(event)
            except Exception:
                logger.exception("[voice] event listener failed for %s", event_type)

    # recognition lifecycle

    def start(self) -> None:
        self.is_enabled = True
        if not self.is_listening:
            self.is_listening = True
            self.emit("start", {"listening": True})

    def stop(self) -> None:
        self.is_enabled = False
        if self.is_listening:
            self.is_listening = False
            self.emit("stop", {"listening": False})

    def speech_started(self) -> None:
        self.emit("speechstart", {})

    def speech_ended(self) -> None:
        self.emit("speechend", {})

    def handle_error(self, error: str, message: Optional[str] = None) -> None:
        logger.error("[voice] recognition error: %s", error)
        self.emit("error", {"error": error, "message": message or "Speech recognition error"})
        if error == "not-allowed":
            self.speak("Microphone access denied. Please allow microphone permissions.")
        elif error == "no-speech" and not self.continuous:
            self.speak("No speech detected. Please try again.")

    def handle_result(
        self,
        transcript: str,
        *,
        confidence: float = 0.0,
        is_final: bool = True,
        alternatives: Optional[Sequence[str]] = None,
    ) -> Optional[CommandMatch]:
        """Returns the executed match, if any."""
        text = (transcript or "").strip()
        result = {
            "transcript": text,
            "confidence": confidence,
            "is_final": is_final,
            "alternatives": list(alternatives or []),
        }
        self.emit("result", result)
        if not is_final:
            return None
        if self.is_dictation_mode:
            self.emit("dictation", result)
            return None
        if self.enable_commands:
            return self.process(text)
        return None

    # matching

    def find_matches(self, transcript: str) -> List[CommandMatch]:
        normalized = transcript.lower().strip()
        matches: List[CommandMatch] = []
        for command in self._commands.values():
            if not command.enabled:
                continue
            for pattern in command.patterns:
                p = pattern.lower()
                if normalized == p:
                    confidence = 1.0
                elif p in normalized:
                    confidence = 0.8
                elif similarity(normalized, p) > SIMILARITY_THRESHOLD:
                    confidence = 0.7
                else:
                    continue
                matches.append(CommandMatch(command, confidence, extract_parameters(normalized)))
        matches.sort(key=lambda m: m.confidence, reverse=True)
        return matches

    def process(self, transcript: str) -> Optional[CommandMatch]:
        matches = self.find_matches(transcript)
        if not matches:
            logger.debug("[voice] no command matches for %r", transcript)
            return None
        best = matches[0]
        if best.confidence <= MATCH_THRESHOLD:
            logger.debug("[voice] low confidence match %s (%.2f)", best.command.id, best.confidence)
            return None
        self.execute(best)
        return best

    def execute(self, match: CommandMatch) -> bool:
        try:
            self.emit("command", match)
            self.speak(f"Executing {match.command.description}")
            match.command.action(dict(match.parameters))
            logger.debug("[voice] executed %s", match.command.id)
            return True
        except Exception:
            logger.exception("[voice] command %s failed", match.command.id)
            self.speak(ERROR_FEEDBACK)
            return False

    # dictation / feedback

    def start_dictation(self) -> None:
        self.is_dictation_mode = True
        self.speak("Dictation mode started. Speak your input.")

    def stop_dictation(self) -> None:
        self.is_dictation_mode = False
        self.speak("Dictation mode stopped.")

    def help_text(self) -> str:
        enabled = [c for c in self._commands.values() if c.enabled][:HELP_COMMAND_LIMIT]
        return (
            f"Available voice commands: {', '.join(c.patterns[0] for c in enabled)}. "
            'Say "help" for more information.'
        )

    def speak(self, text: str) -> None:
        if not self.enable_feedback:
            return
        self.feedback.append(text)
        if self.speaker is not None:
            self.speaker(text)

    def set_language(self, language: str) -> None:
        self.language = language

    def status(self) -> Dict[str, Any]:
        return {
            "is_enabled": self.is_enabled,
            "is_listening": self.is_listening,
            "is_dictation_mode": self.is_dictation_mode,
            "command_count": len(self._commands),
            "language": self.language,
        }

    def destroy(self) -> None:
        self.stop()
        self._commands.clear()
        self._listeners.clear()
        self.feedback.clear()
        self.actions.clear()


__all__ = [
    "VoiceCommand",
    "CommandMatch",
    "VoiceEvent",
    "VoiceCommandDispatcher",
    "levenshtein",
    "similarity",
    "extract_parameters",
]
