from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from .errors import AuthError, InvalidTransitionError, TransientError
from .fallback import FallbackSynthesizer
from .logging import get_logger, log_with_context
from .models import FALLBACK_SOURCE, TERMINAL_SPEECH_STATES, Credential, SpeechSession

logger = get_logger(__name__)

NO_SPEECH_TRANSCRIPT = "No speech detected in audio file."


class SpeechRecognizer(Protocol):
    def start(self, audio: bytes, language: str, credential: Credential, listener: "SessionHandle") -> None: ...

    def stop(self) -> None: ...


RecognizerFactory = Callable[[], SpeechRecognizer]


@dataclass(frozen=True)
class TranscriptionOutcome:
    session_id: str
    state: str
    text: str
    fragment_count: int
    language: str
    source: str
    degradation: dict[str, Any] | None = None

    def as_output(self) -> dict[str, Any]:
        output: dict[str, Any] = {
            "transcript": self.text,
            "language": self.language,
            "fragment_count": self.fragment_count,
            "session_state": self.state,
            "session_id": self.session_id,
        }
        if self.source == FALLBACK_SOURCE:
            output["source"] = FALLBACK_SOURCE
            output["demo"] = True
            output["degradation"] = self.degradation
        return output


class SessionHandle:
    """Callback surface handed to a recognizer; every event is routed through the manager."""

    def __init__(self, manager: "SpeechSessionManager", session: SpeechSession) -> None:
        self._manager = manager
        self.session = session

    def on_recognizing(self, text: str) -> None:
        self._manager._on_recognizing(self.session, text)

    def on_recognized(self, text: str) -> None:
        self._manager._on_recognized(self.session, text)

    def on_canceled(self, *, error_kind: str | None, details: str = "") -> None:
        self._manager._on_canceled(self.session, error_kind=error_kind, details=details)

    def on_session_stopped(self) -> None:
        self._manager._terminate(self.session, "stopped")


class SpeechSessionManager:
    _TRANSITIONS = {
        "idle": {"listening", "stopped"},
        "listening": {"recognizing", "stopped", "timed-out"},
        "recognizing": {"recognizing", "stopped", "timed-out"},
        "stopped": set(),
        "timed-out": set(),
    }

    def __init__(
        self,
        recognizer_factory: RecognizerFactory,
        *,
        fallback: FallbackSynthesizer,
        timeout_seconds: float = 25.0,
    ) -> None:
        self._recognizer_factory = recognizer_factory
        self._fallback = fallback
        self._timeout_seconds = timeout_seconds
        self._lock = threading.RLock()
        self._done: dict[str, threading.Event] = {}
        self._sessions: dict[str, SpeechSession] = {}

    def active_sessions(self) -> int:
        return len(self._sessions)

    def new_session(self, language: str) -> tuple[SpeechSession, SessionHandle]:
        session = SpeechSession(session_id=f"speech_{uuid.uuid4().hex}", language=language)
        with self._lock:
            self._sessions[session.session_id] = session
            self._done[session.session_id] = threading.Event()
        return session, SessionHandle(self, session)

    def start(self, session: SpeechSession) -> None:
        with self._lock:
            self._transition(session, "listening")

    def wait(self, session: SpeechSession, timeout: float) -> bool:
        done = self._done.get(session.session_id)
        return done.wait(timeout) if done is not None else True

    def transcribe(
        self,
        audio: bytes,
        *,
        language: str,
        credential: Credential,
        timeout_seconds: float | None = None,
    ) -> TranscriptionOutcome:
        timeout = self._timeout_seconds if timeout_seconds is None else min(timeout_seconds, self._timeout_seconds)
        session, handle = self.new_session(language)
        recognizer = self._recognizer_factory()
        watchdog = threading.Timer(timeout, self._terminate, args=(session, "timed-out"))
        watchdog.daemon = True
        try:
            self.start(session)
            watchdog.start()
            try:
                recognizer.start(audio, language, credential, handle)
            except AuthError as exc:
                self._on_canceled(session, error_kind="auth", details=str(exc))
            self.wait(session, timeout + 1.0)
            self._terminate(session, "timed-out")
        finally:
            watchdog.cancel()
            self._stop_quietly(recognizer, session)
            with self._lock:
                self._sessions.pop(session.session_id, None)
                self._done.pop(session.session_id, None)
        return self._outcome(session)

    def _stop_quietly(self, recognizer: SpeechRecognizer, session: SpeechSession) -> None:
        try:
            recognizer.stop()
        except Exception as exc:
            log_with_context(
                logger, logging.WARNING, "speech recognizer stop failed", session_id=session.session_id, error=repr(exc)
            )

    def _transition(self, session: SpeechSession, next_state: str) -> None:
        allowed_next = self._TRANSITIONS.get(session.state, set())
        if next_state not in allowed_next:
            raise InvalidTransitionError(f"Invalid transition: {session.state} -> {next_state}")
        session.state = next_state
        if session.history[-1] != next_state:
            session.history.append(next_state)

    def _terminate(
        self,
        session: SpeechSession,
        next_state: str,
        cancellation: dict[str, Any] | None = None,
    ) -> bool:
        with self._lock:
            if session.state in TERMINAL_SPEECH_STATES:
                return False
            self._transition(session, next_state)
            if cancellation is not None:
                session.cancellation = cancellation
            done = self._done.get(session.session_id)
        log_with_context(
            logger,
            logging.INFO,
            "speech session terminated",
            session_id=session.session_id,
            state=next_state,
            fragments=len(session.fragments),
        )
        if done is not None:
            done.set()
        return True

    def _on_recognizing(self, session: SpeechSession, text: str) -> None:
        with self._lock:
            if session.state in TERMINAL_SPEECH_STATES:
                return
            self._transition(session, "recognizing")
            session.partial_text = (text or "").strip()

    def _on_recognized(self, session: SpeechSession, text: str) -> None:
        fragment = (text or "").strip()
        with self._lock:
            if session.state in TERMINAL_SPEECH_STATES:
                return
            self._transition(session, "recognizing")
            session.partial_text = ""
            if not fragment:
                return
            if fragment == session.last_recognized_fragment.strip():
                return
            session.fragments.append(fragment)
            session.last_recognized_fragment = fragment

    def _on_canceled(self, session: SpeechSession, *, error_kind: str | None, details: str) -> None:
        if error_kind is None:
            self._terminate(session, "stopped")
            return
        self._terminate(session, "stopped", cancellation={"kind": error_kind, "message": details})

    def _outcome(self, session: SpeechSession) -> TranscriptionOutcome:
        cancellation = session.cancellation
        if cancellation and cancellation.get("kind") == "auth":
            log_with_context(
                logger,
                logging.WARNING,
                "speech provider rejected credentials; returning demo transcript",
                session_id=session.session_id,
            )
            substitute = self._fallback.synthesize("transcribe", {"language": session.language})
            return TranscriptionOutcome(
                session_id=session.session_id,
                state=session.state,
                text=substitute["transcript"],
                fragment_count=0,
                language=session.language,
                source=FALLBACK_SOURCE,
                degradation={"kind": "auth", "provider_id": "azure-speech", "message": cancellation.get("message") or ""},
            )
        if cancellation and not session.fragments:
            error = TransientError(
                f"Speech recognition canceled: {cancellation.get('message') or cancellation.get('kind')}",
                provider_id="azure-speech",
            )
            raise error
        return TranscriptionOutcome(
            session_id=session.session_id,
            state=session.state,
            text=session.accumulated_text or NO_SPEECH_TRANSCRIPT,
            fragment_count=len(session.fragments),
            language=session.language,
            source=session.source,
        )
