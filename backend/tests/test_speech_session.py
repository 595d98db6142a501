from __future__ import annotations

import time

import pytest

from healthhub_ai_core.errors import AuthError, InvalidTransitionError, TransientError
from healthhub_ai_core.fallback import FallbackSynthesizer, demo_transcript
from healthhub_ai_core.speech_session import NO_SPEECH_TRANSCRIPT, SpeechSessionManager
from provider_fakes import FakeRecognizer, make_credential

_CREDENTIAL = make_credential("azure-speech", speech_key="azure-test", speech_region="eastus")


def _manager(recognizer, timeout_seconds: float = 2.0) -> SpeechSessionManager:
    return SpeechSessionManager(lambda: recognizer, fallback=FallbackSynthesizer(), timeout_seconds=timeout_seconds)


def test_repeated_final_fragment_is_recorded_once():
    recognizer = FakeRecognizer(
        [
            ("recognizing", "chest"),
            ("recognized", "chest pain"),
            ("recognized", "chest pain "),
            ("recognizing", "and"),
            ("recognized", "and fever"),
            ("session_stopped", None),
        ]
    )
    outcome = _manager(recognizer).transcribe(b"audio", language="en-US", credential=_CREDENTIAL)

    assert outcome.text == "chest pain\nand fever"
    assert outcome.fragment_count == 2
    assert outcome.state == "stopped"
    assert outcome.source == "azure-speech"
    assert recognizer.stopped is True


def test_interim_results_do_not_reach_transcript():
    recognizer = FakeRecognizer([("recognizing", "headache"), ("recognized", ""), ("session_stopped", None)])
    outcome = _manager(recognizer).transcribe(b"audio", language="en-US", credential=_CREDENTIAL)
    assert outcome.text == NO_SPEECH_TRANSCRIPT
    assert outcome.fragment_count == 0


def test_session_without_speech_reports_no_speech_detected():
    recognizer = FakeRecognizer([("session_stopped", None)])
    outcome = _manager(recognizer).transcribe(b"audio", language="en-US", credential=_CREDENTIAL)

    assert outcome.state == "stopped"
    assert outcome.source == "azure-speech"
    assert outcome.text == "No speech detected in audio file."


def test_auth_cancellation_returns_labeled_demo_transcript():
    recognizer = FakeRecognizer([("canceled", "auth")])
    outcome = _manager(recognizer).transcribe(b"audio", language="pt-BR", credential=_CREDENTIAL)

    assert outcome.source == "fallback"
    assert outcome.text == demo_transcript("pt-BR")
    assert outcome.degradation["kind"] == "auth"
    output = outcome.as_output()
    assert output["demo"] is True
    assert output["source"] == "fallback"


def test_auth_error_raised_on_start_is_treated_as_auth_cancellation():
    class RejectingRecognizer(FakeRecognizer):
        def start(self, audio, language, credential, listener):
            raise AuthError("bad subscription key", status_code=401)

    outcome = _manager(RejectingRecognizer([])).transcribe(b"audio", language="en-US", credential=_CREDENTIAL)

    assert outcome.source == "fallback"
    assert outcome.text == demo_transcript("en-US")


def test_non_auth_cancellation_without_text_raises_transient_error():
    recognizer = FakeRecognizer([("canceled", "transient")])
    with pytest.raises(TransientError):
        _manager(recognizer).transcribe(b"audio", language="en-US", credential=_CREDENTIAL)


def test_non_auth_cancellation_keeps_text_already_recognized():
    recognizer = FakeRecognizer([("recognized", "shortness of breath"), ("canceled", "quota")])
    outcome = _manager(recognizer).transcribe(b"audio", language="en-US", credential=_CREDENTIAL)
    assert outcome.text == "shortness of breath"
    assert outcome.state == "stopped"


def test_session_without_end_event_times_out_with_accumulated_text():
    recognizer = FakeRecognizer([("recognized", "persistent cough")], hold_open=True)
    manager = _manager(recognizer, timeout_seconds=0.2)

    started = time.monotonic()
    outcome = manager.transcribe(b"audio", language="en-US", credential=_CREDENTIAL)

    assert time.monotonic() - started < 1.5
    assert outcome.state == "timed-out"
    assert outcome.text == "persistent cough"
    assert manager.active_sessions() == 0


def test_events_after_terminal_state_are_ignored():
    recognizer = FakeRecognizer(
        [
            ("recognized", "fever"),
            ("session_stopped", None),
            ("recognized", "late fragment"),
            ("canceled", "auth"),
            ("session_stopped", None),
        ]
    )
    outcome = _manager(recognizer).transcribe(b"audio", language="en-US", credential=_CREDENTIAL)

    assert outcome.text == "fever"
    assert outcome.state == "stopped"
    assert outcome.source == "azure-speech"


def test_transition_table_rejects_recognizing_from_idle():
    manager = _manager(FakeRecognizer([]))
    session, handle = manager.new_session("en-US")

    with pytest.raises(InvalidTransitionError):
        handle.on_recognized("too early")

    manager.start(session)
    handle.on_recognized("now listening")
    assert session.history == ["idle", "listening", "recognizing"]
    with pytest.raises(InvalidTransitionError):
        manager.start(session)


def test_caller_timeout_is_capped_by_manager_timeout():
    manager = _manager(FakeRecognizer([("recognized", "dizziness")]), timeout_seconds=0.2)
    started = time.monotonic()
    outcome = manager.transcribe(b"audio", language="en-US", credential=_CREDENTIAL, timeout_seconds=30.0)
    assert time.monotonic() - started < 1.5
    assert outcome.state == "timed-out"
