"""
orchestrator.py — Song Creator · Session Orchestrator
=====================================================
Owns the canonical session state and is its only writer.

Every input (user intent, channel event, timer, audio callback, finished
background request) arrives as an event on one asyncio.Queue.  run() takes
them one at a time and hands each to a synchronous handler, so a transition
is never interleaved with another.  Anything slow (network, transcription,
generation polling, reconnect waits) runs in a background task that posts a
completion event tagged with the session epoch; after reset() the epoch has
moved on and those completions are dropped.

Phases:
  NOT_STARTED → CONNECTING → INTERVIEW_ACTIVE ⇄ RECORDING → TRANSCRIBING
  INTERVIEW_ACTIVE → ANSWER_SUBMITTED → INTERVIEW_ACTIVE (next question)
                                       → GENERATING (last answer)
  GENERATING → COMPLETE | FAILED
  any phase → NOT_STARTED on reset

Deployment modes:
  channel  answers go out over the websocket; the backend pushes questions
           (speech), progress and the result
  rest     questions, answers and generation go through BackendClient;
           progress is polled
"""

from __future__ import annotations

import asyncio
import logging
import webbrowser
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .backend import BackendClient
from .capture import AudioCapture
from .config import SongCreatorConfig
from .errors import (
    CaptureError,
    ConnectivityError,
    GenerationError,
    InvalidTransition,
    PlaybackError,
    ProtocolError,
    SubmissionError,
    TranscriptionError,
)
from .events import (
    AnswerAccepted,
    AnswerRejected,
    ChannelClosed,
    ChannelMessage,
    ChannelOpened,
    EditAnswer,
    GenerationAccepted,
    GenerationRequestFailed,
    InterviewStarted,
    InterviewStartFailed,
    PlaybackEnded,
    PlaybackFailed,
    ProgressPolled,
    QuestionLoaded,
    QuestionLoadFailed,
    ReconnectDue,
    ResetSession,
    StartInterview,
    StartRecording,
    StopRecording,
    SubmitAnswer,
    TranscriptionFailed,
    TranscriptionFinished,
)
from .generation import GenerationTracker
from .models import (
    ConnectionState,
    GenerationStatus,
    Notification,
    Phase,
    Question,
    RecordingState,
    SessionSnapshot,
    Severity,
    check_transition,
)
from .playback import AudioPlayback
from .protocol import (
    ErrorMessage,
    GenerationProgressMessage,
    MusicCompleteMessage,
    MusicErrorMessage,
    ProgressReport,
    SpeechMessage,
    StatusUpdateMessage,
    parse_message,
)
from .reconnect import ReconnectPolicy
from .transport import ChannelTransport

log = logging.getLogger("song_creator.orchestrator")

GENERATING_STATUS = "generating_music"

# Phases in which the guide character shows a question
_ASKING_PHASES = frozenset({
    Phase.INTERVIEW_ACTIVE,
    Phase.RECORDING,
    Phase.TRANSCRIBING,
    Phase.ANSWER_SUBMITTED,
})


@dataclass
class SessionState:
    phase: Phase = Phase.NOT_STARTED
    question_index: int = -1
    current_question: str = ""
    answers: list[str] = field(default_factory=list)
    pending_answer: str = ""
    recording: RecordingState = RecordingState.IDLE
    speaking: bool = False
    notification: Optional[Notification] = None
    last_error: Optional[str] = None
    submitting: bool = False
    next_question: Optional[Question] = None    # arrived while an answer was in flight
    failed_question: Optional[int] = None       # rest mode: index whose load failed

    @property
    def awaiting_answer(self) -> bool:
        """A question is on screen and has not been answered yet."""
        return (
            self.question_index >= 0
            and bool(self.current_question)
            and len(self.answers) == self.question_index
        )


class SessionOrchestrator:
    def __init__(
        self,
        config: Optional[SongCreatorConfig] = None,
        *,
        transport: Optional[ChannelTransport] = None,
        backend: Optional[BackendClient] = None,
        capture: Optional[AudioCapture] = None,
        playback: Optional[AudioPlayback] = None,
        tracker: Optional[GenerationTracker] = None,
        reconnect: Optional[ReconnectPolicy] = None,
    ) -> None:
        self.config = config or SongCreatorConfig()
        self.mode = self.config.backend.mode

        self.backend = backend or BackendClient.from_config(self.config.backend)
        if transport is None and self.mode == "channel":
            transport = ChannelTransport.from_config(self.config.backend)
        self.transport = transport
        self.playback = playback or AudioPlayback(self.config.audio)
        self.capture = capture or AudioCapture(self.config.audio, is_playing=lambda: self.playback.active)
        self.tracker = tracker or GenerationTracker.from_config(self.config.generation)
        self.reconnect = reconnect or ReconnectPolicy.from_config(self.config.reconnect)

        self._queue: asyncio.Queue = asyncio.Queue()
        self._state = SessionState()
        self._epoch = 0
        self._capture_op = 0
        self._tasks: set[asyncio.Task] = set()
        self._subscribers: list[Callable[[SessionSnapshot], Any]] = []
        self._last_snapshot: Optional[SessionSnapshot] = None
        self._runner: Optional[asyncio.Task] = None

        if self.transport is not None:
            self.transport.attach(self._post)
        self.playback.attach(self._post)
        self.tracker.attach(self._post)

        self._handlers: dict[type, Callable[[Any], None]] = {
            StartInterview: self._on_start,
            StartRecording: self._on_start_recording,
            StopRecording: self._on_stop_recording,
            EditAnswer: self._on_edit_answer,
            SubmitAnswer: self._on_submit,
            ResetSession: self._on_reset,
            ChannelOpened: self._on_channel_opened,
            ChannelMessage: self._on_channel_message,
            ChannelClosed: self._on_channel_closed,
            ReconnectDue: self._on_reconnect_due,
            TranscriptionFinished: self._on_transcription_finished,
            TranscriptionFailed: self._on_transcription_failed,
            PlaybackEnded: self._on_playback_ended,
            PlaybackFailed: self._on_playback_failed,
            InterviewStarted: self._on_interview_started,
            InterviewStartFailed: self._on_interview_start_failed,
            QuestionLoaded: self._on_question_loaded,
            QuestionLoadFailed: self._on_question_load_failed,
            AnswerAccepted: self._on_answer_accepted,
            AnswerRejected: self._on_answer_rejected,
            GenerationAccepted: self._on_generation_accepted,
            GenerationRequestFailed: self._on_generation_request_failed,
            ProgressPolled: self._on_progress_polled,
        }

    # ── Public operations ─────────────────────────────────────────────────────

    def start(self) -> None:
        self._post(StartInterview())

    def start_recording(self) -> None:
        self._post(StartRecording())

    def stop_recording(self) -> None:
        self._post(StopRecording())

    def set_answer(self, text: str) -> None:
        self._post(EditAnswer(text))

    def submit_answer(self) -> None:
        self._post(SubmitAnswer())

    def reset(self) -> None:
        self._post(ResetSession())

    def snapshot(self) -> SessionSnapshot:
        s = self._state
        if self.transport is not None:
            connection = self.transport.state
        else:
            connection = self.backend.state
        showing = s.phase in _ASKING_PHASES and bool(s.current_question)
        return SessionSnapshot(
            phase=s.phase,
            question_index=s.question_index,
            current_question=s.current_question,
            answers=tuple(s.answers),
            pending_answer=s.pending_answer,
            connection=connection,
            recording=s.recording,
            speaking=s.speaking,
            emotion="happy" if showing else "neutral",
            generation=self.tracker.snapshot(),
            notification=s.notification,
            last_error=s.last_error,
            reconnect_attempts=self.reconnect.attempt_count,
        )

    def subscribe(self, callback: Callable[[SessionSnapshot], Any]) -> Callable[[], None]:
        """Call *callback* with every new snapshot.  Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    # ── Event loop ────────────────────────────────────────────────────────────

    def _post(self, event) -> None:
        self._queue.put_nowait(event)

    async def run(self) -> None:
        """Consume events forever.  One handler runs at a time."""
        log.info("event=orchestrator_started mode=%s", self.mode)
        while True:
            event = await self._queue.get()
            try:
                self._dispatch(event)
            except InvalidTransition as exc:
                log.error("event=transition_rejected error=%s event_type=%s", exc, type(event).__name__)
                self._notify(Severity.ERROR, "Unexpected application state")
            except Exception as exc:
                log.exception("event=handler_error event_type=%s", type(event).__name__)
                self._state.last_error = str(exc)
                self._notify(Severity.ERROR, "Unexpected error")
            finally:
                self._queue.task_done()
            self._publish()

    def _dispatch(self, event) -> None:
        handler = self._handlers.get(type(event))
        if handler is None:
            log.warning("event=unhandled_event type=%s", type(event).__name__)
            return
        log.debug("event=dispatch type=%s", type(event).__name__)
        handler(event)

    def _publish(self) -> None:
        snap = self.snapshot()
        if snap == self._last_snapshot:
            return
        self._last_snapshot = snap
        for callback in list(self._subscribers):
            try:
                callback(snap)
            except Exception:
                log.exception("event=subscriber_error")

    async def flush(self) -> None:
        """Wait until every event posted so far has been handled."""
        await self._queue.join()

    async def wait_idle(self) -> None:
        """Wait until the queue is empty and no background request is running."""
        while True:
            await self._queue.join()
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                if self._queue.empty():
                    return
                continue
            await asyncio.gather(*pending, return_exceptions=True)

    async def __aenter__(self) -> "SessionOrchestrator":
        self._runner = asyncio.create_task(self.run(), name="session_orchestrator")
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    async def shutdown(self) -> None:
        self._teardown()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self.transport is not None:
            await self.transport.wait_closed()
        if self._runner is not None:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
            self._runner = None
        await self.backend.close()
        log.info("event=orchestrator_stopped")

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _set_phase(self, target: Phase) -> None:
        current = self._state.phase
        if current is target:
            return
        check_transition(current, target)
        self._state.phase = target
        log.info("event=state_change from=%s to=%s", current.value, target.value)

    def _notify(self, severity: Severity, message: str) -> None:
        self._state.notification = Notification(severity=severity, message=message)
        log.log(
            logging.ERROR if severity is Severity.ERROR else logging.INFO,
            "event=notification severity=%s message=%s", severity.value, message,
        )

    def _fail_with(self, message: str, detail: Optional[str] = None) -> None:
        self._state.last_error = detail or message
        self._notify(Severity.ERROR, message)

    def _stale(self, epoch: int) -> bool:
        if epoch != self._epoch:
            log.debug("event=stale_completion epoch=%d current=%d", epoch, self._epoch)
            return True
        return False

    def _channel_event_stale(self, conn_id: int) -> bool:
        if self.transport is None or conn_id != self.transport.connection_id:
            log.debug("event=stale_channel_event conn_id=%d", conn_id)
            return True
        return False

    @property
    def _terminal(self) -> bool:
        return self._state.phase in (Phase.COMPLETE, Phase.FAILED) or self.tracker.terminal

    def _answers_complete(self) -> bool:
        count = self.config.question_count
        if count is not None:
            return len(self._state.answers) >= count
        return len(self._state.answers) >= 1

    def _question_text(self, question: Question) -> str:
        if question.text:
            return question.text
        questions = self.config.interview.questions
        if 0 <= question.index < len(questions):
            return questions[question.index]
        return ""

    # ── Intents ───────────────────────────────────────────────────────────────

    def _on_start(self, _event: StartInterview) -> None:
        s = self._state
        if s.phase is Phase.NOT_STARTED:
            self._set_phase(Phase.CONNECTING)
            self.reconnect.reset()
            if self.mode == "channel":
                self._spawn(self.transport.open(), "channel_open")
            else:
                self._spawn(self._rest_start(self._epoch), "rest_start")
            self._notify(Severity.INFO, "Connecting to the server...")
            return

        if self._terminal:
            log.info("event=start_ignored phase=%s", s.phase.value)
            return

        if (
            self.mode == "channel"
            and self.transport.state is ConnectionState.DISCONNECTED
            and not self.reconnect.pending
        ):
            # Manual reconnect with a fresh attempt budget
            log.info("event=manual_reconnect phase=%s", s.phase.value)
            self.reconnect.reset()
            self._spawn(self.transport.open(), "channel_open")
            self._notify(Severity.INFO, "Reconnecting to the server...")
            return

        if self.mode == "rest" and s.failed_question is not None:
            index, s.failed_question = s.failed_question, None
            self._spawn(self._load_question(self._epoch, index), "question_load")
            return

        log.debug("event=start_ignored phase=%s", s.phase.value)

    def _on_start_recording(self, _event: StartRecording) -> None:
        s = self._state
        if s.phase is not Phase.INTERVIEW_ACTIVE or s.recording is not RecordingState.IDLE or not s.awaiting_answer:
            log.info(
                "event=recording_start_ignored phase=%s recording=%s",
                s.phase.value, s.recording.value,
            )
            return
        try:
            self.capture.start()
        except CaptureError as exc:
            self._fail_with("Could not start the microphone. Check microphone permissions.", str(exc))
            return
        self._set_phase(Phase.RECORDING)
        self._capture_op += 1
        s.recording = RecordingState.RECORDING
        self._notify(Severity.INFO, "Recording...")

    def _on_stop_recording(self, _event: StopRecording) -> None:
        s = self._state
        if s.recording is not RecordingState.RECORDING:
            log.info("event=recording_stop_ignored recording=%s", s.recording.value)
            return
        try:
            take = self.capture.stop()
        except CaptureError as exc:
            self._set_phase(Phase.INTERVIEW_ACTIVE)
            s.recording = RecordingState.IDLE
            self._fail_with("Could not finish the recording", str(exc))
            return

        self._set_phase(Phase.TRANSCRIBING)
        s.recording = RecordingState.TRANSCRIBING
        s.pending_answer = ""
        self._notify(Severity.INFO, "Recognizing speech...")
        op = self._capture_op
        if take.empty:
            log.info("event=transcription_skipped reason=empty_take")
            self._post(TranscriptionFinished(self._epoch, op, ""))
            return
        self._spawn(self._transcribe(self._epoch, op, take), "transcribe")

    def _on_edit_answer(self, event: EditAnswer) -> None:
        s = self._state
        if s.phase is not Phase.INTERVIEW_ACTIVE or s.recording is not RecordingState.IDLE:
            log.info("event=answer_edit_ignored phase=%s", s.phase.value)
            return
        s.pending_answer = event.text

    def _on_submit(self, _event: SubmitAnswer) -> None:
        s = self._state
        text = s.pending_answer.strip()
        if not text:
            self._notify(Severity.WARNING, "Please enter an answer")
            return
        if s.recording is not RecordingState.IDLE:
            self._notify(Severity.WARNING, "Wait for the recording to finish before sending")
            return
        if s.phase is not Phase.INTERVIEW_ACTIVE or s.submitting or not s.awaiting_answer:
            log.info("event=submit_ignored phase=%s submitting=%s", s.phase.value, s.submitting)
            return
        if self.mode == "channel" and not self.transport.connected:
            self._fail_with("Could not send the answer: not connected to the server")
            return

        self._set_phase(Phase.ANSWER_SUBMITTED)
        s.submitting = True
        self._spawn(self._send_answer(self._epoch, s.question_index, text), "answer_send")

    def _on_reset(self, _event: ResetSession) -> None:
        self._teardown()
        self._epoch += 1
        self._state = SessionState()
        self.tracker.reset()
        self.reconnect.reset()
        self.backend.state = ConnectionState.DISCONNECTED
        self._notify(Severity.INFO, "Application reset")
        log.info("event=session_reset epoch=%d", self._epoch)

    def _teardown(self) -> None:
        self.reconnect.cancel()
        self.tracker.stop()
        self.capture.abort()
        self._capture_op += 1
        self.playback.stop()
        if self.transport is not None:
            self.transport.close()
        for task in list(self._tasks):
            task.cancel()

    # ── Channel ───────────────────────────────────────────────────────────────

    def _on_channel_opened(self, event: ChannelOpened) -> None:
        if self._channel_event_stale(event.conn_id):
            return
        s = self._state
        self.reconnect.reset()
        if s.phase is Phase.CONNECTING:
            self._set_phase(Phase.INTERVIEW_ACTIVE)
        if s.phase is not Phase.GENERATING:
            self._notify(Severity.SUCCESS, "Connected to the server")

    def _on_channel_closed(self, event: ChannelClosed) -> None:
        if self._channel_event_stale(event.conn_id):
            return
        s = self._state
        if event.deliberate:
            log.info("event=channel_closed_deliberately")
            return
        if self._terminal:
            log.info("event=channel_closed_after_finish phase=%s", s.phase.value)
            return

        generating = s.phase is Phase.GENERATING
        was_exhausted = self.reconnect.exhausted
        delay = self.reconnect.schedule(self._reconnect_callback(self._epoch))
        if delay is None:
            if s.phase is Phase.CONNECTING:
                self._set_phase(Phase.NOT_STARTED)
            if was_exhausted:
                return
            if generating:
                self._state.last_error = event.error or "reconnect attempts exhausted"
                self._notify(
                    Severity.INFO,
                    "Connection lost. Your song is still being generated; press start to reconnect.",
                )
            else:
                self._fail_with(
                    "Could not reconnect to the server. Please reset and try again.",
                    event.error or "reconnect attempts exhausted",
                )
            return

        attempt = f"{self.reconnect.attempt_count}/{self.reconnect.max_attempts}"
        if generating:
            self._notify(Severity.INFO, "Your song is being generated. Please wait.")
        elif not event.opened:
            self._state.last_error = event.error or "connection failed"
            self._notify(Severity.ERROR, f"Cannot connect to the server. Retrying in {delay:g}s ({attempt})")
        else:
            self._notify(Severity.WARNING, f"Connection lost. Reconnecting in {delay:g}s ({attempt})")

    def _reconnect_callback(self, epoch: int) -> Callable[[], None]:
        return lambda: self._post(ReconnectDue(epoch))

    def _on_reconnect_due(self, event: ReconnectDue) -> None:
        if self._stale(event.epoch) or self._terminal:
            return
        if self.transport is None or self.transport.state is not ConnectionState.DISCONNECTED:
            return
        log.info("event=reconnect_attempt attempt=%d", self.reconnect.attempt_count)
        self._spawn(self.transport.open(), "channel_open")

    def _on_channel_message(self, event: ChannelMessage) -> None:
        if self._channel_event_stale(event.conn_id):
            return
        try:
            message = parse_message(event.raw)
            if message is None:
                return
            if isinstance(message, SpeechMessage):
                self._on_speech(message)
            elif isinstance(message, StatusUpdateMessage):
                self._on_status_update(message)
            elif isinstance(message, GenerationProgressMessage):
                self._on_push_progress(message.progress)
            elif isinstance(message, MusicCompleteMessage):
                self._on_push_complete(message.data.video_url)
            elif isinstance(message, MusicErrorMessage):
                self._on_push_error(message.data)
            elif isinstance(message, ErrorMessage):
                self._fail_with(message.message)
        except ProtocolError as exc:
            log.warning("event=message_rejected error=%s", exc)
            self._fail_with("Failed to process a message from the server", str(exc))

    def _on_speech(self, message: SpeechMessage) -> None:
        audio = message.audio_bytes()
        s = self._state
        if s.phase in (Phase.GENERATING, Phase.COMPLETE, Phase.FAILED):
            if audio:
                self._play(audio)
            return
        if s.phase not in _ASKING_PHASES:
            log.warning("event=speech_ignored phase=%s", s.phase.value)
            return

        advancing = s.submitting or len(s.answers) == s.question_index + 1
        index = s.question_index + 1 if advancing else s.question_index
        question = Question(index=index, text=message.text, audio=audio)
        if s.submitting:
            log.info("event=question_held index=%d", question.index)
            s.next_question = question
            return
        self._present(question)

    def _on_status_update(self, message: StatusUpdateMessage) -> None:
        self.tracker.backend_status = message.status
        if message.status == GENERATING_STATUS:
            if self._state.phase is not Phase.GENERATING:
                self._begin_generation(request=False)
        else:
            self._notify(Severity.INFO, "Processing...")

    def _on_push_progress(self, progress: int) -> None:
        if self._state.phase is not Phase.GENERATING:
            self._begin_generation(request=False)
        if self.tracker.apply_progress(progress):
            self._notify(Severity.INFO, f"Generating song... {self.tracker.progress}%")

    def _on_push_complete(self, video_url: Optional[str]) -> None:
        if self._state.phase is not Phase.GENERATING:
            self._begin_generation(request=False)
        if self._state.phase is Phase.GENERATING:
            self._complete(video_url)

    def _on_push_error(self, detail: str) -> None:
        if self._state.phase is Phase.GENERATING:
            self._fail_generation(detail)
        else:
            self._fail_with(f"An error occurred: {detail}", detail)

    # ── Questions and answers ─────────────────────────────────────────────────

    def _present(self, question: Question) -> None:
        s = self._state
        if question.index > len(s.answers) or question.index < s.question_index:
            log.warning("event=question_out_of_order index=%d answers=%d", question.index, len(s.answers))
            return
        if s.phase is Phase.ANSWER_SUBMITTED:
            self._set_phase(Phase.INTERVIEW_ACTIVE)
        if question.index != s.question_index:
            s.pending_answer = ""
        s.question_index = question.index
        s.current_question = self._question_text(question)
        s.failed_question = None
        log.info("event=question_presented index=%d", question.index)
        if question.audio:
            self._play(question.audio)

    def _play(self, audio: bytes) -> None:
        try:
            self.playback.play(audio)
        except PlaybackError as exc:
            self._state.speaking = False
            self._fail_with("Failed to play audio", str(exc))
            return
        self._state.speaking = True

    def _on_playback_ended(self, event: PlaybackEnded) -> None:
        if event.token != self.playback.token:
            return
        self._state.speaking = False

    def _on_playback_failed(self, event: PlaybackFailed) -> None:
        if event.token != self.playback.token:
            return
        self._state.speaking = False
        self._fail_with("Failed to play audio", event.error)

    def _on_interview_started(self, event: InterviewStarted) -> None:
        if self._stale(event.epoch) or self._state.phase is not Phase.CONNECTING:
            return
        self._set_phase(Phase.INTERVIEW_ACTIVE)
        self._notify(Severity.SUCCESS, "Connected to the server")
        self._present(event.question)

    def _on_interview_start_failed(self, event: InterviewStartFailed) -> None:
        if self._stale(event.epoch) or self._state.phase is not Phase.CONNECTING:
            return
        self._set_phase(Phase.NOT_STARTED)
        self._fail_with("Cannot connect to the server", event.error)

    def _on_question_loaded(self, event: QuestionLoaded) -> None:
        if self._stale(event.epoch):
            return
        if self._state.phase not in (Phase.ANSWER_SUBMITTED, Phase.INTERVIEW_ACTIVE):
            return
        self._present(event.question)

    def _on_question_load_failed(self, event: QuestionLoadFailed) -> None:
        if self._stale(event.epoch):
            return
        s = self._state
        s.failed_question = event.index
        if s.phase is Phase.ANSWER_SUBMITTED:
            self._set_phase(Phase.INTERVIEW_ACTIVE)
        self._fail_with("Could not load the next question. Press start to retry.", event.error)

    def _on_answer_accepted(self, event: AnswerAccepted) -> None:
        s = self._state
        if self._stale(event.epoch) or not s.submitting or event.index != s.question_index:
            return
        s.submitting = False
        s.answers.append(event.text)
        s.pending_answer = ""
        self._notify(Severity.SUCCESS, "Answer sent")
        log.info("event=answer_accepted index=%d answers=%d", event.index, len(s.answers))

        count = self.config.question_count
        if count is not None and len(s.answers) >= count:
            s.next_question = None
            self._begin_generation(request=self.mode == "rest")
            return

        held, s.next_question = s.next_question, None
        if held is not None:
            self._present(held)
        elif self.mode == "rest":
            self._spawn(self._load_question(self._epoch, event.index + 1), "question_load")

    def _on_answer_rejected(self, event: AnswerRejected) -> None:
        s = self._state
        if self._stale(event.epoch) or not s.submitting:
            return
        s.submitting = False
        s.next_question = None
        if s.phase is Phase.ANSWER_SUBMITTED:
            self._set_phase(Phase.INTERVIEW_ACTIVE)
        self._fail_with(f"Could not send the answer: {event.error}", event.error)

    # ── Transcription ─────────────────────────────────────────────────────────

    def _transcription_current(self, epoch: int, op: int) -> bool:
        return (
            not self._stale(epoch)
            and op == self._capture_op
            and self._state.recording is RecordingState.TRANSCRIBING
        )

    def _finish_transcription(self) -> None:
        s = self._state
        s.recording = RecordingState.IDLE
        if s.phase is Phase.TRANSCRIBING:
            self._set_phase(Phase.INTERVIEW_ACTIVE)

    def _on_transcription_finished(self, event: TranscriptionFinished) -> None:
        if not self._transcription_current(event.epoch, event.op):
            return
        self._finish_transcription()
        text = event.text.strip()
        if text:
            self._state.pending_answer = text
            self._notify(Severity.SUCCESS, "Speech recognized")
        else:
            self._state.pending_answer = ""
            self._notify(Severity.WARNING, "Could not recognize any speech. Please try again.")

    def _on_transcription_failed(self, event: TranscriptionFailed) -> None:
        if not self._transcription_current(event.epoch, event.op):
            return
        self._finish_transcription()
        self._state.pending_answer = ""
        self._fail_with("Speech recognition failed", event.error)

    # ── Generation ────────────────────────────────────────────────────────────

    def _begin_generation(self, request: bool) -> None:
        s = self._state
        if self.tracker.status is not GenerationStatus.NOT_STARTED:
            return
        if s.submitting or not self._answers_complete():
            log.warning(
                "event=generation_not_ready answers=%d expected=%s",
                len(s.answers), self.config.question_count,
            )
            return

        if s.recording is not RecordingState.IDLE:
            self.capture.abort()
            self._capture_op += 1
            s.recording = RecordingState.IDLE
        self._set_phase(Phase.GENERATING)

        poll = self.backend.generation_progress if self.config.progress_source == "poll" else None
        self.tracker.start(self._epoch, poll)
        self._notify(Severity.INFO, "Generating your music video")
        if request:
            self._spawn(self._request_generation(self._epoch, list(s.answers)), "generate_music")

    def _apply_report(self, report: ProgressReport) -> None:
        if report.status:
            self.tracker.backend_status = report.status
        if report.is_failed:
            self._fail_generation(report.error or report.status or "generation failed")
        elif report.is_complete:
            self._complete(report.video_url)
        elif report.progress is not None and self.tracker.apply_progress(report.progress):
            self._notify(Severity.INFO, f"Generating song... {self.tracker.progress}%")

    def _on_generation_accepted(self, event: GenerationAccepted) -> None:
        if self._stale(event.epoch) or self._state.phase is not Phase.GENERATING:
            return
        try:
            report = ProgressReport.from_payload(event.data)
        except ProtocolError as exc:
            log.info("event=generation_ack_unparsed error=%s", exc)
            return
        self._apply_report(report)

    def _on_generation_request_failed(self, event: GenerationRequestFailed) -> None:
        if self._stale(event.epoch) or self._state.phase is not Phase.GENERATING:
            return
        self._fail_generation(event.error)

    def _on_progress_polled(self, event: ProgressPolled) -> None:
        if self._stale(event.epoch) or self._state.phase is not Phase.GENERATING:
            return
        self._apply_report(event.report)

    def _complete(self, video_url: Optional[str]) -> None:
        self.tracker.complete(video_url)
        self._set_phase(Phase.COMPLETE)
        self._notify(Severity.SUCCESS, "Your music video is ready!")
        self._retire_channel()
        if video_url and self.config.generation.open_artifact:
            self._spawn(asyncio.to_thread(webbrowser.open, video_url), "open_artifact")

    def _fail_generation(self, detail: str) -> None:
        self.tracker.fail(detail)
        self._set_phase(Phase.FAILED)
        self._fail_with(f"An error occurred: {detail}", detail)
        self._retire_channel()

    def _retire_channel(self) -> None:
        self.reconnect.cancel()
        if self.transport is not None:
            self.transport.close()

    # ── Background work ───────────────────────────────────────────────────────

    async def _rest_start(self, epoch: int) -> None:
        try:
            await self.backend.start_interview()
            question = await self.backend.get_question(0)
        except ConnectivityError as exc:
            self._post(InterviewStartFailed(epoch, str(exc)))
            return
        self._post(InterviewStarted(epoch, question))

    async def _load_question(self, epoch: int, index: int) -> None:
        try:
            question = await self.backend.get_question(index)
        except ConnectivityError as exc:
            self._post(QuestionLoadFailed(epoch, index, str(exc)))
            return
        self._post(QuestionLoaded(epoch, question))

    async def _send_answer(self, epoch: int, index: int, text: str) -> None:
        try:
            if self.mode == "channel":
                await self.transport.send(text)
            else:
                await self.backend.submit_answer(text, index)
        except SubmissionError as exc:
            self._post(AnswerRejected(epoch, index, str(exc)))
            return
        self._post(AnswerAccepted(epoch, index, text))

    async def _transcribe(self, epoch: int, op: int, take) -> None:
        try:
            text = await self.backend.transcribe(take.payload, take.filename, take.mime)
        except TranscriptionError as exc:
            self._post(TranscriptionFailed(epoch, op, str(exc)))
            return
        self._post(TranscriptionFinished(epoch, op, text))

    async def _request_generation(self, epoch: int, answers: list[str]) -> None:
        try:
            data = await self.backend.generate_music(answers)
        except GenerationError as exc:
            self._post(GenerationRequestFailed(epoch, str(exc)))
            return
        self._post(GenerationAccepted(epoch, data if isinstance(data, dict) else {}))
