"""Player-side protocol state machine.

Consumes validated host messages and local user actions, and owns the screen
phase plus everything the renderer needs: the current question, timer,
reveal/feedback flags, display-mode data and overlays. All mutation happens on
the event loop; every delayed transition is a named task that newer
authoritative messages cancel.
"""
import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

import config
from answer_evaluator import is_correct, is_blank
from messages import (
    PLAYER_ANSWER, PLAYER_JOIN, QuestionPayload, DisplayDataPayload,
    normalize_question_type, question_type_label, is_placeholder_question,
)
from timer_sync import TimerSynchronizer

logger = logging.getLogger(__name__)

GAME_PHASES = ("question", "ready-for-question")
# Phases where the team is not (yet) part of the game
ENTRY_PHASES = ("team-entry", "declined")
DISPLAY_MODES = ("basic", "slideshow", "scores")


class ActionRejected(ValueError):
    """A local user action is not valid in the current state."""


class Question(BaseModel):
    type: str = "buzzin"
    text: Optional[str] = None
    options: List[Any] = Field(default_factory=list)
    image_url: Optional[str] = None
    go_wide_enabled: bool = False
    revealed: bool = False
    revealed_answer: Any = None

    @classmethod
    def from_payload(cls, payload: QuestionPayload, image_url: Optional[str] = None) -> "Question":
        return cls(
            type=normalize_question_type(payload.type),
            text=payload.text or payload.q,
            options=payload.options,
            image_url=payload.image_url or image_url,
            go_wide_enabled=payload.go_wide_enabled,
        )

    @property
    def is_placeholder(self) -> bool:
        return is_placeholder_question(self.text)

    def same_content(self, other: "Question") -> bool:
        return (self.type, self.text, self.options, self.go_wide_enabled) == \
            (other.type, other.text, other.options, other.go_wide_enabled)

    def snapshot(self) -> dict:
        data = self.model_dump()
        data["label"] = question_type_label(self.type)
        data["is_placeholder"] = self.is_placeholder
        return data


@dataclass(frozen=True)
class Submission:
    """An answer exactly as it was when submitted; evaluated at reveal time."""
    value: Any
    question_type: str
    all_answers: Tuple[Any, ...] = ()
    submitted_at: int = 0
    response_time: int = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["all_answers"] = list(self.all_answers)
        return data


@dataclass
class DisplayState:
    mode: str = config.DEFAULT_DISPLAY_MODE
    slideshow_images: list = field(default_factory=list)
    rotation_interval: int = config.DEFAULT_ROTATION_INTERVAL_MS
    leaderboard_scores: list = field(default_factory=list)

    def switch_mode(self, mode: str):
        # Data of modes being left must not leak into the next one
        if mode != "slideshow":
            self.slideshow_images = []
            self.rotation_interval = config.DEFAULT_ROTATION_INTERVAL_MS
        if mode != "scores":
            self.leaderboard_scores = []
        if mode not in DISPLAY_MODES:
            logger.warning("Unknown display mode '%s'", mode)
        self.mode = mode


class PlayerStateMachine:
    def __init__(self, connection, identity, timer: Optional[TimerSynchronizer] = None,
                 approval_delay: float = config.APPROVAL_DISPLAY_DELAY,
                 lock_grace: float = config.LOCK_GRACE_SECONDS,
                 fastest_duration: float = config.FASTEST_OVERLAY_SECONDS,
                 tick_interval: float = config.TIMER_TICK_SECONDS,
                 go_wide_max_answers: int = config.GO_WIDE_MAX_ANSWERS):
        self.connection = connection
        self.identity = identity
        self.timer = timer or TimerSynchronizer()
        self.approval_delay = approval_delay
        self.lock_grace = lock_grace
        self.fastest_duration = fastest_duration
        self.tick_interval = tick_interval
        self.go_wide_max_answers = go_wide_max_answers

        self.phase = "team-entry"
        self.approved = False
        self.question: Optional[Question] = None
        self.shown_question_type: Optional[str] = None  # type as it was when the question was shown
        self.pending_image: Optional[str] = None  # PICTURE that arrived before its QUESTION
        self.go_wide_enabled = False
        self.revealed = False
        self.correct_answer: Any = None
        self.selected_answers: list = []
        self.submission: Optional[Submission] = None
        self.answer_delivered: Optional[bool] = None
        self.show_feedback = False
        self.answer_correct: Optional[bool] = None
        self.display = DisplayState()
        self.fastest: Optional[dict] = None
        self.selected_buzzers: Dict[str, Optional[str]] = {}
        self.listeners: List[Callable[[], None]] = []
        self._tasks: Dict[str, asyncio.Task] = {}  # approval, display, lock, fastest, ticker

        self._handlers = {
            "TEAM_APPROVED": self._on_team_approved,
            "APPROVAL_PENDING": self._on_approval_pending,
            "TEAM_DECLINED": self._on_team_declined,
            "QUESTION": self._on_question,
            "TIMER_START": self._on_timer_start,
            "TIMER": self._on_timer,
            "TIMEUP": self._on_time_up,
            "LOCK": self._on_lock,
            "REVEAL": self._on_reveal,
            "NEXT": self._on_next,
            "PICTURE": self._on_picture,
            "DISPLAY_MODE": self._on_display_mode,
            "DISPLAY_UPDATE": self._on_display_mode,
            "LEADERBOARD_UPDATE": self._on_leaderboard_update,
            "SLIDESHOW_UPDATE": self._on_slideshow_update,
            "FASTEST": self._on_fastest,
            "AUTO_DISABLE_GO_WIDE": self._on_auto_disable_go_wide,
            "SCORE_UPDATE": self._on_score_update,
            "PLAYER_BUZZER_SELECT": self._on_buzzer_select,
        }

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _schedule(self, name: str, delay: float, callback: Callable[[], None]):
        self._cancel(name)
        self._tasks[name] = asyncio.create_task(self._run_later(name, delay, callback))

    async def _run_later(self, name: str, delay: float, callback: Callable[[], None]):
        await asyncio.sleep(delay)
        if self._tasks.get(name) is asyncio.current_task():
            del self._tasks[name]
        try:
            callback()
        except Exception:
            logger.exception("Scheduled %s transition failed", name)
        self._notify()

    def _cancel(self, name: str):
        task = self._tasks.pop(name, None)
        if task is not None:
            task.cancel()
            logger.debug("Cancelled pending %s timer", name)

    def pending(self, name: str) -> bool:
        return name in self._tasks

    def _start_ticker(self):
        self._cancel("ticker")
        self._tasks["ticker"] = asyncio.create_task(self._tick_loop())

    async def _tick_loop(self):
        while self.timer.state.running and self.timer.state.remaining > 0:
            await asyncio.sleep(self.tick_interval)
            self.timer.tick()
            self._notify()
        if self._tasks.get("ticker") is asyncio.current_task():
            del self._tasks["ticker"]

    def close(self):
        """Cancel every pending timer (session teardown)."""
        for name in list(self._tasks):
            self._cancel(name)

    def _notify(self):
        for listener in list(self.listeners):
            try:
                listener()
            except Exception:
                logger.exception("State listener failed")

    # ------------------------------------------------------------------
    # Inbound host messages
    # ------------------------------------------------------------------

    def handle_message(self, message):
        handler = self._handlers.get(message.type)
        if handler is None:
            logger.debug("No handler for %s", message.type)
            return
        try:
            handler(message)
        except Exception:
            logger.exception("Error handling %s", message.type)
        self._notify()

    def _on_team_approved(self, message):
        display_data = message.data.display_data
        game_state = display_data.current_game_state if display_data else None

        self.approved = True
        self.identity.remember_team()
        self._cancel("approval")
        if display_data:
            self._apply_display_data(display_data)

        if game_state is not None:
            # Late joiner: skip the approval screen and sync to the live game
            if game_state.current_question is not None:
                self._show_question(game_state.current_question, go_wide=False)
                timer_state = game_state.timer_state
                if timer_state and timer_state.is_running:
                    self.timer.seed(timer_state.total_time, timer_state.time_remaining)
                    self._start_ticker()
                logger.info("Late joiner synced to current question (%s)", self.question.type)
            else:
                self.phase = "display"
                logger.info("Late joiner synced to display mode '%s'", self.display.mode)
            return

        self.phase = "approval"
        self._schedule("approval", self.approval_delay, self._approval_elapsed)
        logger.info("Team '%s' approved", self.identity.team_name)

    def _approval_elapsed(self):
        if self.phase == "approval":
            self.phase = "display"

    def _apply_display_data(self, data: DisplayDataPayload):
        if data.mode:
            self.display.mode = data.mode
        if data.mode == "slideshow" and data.images is not None:
            self.display.slideshow_images = list(data.images)
            if data.rotation_interval:
                self.display.rotation_interval = data.rotation_interval
        if data.mode == "scores" and data.scores is not None:
            self.display.leaderboard_scores = list(data.scores)

    def _on_approval_pending(self, message):
        self.phase = "approval"

    def _on_team_declined(self, message):
        self._cancel("approval")
        self.approved = False
        self.identity.forget_team()
        self.phase = "declined"
        logger.info("Team '%s' declined by host", self.identity.team_name)

    def _on_question(self, message):
        if self.phase in ENTRY_PHASES:
            logger.info("Ignoring QUESTION while in %s", self.phase)
            return
        self._show_question(message.data, go_wide=message.data.go_wide_enabled)

    def _show_question(self, payload: QuestionPayload, go_wide: bool):
        carried_image = self.pending_image or (self.question.image_url if self.question else None)
        incoming = Question.from_payload(payload, image_url=carried_image)

        # A newer question always supersedes scheduled screen changes
        self._cancel("display")
        self._cancel("approval")

        # Only a re-delivery into an open question is dropped. Once time is up
        # an identical QUESTION reopens answering like any other.
        closing = self.pending("lock") or self.timer.state.locked
        self._cancel("lock")
        if (not closing and self.phase == "question" and self.question is not None
                and not self.revealed and self.question.same_content(incoming)):
            logger.debug("Duplicate QUESTION ignored")
            return

        self._cancel("ticker")
        self.question = incoming
        self.shown_question_type = incoming.type
        self.pending_image = None
        self.go_wide_enabled = go_wide
        self._reset_answer_state()
        self.timer.reset()
        self.phase = "question"

    def _reset_answer_state(self):
        self.revealed = False
        self.correct_answer = None
        self.selected_answers = []
        self.submission = None
        self.answer_delivered = None
        self.show_feedback = False
        self.answer_correct = None

    def _on_timer_start(self, message):
        data = message.data
        host_start = data.timer_start_time or message.timestamp
        state = self.timer.state
        if state.running and host_start and state.host_start_timestamp == host_start:
            logger.debug("Duplicate TIMER_START ignored")
            return
        self._cancel("lock")
        self.timer.start(data.seconds or config.DEFAULT_TIMER_SECONDS, host_start)
        self._start_ticker()

    def _on_timer(self, message):
        self.timer.set_remaining(message.data.seconds or 0)
        if self.timer.state.running and not self.pending("ticker"):
            self._start_ticker()

    def _on_time_up(self, message):
        self._stop_countdown()
        if self.question is not None:
            self.question.image_url = None
        self.pending_image = None
        self._begin_lock()

    def _on_lock(self, message):
        self._stop_countdown()
        self._begin_lock()

    def _stop_countdown(self):
        self._cancel("ticker")
        self.timer.stop()

    def _begin_lock(self):
        # Inputs stay open for a grace window so in-flight answers still land
        if self.timer.state.locked or self.pending("lock"):
            return
        self._schedule("lock", self.lock_grace, self.timer.lock)

    def _on_reveal(self, message):
        data = message.data
        answer = data.revealed_answer
        correct = is_correct(self.submission, answer, self.shown_question_type)

        self._cancel("lock")
        self._cancel("ticker")
        self.timer.lock()
        self.revealed = True
        self.correct_answer = answer
        if data.selected_answers is not None:
            self.selected_answers = list(data.selected_answers)
        if self.question is not None:
            self.question.revealed = True
            self.question.revealed_answer = answer
        self.answer_correct = correct
        self.show_feedback = True
        logger.info("Answer revealed: %r (correct=%s)", answer, correct)

    def _on_next(self, message):
        for name in ("lock", "ticker", "fastest", "display", "approval"):
            self._cancel(name)
        self.question = None
        self.shown_question_type = None
        self.pending_image = None
        self.go_wide_enabled = False
        self._reset_answer_state()
        self.timer.reset()
        self.fastest = None
        if self.phase in ENTRY_PHASES:
            return
        # Keypad without question text while the next QUESTION is on its way
        self.phase = "ready-for-question"

    def _on_picture(self, message):
        image = message.data.image
        if not image:
            return
        if self.question is not None:
            self.question.image_url = image
        else:
            self.pending_image = image

    def _on_display_mode(self, message):
        if self.phase in GAME_PHASES:
            logger.debug("Ignoring %s during active game screen", message.type)
            return
        data = message.data
        if not data.mode:
            logger.warning("%s received without mode", message.type)
            return

        self.show_feedback = False
        self.answer_correct = None
        self.display.switch_mode(data.mode)
        if data.mode == "slideshow":
            if data.images is not None:
                self.display.slideshow_images = list(data.images)
                if data.rotation_interval:
                    self.display.rotation_interval = data.rotation_interval
            else:
                logger.warning("Slideshow mode without images")
        if data.mode == "scores":
            self.display.leaderboard_scores = list(data.scores or [])

        if self.phase in ENTRY_PHASES or self.phase == "waiting":
            return

        delay = (data.display_transition_delay or 0) / 1000
        if delay > 0:
            self._schedule("display", delay, self._enter_display)
        else:
            self._cancel("display")
            self.phase = "display"

    def _enter_display(self):
        if self.phase not in GAME_PHASES:
            self.phase = "display"

    def _on_leaderboard_update(self, message):
        if message.data.scores is not None:
            self.display.leaderboard_scores = list(message.data.scores)

    def _on_slideshow_update(self, message):
        data = message.data
        if data.images is not None:
            self.display.slideshow_images = list(data.images)
            if data.rotation_interval:
                self.display.rotation_interval = data.rotation_interval

    def _on_fastest(self, message):
        data = message.data
        if not data.team_name:
            logger.warning("FASTEST received without teamName")
            return
        self.fastest = {"team_name": data.team_name, "team_photo": data.team_photo}
        self._schedule("fastest", self.fastest_duration, self._hide_fastest)

    def _hide_fastest(self):
        self.fastest = None

    def _on_auto_disable_go_wide(self, message):
        self.go_wide_enabled = not message.data.disabled

    def _on_score_update(self, message):
        logger.debug("Score update received")

    def _on_buzzer_select(self, message):
        self.selected_buzzers[message.device_id] = message.buzzer_sound

    # ------------------------------------------------------------------
    # Local user actions
    # ------------------------------------------------------------------

    async def submit_team_name(self, name: str, team_photo: Optional[str] = None) -> bool:
        name = (name or "").strip()
        if not name:
            raise ActionRejected("Team name is required")
        if self.phase not in ENTRY_PHASES:
            raise ActionRejected(f"Cannot submit a team name while in {self.phase}")
        self.identity.team_name = name
        if team_photo:
            self.identity.team_photo = team_photo
        self.approved = False
        self.phase = "waiting"
        self._notify()
        return await self.send_join()

    async def send_join(self) -> bool:
        payload = {}
        if self.identity.team_photo:
            payload["teamPhoto"] = self.identity.team_photo
        if self.identity.buzzer_sound:
            payload["buzzerSound"] = self.identity.buzzer_sound
        return await self.connection.send(self.identity.envelope(PLAYER_JOIN, **payload))

    def retry_team_entry(self):
        if self.phase != "declined":
            raise ActionRejected(f"Nothing to retry while in {self.phase}")
        self.identity.team_name = ""
        self.phase = "team-entry"
        self._notify()

    def _check_can_answer(self):
        if self.phase != "question" or self.question is None:
            raise ActionRejected("No question is open")
        if self.revealed:
            raise ActionRejected("Answer already revealed")
        if self.timer.state.locked:
            raise ActionRejected("Time is up")

    def _build_submission(self, answer: Any) -> Submission:
        incoming = list(answer) if isinstance(answer, (list, tuple)) else [answer]
        incoming = [a for a in incoming if not is_blank(a)]
        if not incoming:
            raise ActionRejected("Answer is empty")

        question_type = self.shown_question_type or self.question.type
        submitted_at = self.timer.clock()
        previous = self.submission

        if self.go_wide_enabled:
            answers = list(previous.all_answers) if previous else []
            if len(answers) >= self.go_wide_max_answers:
                raise ActionRejected("Go-wide answer limit reached")
            for candidate in incoming:
                if len(answers) >= self.go_wide_max_answers:
                    break
                if candidate not in answers:
                    answers.append(candidate)
            value, all_answers = answers[0], tuple(answers)
        else:
            if previous is not None:
                raise ActionRejected("Answer already submitted")
            value, all_answers = incoming[0], ()

        return Submission(
            value=value,
            question_type=question_type,
            all_answers=all_answers,
            submitted_at=submitted_at,
            response_time=self.timer.response_latency(submitted_at),
        )

    async def submit_answer(self, answer: Any) -> Submission:
        """Record an answer snapshot and send it to the host once."""
        self._check_can_answer()
        submission = self._build_submission(answer)
        self.submission = submission
        self._notify()

        payload = {
            "answer": list(submission.all_answers) if submission.all_answers else submission.value,
            "questionType": submission.question_type,
            "responseTime": submission.response_time,
        }
        if submission.all_answers:
            payload["allAnswers"] = list(submission.all_answers)
        delivered = await self.connection.send(self.identity.envelope(PLAYER_ANSWER, **payload))
        if not delivered:
            logger.warning("Answer for team '%s' could not be delivered to host", self.identity.team_name)
        if self.submission is submission:
            self.answer_delivered = delivered
            self._notify()
        return submission

    # ------------------------------------------------------------------
    # Read-only view for the renderer
    # ------------------------------------------------------------------

    def snapshot(self) -> dict:
        return {
            "phase": self.phase,
            "approved": self.approved,
            "question": self.question.snapshot() if self.question else None,
            "timer": self.timer.snapshot(),
            "go_wide_enabled": self.go_wide_enabled,
            "revealed": self.revealed,
            "correct_answer": self.correct_answer,
            "selected_answers": list(self.selected_answers),
            "submission": self.submission.to_dict() if self.submission else None,
            "answer_delivered": self.answer_delivered,
            "show_feedback": self.show_feedback,
            "answer_correct": self.answer_correct,
            "display": asdict(self.display),
            "fastest": self.fastest,
            "selected_buzzers": dict(self.selected_buzzers),
        }
