"""Wire schemas for host <-> player messages.

Inbound host messages are validated at the boundary into a discriminated
union keyed on ``type``. Payload fields are camelCase on the wire and
snake_case in Python. Anything that does not fit raises
``MessageParseError`` so callers never chase missing keys.
"""
import json
import logging
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

QUESTION_TYPES = ("letters", "numbers", "multiple-choice", "sequence", "buzzin")

_TYPE_ALIASES = {
    "letters": "letters",
    "multiple-choice": "multiple-choice",
    "numbers": "numbers",
    "sequence": "sequence",
    "multi": "multiple-choice",
    "nearest": "numbers",
    "nearestwins": "numbers",
    "buzzin": "buzzin",
    "buzz-in": "buzzin",
    "buzz": "buzzin",
}

_TYPE_LABELS = {
    "letters": "LETTERS",
    "multiple-choice": "MULTIPLE CHOICE",
    "numbers": "NUMBERS",
    "sequence": "SEQUENCE",
    "buzzin": "BUZZ IN",
}

_PLACEHOLDER_KEYWORDS = ("waiting", "being set up", "please wait", "standby", "setting up")


class MessageParseError(ValueError):
    """Raised when an inbound frame is not a valid host message."""


def normalize_question_type(question_type: Optional[str]) -> str:
    """Map any host question type (including legacy names) onto QUESTION_TYPES."""
    if not question_type:
        return "buzzin"
    normalized = str(question_type).lower().strip()
    if normalized in _TYPE_ALIASES:
        return _TYPE_ALIASES[normalized]

    if "letter" in normalized:
        result = "letters"
    elif "multi" in normalized or "choice" in normalized:
        result = "multiple-choice"
    elif "number" in normalized or "nearest" in normalized:
        result = "numbers"
    elif "sequence" in normalized:
        result = "sequence"
    else:
        result = "buzzin"
    logger.warning("Unknown question type '%s', treating as %s", question_type, result)
    return result


def question_type_label(question_type: Optional[str]) -> str:
    return _TYPE_LABELS.get(normalize_question_type(question_type), "QUESTION")


def is_placeholder_question(text: Optional[str]) -> bool:
    """True when the host sent holding text instead of a real question."""
    if not text:
        return True
    lower_text = text.lower()
    return any(keyword in lower_text for keyword in _PLACEHOLDER_KEYWORDS)


# ---------------------------------------------------------------------------
# Payload schemas
# ---------------------------------------------------------------------------

class Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class QuestionPayload(Payload):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    type: Optional[str] = None
    text: Optional[str] = None
    q: Optional[str] = None
    options: List[Any] = Field(default_factory=list)
    image_url: Optional[str] = None
    go_wide_enabled: bool = False

    @field_validator("options", mode="before")
    @classmethod
    def none_options(cls, v):
        return [] if v is None else v


class TimerStatePayload(Payload):
    is_running: bool = False
    time_remaining: int = 0
    total_time: int = 0


class GameStatePayload(Payload):
    current_question: Optional[QuestionPayload] = None
    timer_state: Optional[TimerStatePayload] = None


class DisplayDataPayload(Payload):
    mode: Optional[str] = None
    images: Optional[List[Any]] = None
    rotation_interval: Optional[int] = None
    scores: Optional[List[Any]] = None
    current_game_state: Optional[GameStatePayload] = None


class TeamApprovedPayload(Payload):
    display_data: Optional[DisplayDataPayload] = None


class TimerStartPayload(Payload):
    seconds: Optional[int] = None
    timer_start_time: Optional[float] = None


class TimerPayload(Payload):
    seconds: Optional[int] = None


class RevealPayload(Payload):
    answer: Any = None
    correct_answer: Any = None
    selected_answers: Optional[List[Any]] = None

    @property
    def revealed_answer(self) -> Any:
        return self.answer if self.answer is not None else self.correct_answer


class PicturePayload(Payload):
    image: Optional[str] = None


class DisplayModePayload(Payload):
    mode: Optional[str] = None
    images: Optional[List[Any]] = None
    rotation_interval: Optional[int] = None
    scores: Optional[List[Any]] = None
    display_transition_delay: Optional[float] = None  # milliseconds


class LeaderboardPayload(Payload):
    scores: Optional[List[Any]] = None


class SlideshowPayload(Payload):
    images: Optional[List[Any]] = None
    rotation_interval: Optional[int] = None


class FastestPayload(Payload):
    team_name: Optional[str] = None
    team_photo: Optional[str] = None


class GoWidePayload(Payload):
    disabled: bool = False


class EmptyPayload(Payload):
    pass


# ---------------------------------------------------------------------------
# Inbound envelopes
# ---------------------------------------------------------------------------

class Envelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    timestamp: Optional[float] = None

    @field_validator("data", mode="before", check_fields=False)
    @classmethod
    def null_data(cls, v):
        return {} if v is None else v


class TeamApproved(Envelope):
    type: Literal["TEAM_APPROVED"]
    data: TeamApprovedPayload = Field(default_factory=TeamApprovedPayload)


class ApprovalPending(Envelope):
    type: Literal["APPROVAL_PENDING"]
    data: EmptyPayload = Field(default_factory=EmptyPayload)


class TeamDeclined(Envelope):
    type: Literal["TEAM_DECLINED"]
    data: EmptyPayload = Field(default_factory=EmptyPayload)


class QuestionMessage(Envelope):
    type: Literal["QUESTION"]
    data: QuestionPayload = Field(default_factory=QuestionPayload)


class TimerStart(Envelope):
    type: Literal["TIMER_START"]
    data: TimerStartPayload = Field(default_factory=TimerStartPayload)


class TimerTick(Envelope):
    type: Literal["TIMER"]
    data: TimerPayload = Field(default_factory=TimerPayload)


class TimeUp(Envelope):
    type: Literal["TIMEUP"]
    data: EmptyPayload = Field(default_factory=EmptyPayload)


class Lock(Envelope):
    type: Literal["LOCK"]
    data: EmptyPayload = Field(default_factory=EmptyPayload)


class Reveal(Envelope):
    type: Literal["REVEAL"]
    data: RevealPayload = Field(default_factory=RevealPayload)


class NextQuestion(Envelope):
    type: Literal["NEXT"]
    data: EmptyPayload = Field(default_factory=EmptyPayload)


class Picture(Envelope):
    type: Literal["PICTURE"]
    data: PicturePayload = Field(default_factory=PicturePayload)


class DisplayMode(Envelope):
    type: Literal["DISPLAY_MODE", "DISPLAY_UPDATE"]
    data: DisplayModePayload = Field(default_factory=DisplayModePayload)


class LeaderboardUpdate(Envelope):
    type: Literal["LEADERBOARD_UPDATE"]
    data: LeaderboardPayload = Field(default_factory=LeaderboardPayload)


class SlideshowUpdate(Envelope):
    type: Literal["SLIDESHOW_UPDATE"]
    data: SlideshowPayload = Field(default_factory=SlideshowPayload)


class Fastest(Envelope):
    type: Literal["FASTEST"]
    data: FastestPayload = Field(default_factory=FastestPayload)


class AutoDisableGoWide(Envelope):
    type: Literal["AUTO_DISABLE_GO_WIDE"]
    data: GoWidePayload = Field(default_factory=GoWidePayload)


class ScoreUpdate(Envelope):
    model_config = ConfigDict(extra="allow")

    type: Literal["SCORE_UPDATE"]
    data: dict = Field(default_factory=dict)


class BuzzerSelect(Envelope):
    """Another device's buzzer choice, relayed by the host with top-level fields."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    type: Literal["PLAYER_BUZZER_SELECT"]
    device_id: str
    buzzer_sound: Optional[str] = None
    team_name: Optional[str] = None


HostMessage = Annotated[
    Union[
        TeamApproved, ApprovalPending, TeamDeclined, QuestionMessage, TimerStart,
        TimerTick, TimeUp, Lock, Reveal, NextQuestion, Picture, DisplayMode,
        LeaderboardUpdate, SlideshowUpdate, Fastest, AutoDisableGoWide,
        ScoreUpdate, BuzzerSelect,
    ],
    Field(discriminator="type"),
]

_host_message_adapter = TypeAdapter(HostMessage)

HOST_MESSAGE_TYPES = (
    "TEAM_APPROVED", "APPROVAL_PENDING", "TEAM_DECLINED", "QUESTION", "TIMER_START",
    "TIMER", "TIMEUP", "LOCK", "REVEAL", "NEXT", "PICTURE", "DISPLAY_MODE",
    "DISPLAY_UPDATE", "LEADERBOARD_UPDATE", "SLIDESHOW_UPDATE", "FASTEST",
    "AUTO_DISABLE_GO_WIDE", "SCORE_UPDATE", "PLAYER_BUZZER_SELECT",
)


def parse_host_message(raw: Union[str, bytes, dict]) -> HostMessage:
    """Decode and validate one inbound frame."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MessageParseError(f"Invalid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise MessageParseError("Message must be a JSON object")
    msg_type = raw.get("type")
    if msg_type not in HOST_MESSAGE_TYPES:
        raise MessageParseError(f"Unknown message type: {msg_type!r}")
    try:
        return _host_message_adapter.validate_python(raw)
    except ValidationError as e:
        raise MessageParseError(f"Invalid {msg_type} payload: {e.error_count()} error(s)") from e


# ---------------------------------------------------------------------------
# Outbound message types
# ---------------------------------------------------------------------------

PLAYER_JOIN = "PLAYER_JOIN"
PLAYER_ANSWER = "PLAYER_ANSWER"
PLAYER_AWAY = "PLAYER_AWAY"
PLAYER_ACTIVE = "PLAYER_ACTIVE"
TEAM_PHOTO_UPDATE = "TEAM_PHOTO_UPDATE"
PLAYER_BUZZER_SELECT = "PLAYER_BUZZER_SELECT"
