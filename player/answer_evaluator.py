"""Answer correctness, shared by host scoring and player feedback.

The comparison rules must match the host bit-for-bit, so values are coerced
to text the way the host's runtime does (integral floats print without a
fractional part, booleans are lowercase, lists are comma-joined) and integers
are parsed by leading digits only.
"""
import math
import re
from typing import Any, Mapping, Optional, Sequence

_LEADING_INT = re.compile(r"^\s*([+-]?[0-9]+)")


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (list, tuple)):
        return ",".join(_to_text(v) for v in value)
    return str(value)


def normalize_answer(value: Any) -> str:
    return _to_text(value).lower().strip()


def parse_int(value: Any) -> Optional[int]:
    """Parse the leading integer of a value's text form, or None."""
    match = _LEADING_INT.match(_to_text(value))
    return int(match.group(1)) if match else None


def is_blank(value: Any) -> bool:
    # Zero is a legitimate answer; empty text, None and False are not.
    if value is None or value is False:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, float):
        return math.isnan(value)
    return False


def _is_bare_zero(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value == 0


def _unwrap(submitted: Any):
    """Return (value, all_answers, recorded_type) from any submission shape."""
    if hasattr(submitted, "value") and hasattr(submitted, "all_answers"):
        return submitted.value, submitted.all_answers, getattr(submitted, "question_type", None)
    if isinstance(submitted, Mapping):
        answer = submitted.get("answer")
        value = answer if answer is not None else submitted
        return value, submitted.get("allAnswers"), submitted.get("questionType")
    return submitted, None, None


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return parse_int(value)
    if isinstance(value, (int, float)):
        return None if isinstance(value, float) and math.isnan(value) else value
    return parse_int(value)


def is_correct(submitted: Any, correct_answer: Any, question_type: Optional[str] = None) -> bool:
    """Decide whether a submission matches the revealed answer.

    ``submitted`` may be a raw value, a ``{answer, allAnswers, questionType}``
    mapping, or a Submission. The submission's own recorded type wins over
    ``question_type``.
    """
    # A bare zero counts as no submission; wrapped in a mapping or Submission it is an answer
    if submitted is None or is_blank(submitted) or _is_bare_zero(submitted):
        return False
    if is_blank(correct_answer):
        return False

    value, all_answers, recorded_type = _unwrap(submitted)
    kind = (recorded_type or question_type or "").lower().strip()

    if is_blank(value):
        return False

    normalized_correct = normalize_answer(correct_answer)

    if isinstance(all_answers, Sequence) and not isinstance(all_answers, str) and len(all_answers) > 0:
        return any(normalize_answer(answer) == normalized_correct for answer in all_answers)

    if kind == "numbers":
        submitted_number = _as_number(value)
        correct_number = parse_int(correct_answer)
        return (
            submitted_number is not None
            and correct_number is not None
            and submitted_number == correct_number
        )

    return normalize_answer(value) == normalized_correct
