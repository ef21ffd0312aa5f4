"""
Condition evaluation, reply validation and message templates

Everything here is pure: no collaborator is called and nothing raises past
the public functions.
"""
import logging
import re
from datetime import datetime, time, timezone, tzinfo
from typing import Callable, Dict, Optional, Tuple

from ..exceptions import EvaluationError
from ..models.lead import LeadSnapshot


logger = logging.getLogger(__name__)

TEXT_FIELDS = ("message", "last_message", "stage", "value", "name", "phone")
TEMPLATE_FIELDS = TEXT_FIELDS

_EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")
_DIGIT_RE = re.compile(r"\d")
_LETTER_RE = re.compile(r"[^\W\d_]")
_CPF_RE = re.compile(r"(?<!\d)(\d{3}\.?\d{3}\.?\d{3}-?\d{2})(?!\d)")
_TEMPLATE_RE = re.compile(r"\{\{\s*lead\.(\w+)\s*\}\}")
_RANGE_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*-\s*(\d{1,2}):(\d{2})\s*$")

TEXT_OPERATORS: Dict[str, Callable[[str, str], bool]] = {
    "contains": lambda actual, expected: expected in actual,
    "not_contains": lambda actual, expected: expected not in actual,
    "equals": lambda actual, expected: actual == expected,
    "starts_with": lambda actual, expected: actual.startswith(expected),
    "ends_with": lambda actual, expected: actual.endswith(expected),
}


def _as_text(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def parse_time_range(literal: str) -> Tuple[time, time]:
    """Parse ``"HH:MM-HH:MM"``; raises ``EvaluationError`` when malformed"""
    match = _RANGE_RE.match(literal or "")
    if not match:
        raise EvaluationError(f"Malformed time range '{literal}'")
    try:
        start = time(int(match.group(1)), int(match.group(2)))
        end = time(int(match.group(3)), int(match.group(4)))
    except ValueError:
        raise EvaluationError(f"Malformed time range '{literal}'")
    return start, end


def time_in_range(moment: time, start: time, end: time) -> bool:
    """Half-open ``[start, end)``; wraps midnight when ``end < start``"""
    if start == end:
        return False
    if start < end:
        return start <= moment < end
    return moment >= start or moment < end


class ConditionEvaluator:
    """Evaluates a single condition-node predicate against a lead snapshot"""

    def __init__(self, tz: tzinfo = timezone.utc):
        self.tz = tz

    def evaluate(
        self,
        field: str,
        operator: str,
        value: str,
        snapshot: LeadSnapshot,
        now: datetime,
    ) -> bool:
        try:
            return self._evaluate(field, (operator or "").lower(), value or "", snapshot, now)
        except EvaluationError as e:
            logger.debug(f"Condition {field} {operator} {value!r} degraded to false: {e}")
            return False

    def _evaluate(
        self, field: str, operator: str, value: str, snapshot: LeadSnapshot, now: datetime
    ) -> bool:
        if field == "current_time":
            # the operator is implicitly "between"
            start, end = parse_time_range(value)
            return time_in_range(now.astimezone(self.tz).time(), start, end)

        compare = TEXT_OPERATORS.get(operator)
        if compare is None:
            raise EvaluationError(f"Unknown operator '{operator}'")
        expected = value.lower()

        if field == "tag":
            # any tag may satisfy; not_contains negates the whole match
            positive = "contains" if operator == "not_contains" else operator
            matched = any(
                TEXT_OPERATORS[positive](str(tag).lower(), expected)
                for tag in snapshot.tags or []
            )
            return not matched if operator == "not_contains" else matched

        if field not in TEXT_FIELDS:
            raise EvaluationError(f"Unknown field '{field}'")

        actual = _as_text(getattr(snapshot, field))
        if actual is None:
            raise EvaluationError(f"Field '{field}' is missing from the snapshot")
        return compare(actual.lower(), expected)


def _cpf_check_digit(digits, weight_start: int) -> int:
    total = sum(d * w for d, w in zip(digits, range(weight_start, 1, -1)))
    remainder = (total * 10) % 11
    return 0 if remainder == 10 else remainder


def is_valid_cpf(candidate: str) -> bool:
    digits = [int(ch) for ch in re.sub(r"\D", "", candidate)]
    if len(digits) != 11 or len(set(digits)) == 1:
        return False
    return (
        _cpf_check_digit(digits[:9], 10) == digits[9]
        and _cpf_check_digit(digits[:10], 11) == digits[10]
    )


def classify_reply(validation_type: str, text: Optional[str]) -> bool:
    """Deterministic check of the latest inbound message for a validate node"""
    if text is None or not text.strip():
        return False
    if validation_type == "any":
        return True
    if validation_type == "number":
        return bool(_DIGIT_RE.search(text))
    if validation_type == "email":
        return bool(_EMAIL_RE.search(text))
    if validation_type == "text":
        return bool(_LETTER_RE.search(text))
    if validation_type == "cpf":
        return any(is_valid_cpf(match) for match in _CPF_RE.findall(text))
    return False


def render_template(template: str, snapshot: Optional[LeadSnapshot]) -> str:
    """Substitute ``{{lead.<field>}}`` placeholders; unknown fields render empty"""
    def replace(match):
        name = match.group(1)
        if snapshot is None or name not in TEMPLATE_FIELDS:
            return ""
        return _as_text(getattr(snapshot, name)) or ""

    return _TEMPLATE_RE.sub(replace, template or "")
