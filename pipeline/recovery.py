"""Structured output recovery — turn free-text LLM output into shot records.

Models asked for "a JSON array only" still wrap it in fences, prefix it with
prose, or run out of tokens halfway through the last element. Recovery runs
in stages, each only when the previous one fails to parse:

  1. strip markdown fences
  2. pick the candidate span (greedy array, else greedy object)
  3. brace-depth repair: keep everything up to the last closed top-level
     object and re-close the array
  4. coarse repair: truncate at the last "}" and re-close

The parsed value is then unwrapped (shots / shot_list / data, or a lone
record), each record's enum fields are normalized onto the allowed sets, and
shot numbers are assigned 1..n.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from pipeline.errors import ParseFailure
from schemas.shot_list import CAMERA_ANGLES, MOVEMENTS, SHOT_TYPES, ShotRecord

logger = logging.getLogger(__name__)

_FENCE_OPEN_RE = re.compile(r"^```(?:json|plaintext|text)?\s*\n?", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"\n?```\s*$", re.IGNORECASE)
_ARRAY_RE = re.compile(r"\[[\s\S]*\]")
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_TRAILING_COMMA_RE = re.compile(r",\s*$")

_WRAPPER_KEYS = ("shots", "shot_list", "data")
_SIGNATURE_FIELDS = ("shot_type", "camera_angle")

_OPTIONAL_TEXT_FIELDS = (
    "lens",
    "framing",
    "visual_notes",
    "audio_notes",
    "props",
    "location",
    "time_of_day",
    "lighting_notes",
    "camera_notes",
)


# ---------------------------------------------------------------------------
# Text stages
# ---------------------------------------------------------------------------

def strip_code_fences(text: str) -> str:
    cleaned = str(text or "").strip()
    cleaned = _FENCE_OPEN_RE.sub("", cleaned)
    cleaned = _FENCE_CLOSE_RE.sub("", cleaned)
    return cleaned.strip()


def _array_opens_first(text: str) -> bool:
    bracket = text.find("[")
    brace = text.find("{")
    return bracket != -1 and (brace == -1 or bracket < brace)


def extract_candidate(text: str) -> str:
    """Pick the span most likely to hold the JSON payload."""
    match = _ARRAY_RE.search(text)
    if match:
        return match.group(0)
    # An array that never closed: keep everything from its opening bracket.
    if _array_opens_first(text):
        return text[text.find("["):]
    match = _OBJECT_RE.search(text)
    if match:
        return match.group(0)
    return text


def repair_truncated_array(text: str) -> str | None:
    """Cut after the last closed top-level object and re-close the array.

    Quotes toggle string state and braces inside strings are ignored. A
    backslash marks the next character inert, in or out of a string.
    Returns None when no top-level object ever closes.
    """
    source = text.strip()
    depth = 0
    in_string = False
    escape_next = False
    last_close = -1

    for i, char in enumerate(source):
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                last_close = i

    if last_close < 0:
        return None

    start = source.find("[")
    if start < 0 or start > last_close:
        start = 0
    truncated = _TRAILING_COMMA_RE.sub("", source[start:last_close + 1])
    if not truncated.strip().endswith("]"):
        truncated += "\n]"
    return truncated


def _coarse_repair(text: str) -> str | None:
    last = text.rfind("}")
    if last <= 0:
        return None
    truncated = text[:last + 1].strip()
    if not truncated.startswith("[") or truncated.endswith("]"):
        return None
    return _TRAILING_COMMA_RE.sub("", truncated) + "\n]"


def _try_parse(text: str | None) -> tuple[bool, Any]:
    if text is None:
        return False, None
    try:
        return True, json.loads(text)
    except json.JSONDecodeError:
        return False, None


def parse_json_payload(raw: str) -> Any:
    """Run the text stages and return the first value that parses."""
    stripped = strip_code_fences(raw)
    candidate = extract_candidate(stripped)

    ok, value = _try_parse(candidate)
    if ok:
        return value

    # The greedy array match can stop at a nested "]" of a truncated element,
    # so repair from the outermost opening bracket instead.
    repair_source = stripped[stripped.find("["):] if _array_opens_first(stripped) else candidate
    repaired = repair_truncated_array(repair_source)
    ok, value = _try_parse(repaired)
    if ok:
        logger.info("Recovered structured output after truncation repair")
        return value

    ok, value = _try_parse(_coarse_repair(repaired if repaired is not None else repair_source))
    if ok:
        logger.info("Recovered structured output after coarse repair")
        return value

    logger.error("Structured output recovery failed (response length %d)", len(str(raw or "")))
    raise ParseFailure(
        "Failed to parse AI response. The AI did not return valid JSON.",
        raw=str(raw or ""),
    )


def unwrap_records(value: Any, raw: str = "") -> list[dict[str, Any]]:
    if isinstance(value, dict):
        for key in _WRAPPER_KEYS:
            if isinstance(value.get(key), list):
                value = value[key]
                break
        else:
            if any(value.get(name) for name in _SIGNATURE_FIELDS):
                value = [value]
            else:
                raise ParseFailure("Response is not an array and cannot be converted", raw=raw)
    if not isinstance(value, list):
        raise ParseFailure("Response is not an array and cannot be converted", raw=raw)

    records = [row for row in value if isinstance(row, dict)]
    if len(records) != len(value):
        logger.warning("Dropped %d non-object entries from shot list", len(value) - len(records))
    return records


# ---------------------------------------------------------------------------
# Field normalization
#
# Rules are ordered; the first substring hit wins, then exact membership,
# then the default.
# ---------------------------------------------------------------------------

_SHOT_TYPE_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("establishing",), "establishing"),
    (("extreme",), "extreme-close"),
    (("two",), "two-shot"),
    (("over", "shoulder", "ots"), "over-the-shoulder"),
    (("point", "pov"), "point-of-view"),
    (("insert",), "insert"),
    (("cutaway",), "cutaway"),
    (("close",), "close"),
    (("medium",), "medium"),
    (("wide",), "wide"),
)

_CAMERA_ANGLE_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("bird", "aerial", "overhead"), "bird-eye"),
    (("worm", "ground"), "worm-eye"),
    (("high", "above"), "high-angle"),
    (("low", "below"), "low-angle"),
    (("dutch", "tilted"), "dutch-angle"),
    (("eye", "level"), "eye-level"),
)

_MOVEMENT_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("sweep",), "panning"),
    (("pan",), "panning"),
    (("tilt",), "tilting"),
    (("track", "follow"), "tracking"),
    (("zoom",), "zooming"),
    (("dolly",), "dolly"),
    (("crane",), "crane"),
    (("handheld", "hand-held"), "handheld"),
    (("steadicam", "steady"), "steadicam"),
    (("static", "fixed", "still"), "static"),
)


def _normalize(value: Any, rules, allowed: tuple[str, ...], default: str) -> str:
    if not isinstance(value, str) or not value.strip():
        return default
    low = value.strip().lower()
    for needles, target in rules:
        if any(needle in low for needle in needles):
            return target
    return low if low in allowed else default


def normalize_shot_type(value: Any) -> str:
    return _normalize(value, _SHOT_TYPE_RULES, SHOT_TYPES, "wide")


def normalize_camera_angle(value: Any) -> str:
    return _normalize(value, _CAMERA_ANGLE_RULES, CAMERA_ANGLES, "eye-level")


def normalize_movement(value: Any) -> str:
    return _normalize(value, _MOVEMENT_RULES, MOVEMENTS, "static")


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _characters(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(name).strip() for name in value if str(name or "").strip()]
    if isinstance(value, str) and value.strip():
        return [part.strip() for part in value.split(",") if part.strip()]
    return []


def _duration(value: Any) -> int | None:
    try:
        seconds = int(round(float(value)))
    except (TypeError, ValueError):
        return None
    return seconds if seconds > 0 else None


def build_shot_record(row: dict[str, Any], index: int) -> ShotRecord:
    extras = {}
    for name in _OPTIONAL_TEXT_FIELDS:
        text = _text(row.get(name)).strip()
        if text:
            extras[name] = text
    return ShotRecord(
        shot_number=index + 1,
        shot_type=normalize_shot_type(row.get("shot_type")),
        camera_angle=normalize_camera_angle(row.get("camera_angle")),
        movement=normalize_movement(row.get("movement")),
        description=_text(row.get("description")),
        action=_text(row.get("action")),
        dialogue=_text(row.get("dialogue")),
        characters=_characters(row.get("characters")),
        duration_seconds=_duration(row.get("duration_seconds")),
        **extras,
    )


def recover_shot_records(raw: str) -> list[ShotRecord]:
    """Full pipeline: raw model text in, validated shot records out."""
    value = parse_json_payload(raw)
    rows = unwrap_records(value, raw=str(raw or ""))
    return [build_shot_record(row, index) for index, row in enumerate(rows)]
