"""Shot list schemas — the record set recovered from a screenplay breakdown."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


SHOT_TYPES = (
    "wide",
    "medium",
    "close",
    "extreme-close",
    "two-shot",
    "over-the-shoulder",
    "point-of-view",
    "establishing",
    "insert",
    "cutaway",
)

CAMERA_ANGLES = (
    "eye-level",
    "high-angle",
    "low-angle",
    "dutch-angle",
    "bird-eye",
    "worm-eye",
)

MOVEMENTS = (
    "static",
    "panning",
    "tilting",
    "tracking",
    "zooming",
    "dolly",
    "crane",
    "handheld",
    "steadicam",
)

ShotType = Literal[
    "wide",
    "medium",
    "close",
    "extreme-close",
    "two-shot",
    "over-the-shoulder",
    "point-of-view",
    "establishing",
    "insert",
    "cutaway",
]

CameraAngle = Literal["eye-level", "high-angle", "low-angle", "dutch-angle", "bird-eye", "worm-eye"]

CameraMovement = Literal[
    "static",
    "panning",
    "tilting",
    "tracking",
    "zooming",
    "dolly",
    "crane",
    "handheld",
    "steadicam",
]


class ShotRecord(BaseModel):
    shot_number: int = Field(ge=1)
    shot_type: ShotType = "wide"
    camera_angle: CameraAngle = "eye-level"
    movement: CameraMovement = "static"
    description: str = ""
    action: str = ""
    dialogue: str = ""
    characters: list[str] = Field(default_factory=list)
    duration_seconds: int | None = None
    status: Literal["planned"] = "planned"
    lens: str | None = None
    framing: str | None = None
    visual_notes: str | None = None
    audio_notes: str | None = None
    props: str | None = None
    location: str | None = None
    time_of_day: str | None = None
    lighting_notes: str | None = None
    camera_notes: str | None = None


class ShotListPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    screenplay: str = ""
    scene_heading: str = ""
    page_number: int | None = None
    provider: str = "openai"
    model: str | None = None
    credential: str | None = None
    caller_id: str | None = None


class ShotListResponse(BaseModel):
    success: bool
    shots: list[ShotRecord] = Field(default_factory=list)
    count: int = 0
    error: str | None = None
    details: str | None = None
    hint: str | None = None

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)
