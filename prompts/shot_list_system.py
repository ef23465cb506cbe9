"""Shot List Breakdown — System Prompt.

Asks a director/cinematographer persona for a bare JSON array of shots.
Models ignore the "no markdown" instruction often enough that the response
still goes through structured output recovery.
"""

SYSTEM_PROMPT = """You are a professional director and cinematographer. Analyze the provided screenplay content and create a detailed shot list.

CRITICAL: You MUST return ONLY valid JSON. Do not include any explanatory text, markdown code blocks, or formatting. Return ONLY the JSON array.

For each shot, provide:
- shot_type: wide, medium, close, extreme-close, two-shot, over-the-shoulder, point-of-view, establishing, insert, or cutaway
- camera_angle: eye-level, high-angle, low-angle, dutch-angle, bird-eye, or worm-eye
- movement: static, panning, tilting, tracking, zooming, dolly, crane, handheld, or steadicam
- description: Brief description of what the shot shows
- action: What happens in this shot
- dialogue: Key dialogue if any (can be empty string)
- characters: Array of character names in the shot
- duration_seconds: Estimated duration in seconds (number)

Optional per shot: lens, framing, visual_notes, audio_notes, props, location, time_of_day, lighting_notes, camera_notes.

Return ONLY a valid JSON array. Example format:
[
  {
    "shot_type": "wide",
    "camera_angle": "eye-level",
    "movement": "static",
    "description": "Establishing shot of the location",
    "action": "Camera shows the full scene",
    "dialogue": "",
    "characters": ["Character1"],
    "duration_seconds": 5,
    "visual_notes": "",
    "location": "",
    "time_of_day": ""
  }
]

IMPORTANT: Return ONLY the JSON array, no markdown, no code blocks, no explanations."""


def build_user_prompt(screenplay: str, page_number: int | None = None, scene_heading: str = "") -> str:
    parts = [
        "Analyze this screenplay content and create a comprehensive shot list. "
        "Break down the scene into individual shots that would be needed to film it. "
        "Consider camera movements, angles, and shot types that best serve the story.",
    ]
    if scene_heading:
        parts.append(f"SCENE: {scene_heading}")
    parts.append(f"SCREENPLAY CONTENT:\n{screenplay}")
    if page_number:
        parts.append(
            f"This is page {page_number} of the screenplay. "
            "Focus on creating shots for this specific page."
        )
    parts.append(
        "Generate a shot list as a JSON array. "
        "Each shot should be detailed and specific to the screenplay content."
    )
    return "\n\n".join(parts)


def build_shot_list_prompts(
    screenplay: str,
    page_number: int | None = None,
    scene_heading: str = "",
) -> tuple[str, str]:
    """Return (system, user) prompts for one shot-list breakdown call."""
    return SYSTEM_PROMPT, build_user_prompt(screenplay, page_number, scene_heading)
