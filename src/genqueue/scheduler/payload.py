"""Generation request schema, validation and pricing."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from genqueue.errors import ValidationError

SUPPORTED_LANGUAGES = (
    "uk-UA",
    "pl-PL",
    "en-US",
    "de-DE",
    "pt-BR",
    "es-ES",
    "ja-JP",
    "ru-RU",
    "fr-FR",
    "it-IT",
    "zh-CN",
    "ko-KR",
    "ar-SA",
    "th-TH",
    "tr-TR",
)
SUPPORTED_GENRES = (
    "noir_drama",
    "romance",
    "thriller",
    "family_drama",
    "sci_fi",
    "scifi_adventure",
    "fantasy",
    "horror",
    "comedy",
    "mystery",
    "military",
)
POINTS_OF_VIEW = ("first", "third")
VIOLENCE_LEVELS = ("none", "low", "moderate", "medium", "high")
MIN_MINUTES = 1
MAX_MINUTES = 180
MAX_PROMPT_CHARS = 3_000

REQUIRED_FIELDS = ("language", "genre", "minutes", "prompt")
OPTIONAL_FIELDS = ("pov", "audio_mode", "policy", "options")
_POLICY_FIELDS = ("no_explicit_content", "violence_level")
_OPTION_FIELDS = ("time_beacons", "tight_cadence")


@dataclass(slots=True)
class GenerationRequest:
    """Validated generation payload."""

    language: str
    genre: str
    minutes: int
    prompt: str
    pov: str | None = None
    audio_mode: bool | None = None
    policy: dict[str, Any] | None = None
    options: dict[str, bool] | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "language": self.language,
            "genre": self.genre,
            "minutes": self.minutes,
            "prompt": self.prompt,
        }
        if self.pov is not None:
            payload["pov"] = self.pov
        if self.audio_mode is not None:
            payload["audio_mode"] = self.audio_mode
        if self.policy is not None:
            payload["policy"] = dict(self.policy)
        if self.options is not None:
            payload["options"] = dict(self.options)
        return payload


def validate_payload(payload: object) -> GenerationRequest:  # noqa: C901, PLR0912
    """Check the raw payload against the fixed schema."""

    if not isinstance(payload, dict):
        raise ValidationError("Payload must be a JSON object.")

    missing = [name for name in REQUIRED_FIELDS if payload.get(name) in (None, "")]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            allowed=list(REQUIRED_FIELDS),
        )
    unknown = sorted(set(payload) - set(REQUIRED_FIELDS) - set(OPTIONAL_FIELDS))
    if unknown:
        raise ValidationError(
            f"Unknown fields: {', '.join(unknown)}",
            allowed=[*REQUIRED_FIELDS, *OPTIONAL_FIELDS],
        )

    language = payload["language"]
    if language not in SUPPORTED_LANGUAGES:
        raise ValidationError("Invalid language", allowed=list(SUPPORTED_LANGUAGES))

    genre = payload["genre"]
    if genre not in SUPPORTED_GENRES:
        raise ValidationError("Invalid genre", allowed=list(SUPPORTED_GENRES))

    minutes = payload["minutes"]
    if (
        isinstance(minutes, bool)
        or not isinstance(minutes, int)
        or not MIN_MINUTES <= minutes <= MAX_MINUTES
    ):
        raise ValidationError(
            f"Minutes must be an integer between {MIN_MINUTES} and {MAX_MINUTES}",
        )

    prompt = payload["prompt"]
    if not isinstance(prompt, str) or not prompt.strip():
        raise ValidationError("Prompt must be a non-empty string")
    if len(prompt) > MAX_PROMPT_CHARS:
        raise ValidationError(
            f"Prompt is too long ({len(prompt)} characters, max {MAX_PROMPT_CHARS})",
        )
    if not is_utf8_text(prompt):
        raise ValidationError("Prompt must be valid UTF-8 text")

    pov = payload.get("pov")
    if pov is not None and pov not in POINTS_OF_VIEW:
        raise ValidationError("Invalid point of view", allowed=list(POINTS_OF_VIEW))

    audio_mode = payload.get("audio_mode")
    if audio_mode is not None and not isinstance(audio_mode, bool):
        raise ValidationError("audio_mode must be a boolean")

    policy = payload.get("policy")
    if policy is not None:
        policy = _validate_policy(policy)

    options = payload.get("options")
    if options is not None:
        options = _validate_options(options)

    return GenerationRequest(
        language=language,
        genre=genre,
        minutes=minutes,
        prompt=prompt,
        pov=pov,
        audio_mode=audio_mode,
        policy=policy,
        options=options,
    )


def compute_cost(request: GenerationRequest, *, credits_per_minute: int) -> int:
    """Deterministic price of a request in credit units."""

    return request.minutes * credits_per_minute


def priority_for_cost(cost: int) -> int:
    """Dispatch priority: larger value is dispatched first."""

    return cost


def _validate_policy(policy: object) -> dict[str, Any]:
    if not isinstance(policy, dict):
        raise ValidationError("policy must be an object", allowed=list(_POLICY_FIELDS))
    unknown = sorted(set(policy) - set(_POLICY_FIELDS))
    if unknown:
        raise ValidationError(
            f"Unknown policy fields: {', '.join(unknown)}",
            allowed=list(_POLICY_FIELDS),
        )
    no_explicit = policy.get("no_explicit_content")
    if no_explicit is not None and not isinstance(no_explicit, bool):
        raise ValidationError("policy.no_explicit_content must be a boolean")
    violence = policy.get("violence_level")
    if violence is not None and violence not in VIOLENCE_LEVELS:
        raise ValidationError("Invalid violence_level", allowed=list(VIOLENCE_LEVELS))
    return dict(policy)


def _validate_options(options: object) -> dict[str, bool]:
    if not isinstance(options, dict):
        raise ValidationError("options must be an object", allowed=list(_OPTION_FIELDS))
    unknown = sorted(set(options) - set(_OPTION_FIELDS))
    if unknown:
        raise ValidationError(
            f"Unknown options fields: {', '.join(unknown)}",
            allowed=list(_OPTION_FIELDS),
        )
    for name, value in options.items():
        if not isinstance(value, bool):
            raise ValidationError(f"options.{name} must be a boolean")
    return dict(options)


def is_utf8_text(value: str) -> bool:
    """False for strings carrying lone surrogates, which cannot be stored."""

    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True
