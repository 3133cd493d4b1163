"""Model catalog and ticket pricing.

Single source of truth for which models exist, whether they produce images or
video, which provider model runs them, and what a request costs in tickets.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from genqueue.models.concurrency_limit import ModelType
from genqueue.services.exceptions import InvalidParameters, NotFound

WAN_PRICES: dict[str, dict[int, int]] = {
    "480p": {5: 7, 10: 14},
    "720p": {5: 13, 10: 26},
    "1080p": {5: 20, 10: 40},
}

KLING_O3_PRICES: dict[int, int] = {
    3: 15,
    4: 18,
    5: 20,
    6: 24,
    7: 28,
    8: 32,
    9: 36,
    10: 40,
    11: 44,
    12: 48,
    13: 52,
    14: 56,
    15: 60,
}

KLING_V3_MIN_DURATION = 3
KLING_V3_MAX_DURATION = 15
KLING_V3_PER_SECOND_WITH_AUDIO = 8
KLING_V3_PER_SECOND_WITHOUT_AUDIO = 6

IMAGE_QUALITIES = ("2k", "4k")


@dataclass(frozen=True)
class CatalogModel:
    """One generation model the storefront sells."""

    model_id: str
    model_type: ModelType
    provider_model: str
    pricer: Callable[["PricingInput"], int]
    description: str = ""
    defaults: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PricingInput:
    resolution: Optional[str] = None
    duration: Optional[int] = None
    audio_enabled: bool = False
    quality: Optional[str] = None


def _flat(amount: int) -> Callable[[PricingInput], int]:
    def price(params: PricingInput) -> int:
        _check_quality(params.quality)
        return amount

    return price


def _flat_with_4k(base: int, at_4k: int) -> Callable[[PricingInput], int]:
    def price(params: PricingInput) -> int:
        _check_quality(params.quality)
        return at_4k if params.quality == "4k" else base

    return price


def _check_quality(quality: Optional[str]) -> None:
    if quality is not None and quality not in IMAGE_QUALITIES:
        raise InvalidParameters(f"Unsupported quality '{quality}'. Use one of: 2k, 4k.")


def _wan_price(params: PricingInput) -> int:
    by_duration = WAN_PRICES.get(params.resolution or "")
    if by_duration is None:
        raise InvalidParameters(
            f"Unsupported resolution '{params.resolution}'. Use one of: {', '.join(WAN_PRICES)}."
        )
    if params.duration not in by_duration:
        raise InvalidParameters(
            f"Unsupported duration {params.duration}s for {params.resolution}. Use 5 or 10 seconds."
        )
    return by_duration[params.duration]  # type: ignore[index]


def _kling_o3_price(params: PricingInput) -> int:
    if params.duration not in KLING_O3_PRICES:
        raise InvalidParameters(f"Unsupported duration {params.duration}s. Use 3 to 15 seconds.")
    return KLING_O3_PRICES[params.duration]  # type: ignore[index]


def _kling_v3_price(params: PricingInput) -> int:
    duration = params.duration
    if duration is None or not KLING_V3_MIN_DURATION <= duration <= KLING_V3_MAX_DURATION:
        raise InvalidParameters(f"Unsupported duration {duration}s. Use 3 to 15 seconds.")
    per_second = (
        KLING_V3_PER_SECOND_WITH_AUDIO if params.audio_enabled else KLING_V3_PER_SECOND_WITHOUT_AUDIO
    )
    return duration * per_second


CATALOG: dict[str, CatalogModel] = {
    model.model_id: model
    for model in (
        CatalogModel(
            "nano-banana", ModelType.IMAGE, "google/nano-banana", _flat(1), "Fast, artistic generation"
        ),
        CatalogModel(
            "nano-banana-pro",
            ModelType.IMAGE,
            "google/nano-banana-pro",
            _flat_with_4k(1, 2),
            "Premium quality, 2 tickets at 4K",
        ),
        CatalogModel(
            "seedream-4.5",
            ModelType.IMAGE,
            "bytedance/seedream-4.5",
            _flat(1),
            "Premium quality with excellent text rendering",
        ),
        CatalogModel("flux-2", ModelType.IMAGE, "black-forest-labs/flux-2-pro", _flat(1)),
        CatalogModel(
            "gemini-3-pro-image",
            ModelType.IMAGE,
            "google/gemini-3-pro-image",
            _flat_with_4k(1, 2),
            "Pro scanner, 2 tickets at 4K",
        ),
        CatalogModel(
            "gemini-2.5-flash-image",
            ModelType.IMAGE,
            "google/gemini-2.5-flash-image",
            _flat(1),
            "Fast generation",
        ),
        CatalogModel(
            "wan-2.5",
            ModelType.VIDEO,
            "wan-video/wan-2.5-i2v",
            _wan_price,
            "Image-to-video priced by resolution and duration",
            {"resolution": "720p", "duration": 5},
        ),
        CatalogModel(
            "kling-o3",
            ModelType.VIDEO,
            "kwaivgi/kling-o3",
            _kling_o3_price,
            "Image-to-video priced by duration",
            {"duration": 5},
        ),
        CatalogModel(
            "kling-v3",
            ModelType.VIDEO,
            "kwaivgi/kling-v3-pro",
            _kling_v3_price,
            "Image-to-video, per second with or without audio",
            {"duration": 5},
        ),
    )
}


def get_model(model_id: str) -> CatalogModel:
    """Look up a catalog model.

    Raises:
        NotFound: If the model is not sold
    """
    try:
        return CATALOG[model_id]
    except KeyError:
        raise NotFound(f"Unknown model '{model_id}'") from None


def _parse_duration(value: Any) -> int:
    error = InvalidParameters(f"Duration must be a whole number of seconds, got {value!r}")
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise error
    try:
        return int(value)
    except (TypeError, ValueError):
        raise error from None


def _parse_flag(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise InvalidParameters(f"{name} must be true or false, got {value!r}")


def normalize_parameters(model: CatalogModel, parameters: dict[str, Any]) -> dict[str, Any]:
    """Merge model defaults into request parameters and coerce the priced fields.

    Both the ticket price and the provider input are built from the result.

    Raises:
        InvalidParameters: duration is not a whole number or audio_enabled is not a boolean
    """
    merged = {**model.defaults, **{k: v for k, v in parameters.items() if v is not None}}
    if "duration" in merged:
        merged["duration"] = _parse_duration(merged["duration"])
    if "audio_enabled" in merged:
        merged["audio_enabled"] = _parse_flag("audio_enabled", merged["audio_enabled"])
    return merged


def pricing_input(model: CatalogModel, parameters: dict[str, Any]) -> PricingInput:
    """Extract pricing-relevant fields from request parameters, applying model defaults."""
    merged = normalize_parameters(model, parameters)
    quality = merged.get("quality")
    return PricingInput(
        resolution=merged.get("resolution"),
        duration=merged.get("duration"),
        audio_enabled=merged.get("audio_enabled", False),
        quality=quality.lower() if isinstance(quality, str) else quality,
    )


def ticket_cost(model_id: str, parameters: dict[str, Any]) -> int:
    """Price a generation request in tickets.

    Args:
        model_id: Catalog model identifier
        parameters: Request parameters (resolution, duration, audio_enabled, quality)

    Returns:
        Ticket cost, always positive

    Raises:
        NotFound: Unknown model
        InvalidParameters: Unsupported parameter combination for the model
    """
    model = get_model(model_id)
    return model.pricer(pricing_input(model, parameters))
