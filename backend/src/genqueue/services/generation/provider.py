"""Provider contract used by the dispatcher."""

from dataclasses import dataclass
from typing import Any, Optional, Protocol


@dataclass(frozen=True)
class GenerationResult:
    result_url: str
    result_image_id: Optional[str] = None


class GenerationProvider(Protocol):
    """Anything that turns (provider model, parameters) into a generated asset.

    Implementations raise UpstreamProviderError subclasses on failure.
    """

    async def generate(self, provider_model: str, parameters: dict[str, Any]) -> GenerationResult: ...
