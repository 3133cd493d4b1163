"""Generation provider boundary: prompt validation and the Replicate client."""

from genqueue.services.generation.provider import GenerationProvider, GenerationResult

__all__ = ["GenerationProvider", "GenerationResult"]
