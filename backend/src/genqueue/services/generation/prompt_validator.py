"""Prompt validation for generation requests.

Validates text prompts before a request is priced and admitted.
"""

from genqueue.services.exceptions import InvalidParameters

MAX_PROMPT_LENGTH = 2000


def validate_prompt(prompt) -> str:
    """Validate prompt text for generation.

    Args:
        prompt: Text prompt from the request parameters

    Returns:
        Validated prompt (unchanged if valid)

    Raises:
        InvalidParameters: If prompt is missing, not a string, blank, or exceeds
            2000 characters
    """
    if prompt is None:
        raise InvalidParameters("Prompt is required")

    if not isinstance(prompt, str):
        raise InvalidParameters(f"Prompt must be a string, got {type(prompt).__name__}")

    if not prompt.strip():
        raise InvalidParameters("Prompt cannot be empty")

    if len(prompt) > MAX_PROMPT_LENGTH:
        raise InvalidParameters(
            f"Prompt exceeds maximum length of {MAX_PROMPT_LENGTH} characters (got {len(prompt)})"
        )

    return prompt
