"""Replicate API client for image and video generation with error classification."""

import asyncio
from typing import Any, Optional

import replicate
import structlog
from replicate.exceptions import ReplicateError as ReplicateAPIError

from genqueue.services.exceptions import (
    ContentPolicyError,
    PermanentError,
    TransientError,
    UpstreamProviderError,
)
from genqueue.services.generation.provider import GenerationResult

logger = structlog.get_logger()

PREDICTION_POLL_INTERVAL_SECONDS = 1.0
FINAL_PREDICTION_STATUSES = frozenset({"succeeded", "failed", "canceled"})


def classify_error(exception: Exception) -> UpstreamProviderError:
    """Classify exception into an UpstreamProviderError category.

    Args:
        exception: Original exception from Replicate SDK or network layer

    Returns:
        Classified UpstreamProviderError subclass instance

    Classification rules:
        - Timeout errors → TransientError
        - 429 (rate limit) → TransientError
        - 503 (service unavailable) → TransientError
        - 401/403 (authentication) → PermanentError
        - Content policy violations → ContentPolicyError
        - Connection errors → TransientError
        - Anything else → PermanentError
    """
    error_message = str(exception)
    error_message_lower = error_message.lower()

    if "timeout" in error_message_lower or isinstance(exception, TimeoutError):
        return TransientError(f"Network timeout: {error_message}")

    if "429" in error_message or "rate limit" in error_message_lower:
        return TransientError(f"Rate limit exceeded: {error_message}")

    if "503" in error_message or "service unavailable" in error_message_lower:
        return TransientError(f"Service unavailable: {error_message}")

    if (
        "401" in error_message
        or "403" in error_message
        or "unauthorized" in error_message_lower
        or "forbidden" in error_message_lower
        or "authentication" in error_message_lower
        or "invalid api token" in error_message_lower
    ):
        return PermanentError(f"Authentication failed: {error_message}")

    if (
        "content policy" in error_message_lower
        or "nsfw" in error_message_lower
        or "safety" in error_message_lower
        or "inappropriate" in error_message_lower
    ):
        return ContentPolicyError(f"Content policy violation: {error_message}")

    if isinstance(exception, (ConnectionError, OSError)):
        return TransientError(f"Connection error: {error_message}")

    return PermanentError(f"Permanent error: {error_message}")


def extract_output_url(output: Any) -> str:
    """Pull the asset URL out of a prediction output (format varies by model).

    Raises:
        PermanentError: If the output carries no URL
    """
    if isinstance(output, list) and len(output) > 0:
        output = output[0]
    if isinstance(output, dict):
        output = output.get("url") or output.get("video") or output.get("image")
    if output is None or isinstance(output, (list, dict)):
        raise PermanentError(f"Unexpected output format from Replicate: {type(output)}")
    return str(output)


class ReplicateProvider:
    """GenerationProvider backed by Replicate predictions.

    The SDK is synchronous, so its calls run in worker threads. The prediction
    is polled until it settles; if the caller is cancelled first (timeout or an
    admin cancel), the prediction is cancelled on Replicate as well.
    The prediction id doubles as the result image id.
    """

    def __init__(
        self,
        api_token: str,
        client: Optional[Any] = None,
        poll_interval: float = PREDICTION_POLL_INTERVAL_SECONDS,
    ):
        self.api_token = api_token
        self.poll_interval = poll_interval
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            if not self.api_token:
                raise PermanentError("REPLICATE_API_TOKEN not configured")
            self._client = replicate.Client(api_token=self.api_token)
        return self._client

    async def _create(self, provider_model: str, parameters: dict[str, Any]) -> Any:
        creating = asyncio.ensure_future(
            asyncio.to_thread(
                self.client.models.predictions.create, model=provider_model, input=parameters
            )
        )
        try:
            return await asyncio.shield(creating)
        except asyncio.CancelledError:
            # The request may still land; cancel whatever it creates
            created = (await asyncio.gather(creating, return_exceptions=True))[0]
            if not isinstance(created, BaseException):
                await self._cancel(created)
            raise

    async def _wait(self, prediction: Any) -> None:
        try:
            while prediction.status not in FINAL_PREDICTION_STATUSES:
                await asyncio.sleep(self.poll_interval)
                await asyncio.to_thread(prediction.reload)
        except asyncio.CancelledError:
            await self._cancel(prediction)
            raise

    async def _cancel(self, prediction: Any) -> None:
        try:
            await asyncio.to_thread(prediction.cancel)
        except Exception as e:
            logger.warning(
                "provider.prediction_cancel_failed",
                prediction_id=prediction.id,
                error=str(e),
                error_type=type(e).__name__,
            )
        else:
            logger.info("provider.prediction_cancelled", prediction_id=prediction.id)

    async def generate(self, provider_model: str, parameters: dict[str, Any]) -> GenerationResult:
        """Run one prediction and wait for it to finish.

        Args:
            provider_model: Replicate model slug (owner/name)
            parameters: Model input (prompt, duration, resolution, ...)

        Returns:
            GenerationResult with the output URL and prediction id

        Raises:
            TransientError: Temporary failure
            ContentPolicyError: Prompt or output rejected by the safety filter
            PermanentError: Permanent failure
        """
        try:
            prediction = await self._create(provider_model, parameters)
            await self._wait(prediction)
        except UpstreamProviderError:
            raise
        except ReplicateAPIError as e:
            raise classify_error(e) from e
        except (ConnectionError, OSError, TimeoutError) as e:
            raise classify_error(e) from e
        except Exception as e:
            # Unexpected errors are permanent so the job fails instead of looping
            raise PermanentError(f"Unexpected error: {e}") from e

        if prediction.status != "succeeded":
            reason = prediction.error or f"prediction {prediction.status}"
            raise classify_error(RuntimeError(str(reason)))

        result_url = extract_output_url(prediction.output)
        logger.info(
            "provider.prediction_succeeded",
            provider_model=provider_model,
            prediction_id=prediction.id,
        )
        return GenerationResult(result_url=result_url, result_image_id=prediction.id)
