"""
Ground-truth oracle: ask a vision-capable language model where a spread
should be split.

Only used to label training data. It is slow and costs money per call, so
nothing on the inference path depends on it.
"""

import base64
import json
import logging
import math
import mimetypes
from enum import Enum
from pathlib import Path
from typing import Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import OracleConfig

logger = logging.getLogger(__name__)

SPLIT_PROMPT = """You are an expert at analyzing scanned book images.

TASK: Decide whether this image is a TWO-PAGE SPREAD or a SINGLE PAGE, and if it is a spread, find the vertical line where it should be split into left and right pages.

STEP 1: IMAGE TYPE
- Two-page spread: two text blocks separated by a gutter, roughly symmetrical layout, binding line or shadow near the middle, usually wider than tall.
- Single page: one continuous text block, portrait orientation, no central gutter.

STEP 2: SPLIT POSITION (spreads only)
1. NEVER cut through text. The split must fall in the gap between the text blocks.
2. The book may be tilted. Follow the natural angle of the binding.
3. The gutter may be a dark shadow (camera scans), a bright gap (flatbed scans), curved distortion near the binding, or not visible at all (only the margin between text blocks).
4. When unsure, err toward the margins rather than toward text.

Return ONLY this JSON object:
{
  "isTwoPageSpread": <true|false>,
  "splitPosition": <integer 0-1000 where 0 = left edge, 500 = center, 1000 = right edge; 500 for a single page>,
  "confidence": "<high|medium|low>",
  "reasoning": "<one or two sentences on the visual cues you used>"
}"""

_DECODER = json.JSONDecoder()


class OracleError(RuntimeError):
    """Base class for labeling failures. The page is excluded from training."""


class OracleUnavailableError(OracleError):
    """The image could not be sent or the model could not be reached."""


class OracleResponseError(OracleError):
    """The model answered, but not with a well-formed split label."""


class Confidence(str, Enum):
    """How sure the labeler is about a split."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SplitLabel(BaseModel):
    """A split judgment. ``is_two_page_spread=False`` is a valid answer."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    is_two_page_spread: bool = Field(default=True, alias="isTwoPageSpread")
    split_position: int = Field(alias="splitPosition", ge=0, le=1000)
    confidence: Confidence
    reasoning: str = ""

    @field_validator("split_position", mode="before")
    @classmethod
    def _round_position(cls, value):
        if isinstance(value, bool):
            raise ValueError("splitPosition must be a number")
        if isinstance(value, float):
            if not math.isfinite(value):
                raise ValueError("splitPosition must be finite")
            return round(value)
        return value

    @field_validator("confidence", mode="before")
    @classmethod
    def _normalize_confidence(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value


@runtime_checkable
class SplitOracle(Protocol):
    """Anything that can label the split of a page image."""

    def label_split(self, image_ref: str | Path) -> SplitLabel:
        ...


def parse_split_response(text: str) -> SplitLabel:
    """Parse the model's reply into a SplitLabel.

    Tolerates prose or markdown fences around the JSON object, nothing else.

    Raises:
        OracleResponseError: If no well-formed label can be read
    """
    text = text or ""
    start = text.find("{")
    if start < 0:
        raise OracleResponseError(f"No JSON object in model response: {text[:200]!r}")

    # Decode from the first brace and ignore whatever prose follows the object
    try:
        data, _ = _DECODER.raw_decode(text, start)
    except json.JSONDecodeError as e:
        raise OracleResponseError(f"Model response is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise OracleResponseError("Model response JSON is not an object")

    try:
        return SplitLabel.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise OracleResponseError(f"Model response has invalid fields: {fields}") from e


class VisionSplitOracle:
    """Labels splits through an OpenAI-compatible chat-completions endpoint.

    One request per image; the image travels inline as a base64 data URL.
    Retries are left to the caller.

    Usage:
        with VisionSplitOracle(OracleConfig.from_env()) as oracle:
            label = oracle.label_split("spreads/page_0042.jpg")
    """

    def __init__(
        self,
        config: OracleConfig | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialize the oracle.

        Args:
            config: Endpoint settings. Read from the environment if None.
            client: HTTP client to use (tests pass one with a mock transport)
        """
        self.config = config or OracleConfig.from_env()
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=self.config.timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _image_data_url(self, image_ref: str | Path) -> str:
        """Load an image from disk or http(s) and encode it as a data URL."""
        ref = str(image_ref)

        if ref.startswith(("http://", "https://")):
            try:
                response = self._client.get(ref)
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise OracleUnavailableError(f"Failed to fetch image {ref}: {e}") from e
            data = response.content
            mime_type = response.headers.get("content-type", "image/jpeg").split(";")[0].strip()
        else:
            try:
                data = Path(ref).read_bytes()
            except OSError as e:
                raise OracleUnavailableError(f"Failed to read image {ref}: {e}") from e
            mime_type = mimetypes.guess_type(ref)[0] or "image/jpeg"

        encoded = base64.b64encode(data).decode("ascii")
        return f"data:{mime_type};base64,{encoded}"

    def label_split(self, image_ref: str | Path) -> SplitLabel:
        """Ask the model for the split of one image.

        Raises:
            OracleUnavailableError: Image unreadable or request failed
            OracleResponseError: Reply missing or not a well-formed label
        """
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "image_url", "image_url": {"url": self._image_data_url(image_ref)}},
                    {"type": "text", "text": SPLIT_PROMPT},
                ],
            }
        ]

        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"

        try:
            response = self._client.post(
                self.config.api_url,
                json={
                    "model": self.config.model,
                    "messages": messages,
                    "temperature": self.config.temperature,
                    "max_tokens": self.config.max_tokens,
                },
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise OracleUnavailableError(f"Vision model request failed: {e}") from e

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise OracleResponseError(f"Unexpected chat-completions payload: {e}") from e

        if not isinstance(content, str):
            raise OracleResponseError("Model returned no text content")

        label = parse_split_response(content)
        logger.debug(
            f"Oracle labeled {image_ref}: {label.split_position} ({label.confidence.value})"
        )
        return label
