"""
Caption Domain Models

Request/response DTOs for caption generation and per-platform presets.
"""

from typing import Literal, Optional
from pydantic import BaseModel, Field, field_validator

from app.domain.plans import Platform


class PlatformConfig(BaseModel):
    """Writing constraints for one platform."""
    char_limit: int
    optimal_chars: tuple[int, int]
    hashtag_range: tuple[int, int]
    style: str
    lengths: dict[str, int]
    cta_friendly: bool = True
    emoji_friendly: bool = True


PLATFORM_CONFIGS: dict[Platform, PlatformConfig] = {
    Platform.INSTAGRAM: PlatformConfig(
        char_limit=2200,
        optimal_chars=(125, 2200),
        hashtag_range=(5, 15),
        style="conversational",
        lengths={"short": 100, "medium": 300, "long": 800},
    ),
    Platform.TWITTER: PlatformConfig(
        char_limit=280,
        optimal_chars=(50, 240),
        hashtag_range=(1, 4),
        style="punchy",
        lengths={"short": 50, "medium": 100, "long": 200},
    ),
    Platform.TIKTOK: PlatformConfig(
        char_limit=300,
        optimal_chars=(50, 300),
        hashtag_range=(5, 10),
        style="friendly",
        lengths={"short": 50, "medium": 100, "long": 150},
    ),
    Platform.FACEBOOK: PlatformConfig(
        char_limit=63206,
        optimal_chars=(40, 500),
        hashtag_range=(1, 5),
        style="community-focused",
        lengths={"short": 80, "medium": 250, "long": 600},
    ),
    Platform.LINKEDIN: PlatformConfig(
        char_limit=3000,
        optimal_chars=(150, 1300),
        hashtag_range=(3, 5),
        style="professional",
        lengths={"short": 150, "medium": 500, "long": 1200},
        emoji_friendly=False,
    ),
    Platform.YOUTUBE: PlatformConfig(
        char_limit=5000,
        optimal_chars=(100, 1000),
        hashtag_range=(3, 8),
        style="descriptive",
        lengths={"short": 100, "medium": 400, "long": 1000},
    ),
}


def get_platform_config(platform: Platform) -> PlatformConfig:
    return PLATFORM_CONFIGS[platform]


class CaptionGenerationRequest(BaseModel):
    """Structured request passed to the caption generator."""
    platform: Platform
    topic: str = Field(..., min_length=1, max_length=500)
    tone: str = Field(..., min_length=1, max_length=50)
    length: Literal["short", "medium", "long"] = "medium"
    num_variants: int = Field(default=3, ge=1, le=5)
    description: Optional[str] = Field(default=None, max_length=2000)
    keywords: Optional[str] = None
    cta: Optional[str] = None
    include_emojis: bool = True

    @field_validator("platform", mode="before")
    @classmethod
    def parse_platform(cls, value):
        if isinstance(value, str):
            platform = Platform.parse(value)
            if platform is None:
                raise ValueError(f"Unsupported platform: {value}")
            return platform
        return value


class GenerateCaptionsRequest(CaptionGenerationRequest):
    """API request: a generation request on behalf of a user."""
    user_id: int = Field(..., ge=1)


class GeneratedCaption(BaseModel):
    caption: str
    hashtags: list[str] = []
    char_count: int
