"""
Caption Generator

Uses the google.genai SDK to write platform-optimized caption variants.
When no API key is configured, or the model answers with something that
is not usable caption JSON, captions are built from tone templates instead.
"""

import asyncio
import json
import logging
import re
from typing import Any, Optional

from google import genai
from google.genai import types

from app.config.settings import Settings
from app.domain.captions import (
    CaptionGenerationRequest,
    GeneratedCaption,
    PlatformConfig,
    get_platform_config,
)
from app.domain.plans import Platform
from app.infrastructure.exceptions import CaptionGenerationError


logger = logging.getLogger(__name__)


# Each template is (emoji, text); ``{topic}`` is substituted.
TONE_TEMPLATES: dict[str, list[tuple[str, str]]] = {
    "Casual": [
        ("", "Hey! Just wanted to share something cool about {topic}. What do you think?"),
        ("", "So I've been thinking about {topic} lately... anyone else?"),
        ("", "Quick question about {topic}: what's your take on this?"),
    ],
    "Professional": [
        ("", "Insights on {topic}: here's what industry leaders are saying."),
        ("", "Professional perspective on {topic} and its impact on business."),
        ("", "Key considerations for {topic} in today's market landscape."),
    ],
    "Friendly": [
        ("🌟", "Let's chat about {topic}! I'd love to hear your thoughts."),
        ("💙", "{topic} is something I'm really excited about. What about you?"),
        ("🤗", "Sharing some thoughts on {topic}. Hope you find this helpful!"),
    ],
    "Motivational": [
        ("💪", "Ready to tackle {topic}? You've got this!"),
        ("🚀", "{topic} is your next challenge. Are you ready to rise to it?"),
        ("⚡", "Time to turn {topic} into your strength. Let's do this!"),
    ],
    "Inspirational": [
        ("✨", "{topic} reminds us that every journey begins with a single step."),
        ("🌟", "The beauty of {topic} lies in the possibilities it creates."),
        ("💫", "{topic} teaches us that growth happens outside our comfort zone."),
    ],
    "Educational": [
        ("📚", "Let's break down {topic}. Here's what you need to know."),
        ("🎓", "Learning about {topic}? Here are the key points to remember."),
        ("📖", "Understanding {topic} starts with these fundamental concepts."),
    ],
    "Humorous": [
        ("😂", "{topic}, because life's too short to be serious all the time!"),
        ("😄", "Who else finds {topic} absolutely hilarious? Just me?"),
        ("🤣", "{topic} in a nutshell: *insert relatable chaos here*"),
    ],
    "Bold": [
        ("🔥", "{topic}, and I'm not holding back. Here's the truth."),
        ("💥", "Bold statement: {topic} is about to change everything."),
        ("⚡", "{topic} isn't for the faint of heart. Ready to dive in?"),
    ],
}

EXPANSIONS = (
    " Here's what I've learned about {topic} and why it matters.",
    " The more I explore {topic}, the more I realize its potential.",
    " What's your experience with {topic}? I'd love to hear your thoughts!",
    " There's so much to discover about {topic}, and this is just the beginning.",
    " The key to understanding {topic} is to start with the basics and build from there.",
    " Every day I learn something new about {topic}, and it never ceases to amaze me.",
    " {topic} reminds me that growth happens when we step outside our comfort zones.",
)

PLATFORM_HASHTAGS: dict[Platform, tuple[str, ...]] = {
    Platform.INSTAGRAM: ("instagram", "insta", "socialmedia", "content", "marketing"),
    Platform.TWITTER: ("twitter", "x", "social", "content"),
    Platform.TIKTOK: ("tiktok", "viral", "fyp", "trending", "social"),
    Platform.FACEBOOK: ("facebook", "community", "socialmedia"),
    Platform.LINKEDIN: ("linkedin", "business", "career", "leadership"),
    Platform.YOUTUBE: ("youtube", "video", "creator", "subscribe"),
}

GENERIC_HASHTAGS = ("motivation", "inspiration", "tips", "growth", "success")


class CaptionGenerator:
    """
    Gemini-backed caption writer with a template fallback.

    Args:
        api_key: Google AI API key; None selects template generation only
        model: Gemini model name
        client: Pre-built genai client (tests)
    """

    TEMPERATURE = 0.8
    MAX_OUTPUT_TOKENS = 1024

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gemini-2.0-flash",
        client: Optional[genai.Client] = None,
    ):
        self._model = model
        self._client = client
        if self._client is None and api_key:
            self._client = genai.Client(api_key=api_key)

        if self._client is None:
            logger.info("No Google API key configured, captions will use templates")
        else:
            logger.info(f"CaptionGenerator initialized with model: {self._model}")

    @classmethod
    def from_settings(cls, settings: Settings) -> "CaptionGenerator":
        return cls(api_key=settings.google_api_key, model=settings.gemini_model)

    @property
    def llm_enabled(self) -> bool:
        return self._client is not None

    async def generate_captions(self, request: CaptionGenerationRequest) -> list[GeneratedCaption]:
        """
        Generate ``request.num_variants`` captions.

        Raises:
            CaptionGenerationError if the Gemini call itself fails
        """
        if self._client is None:
            return self.generate_template_captions(request)

        config = get_platform_config(request.platform)
        prompt = f"{self._build_system_prompt(request.platform, config)}\n\n{self._build_user_prompt(request)}"

        try:
            response = await asyncio.to_thread(
                lambda: self._client.models.generate_content(
                    model=self._model,
                    contents=prompt,
                    config=types.GenerateContentConfig(
                        temperature=self.TEMPERATURE,
                        max_output_tokens=self.MAX_OUTPUT_TOKENS,
                        response_mime_type="application/json",
                    ),
                )
            )
        except Exception as e:
            raise CaptionGenerationError(
                f"Caption generation failed: {e}",
                model=self._model,
                operation="generate_captions",
                original_error=e,
            ) from e

        captions = self._parse_response(response.text or "", request)
        if not captions:
            logger.warning("Gemini returned no usable captions, using templates")
            return self.generate_template_captions(request)

        return captions

    # =========================================================================
    # Prompting
    # =========================================================================

    def _build_system_prompt(self, platform: Platform, config: PlatformConfig) -> str:
        low, high = config.optimal_chars
        tags_low, tags_high = config.hashtag_range
        return f"""You are an expert social media content creator specializing in {platform.value} captions.

Platform Rules:
- Character limit: {config.char_limit} characters
- Optimal length: {low}-{high} characters
- Hashtags: {tags_low}-{tags_high} hashtags
- Style: {config.style}
- Include CTAs: {config.cta_friendly}
- Emoji friendly: {config.emoji_friendly}

Respond in JSON format:
{{
    "captions": [
        {{"caption": "Caption text", "hashtags": ["tag1", "tag2"], "char_count": 123}}
    ]
}}"""

    def _build_user_prompt(self, request: CaptionGenerationRequest) -> str:
        parts = [
            f'Create {request.num_variants} {request.tone.lower()} captions for '
            f'{request.platform.value} about "{request.topic}".'
        ]
        if request.description and request.description.strip():
            parts.append(f"Additional context and details:\n{request.description}")
        if request.keywords and request.keywords.strip():
            parts.append(f"Include these keywords: {request.keywords}")
        if request.cta and request.cta.strip():
            parts.append(f"Include this call-to-action: {request.cta}")
        parts.append(
            f"Length: {request.length}\nInclude emojis: {'Yes' if request.include_emojis else 'No'}"
        )
        return "\n\n".join(parts)

    def _parse_response(
        self, response_text: str, request: CaptionGenerationRequest
    ) -> list[GeneratedCaption]:
        """Parse caption JSON, handling markdown code blocks."""
        text = response_text.strip()
        if text.startswith("```json"):
            text = text[7:]
        elif text.startswith("```"):
            text = text[3:]
        if text.endswith("```"):
            text = text[:-3]

        try:
            data: Any = json.loads(text.strip())
        except json.JSONDecodeError:
            logger.warning("Gemini response was not valid JSON")
            return []

        items = data.get("captions") if isinstance(data, dict) else None
        if not isinstance(items, list):
            return []

        limit = get_platform_config(request.platform).char_limit
        captions = []
        for item in items:
            if not isinstance(item, dict) or not isinstance(item.get("caption"), str):
                continue
            caption = item["caption"].strip()[:limit]
            if not caption:
                continue
            hashtags = [
                str(tag).lstrip("#") for tag in item.get("hashtags") or [] if str(tag).strip()
            ]
            captions.append(GeneratedCaption(caption=caption, hashtags=hashtags, char_count=len(caption)))

        return captions[: request.num_variants]

    # =========================================================================
    # Template Fallback
    # =========================================================================

    def generate_template_captions(self, request: CaptionGenerationRequest) -> list[GeneratedCaption]:
        """Deterministic captions built from tone templates."""
        config = get_platform_config(request.platform)
        target = config.lengths.get(request.length, config.lengths["medium"])
        templates = TONE_TEMPLATES.get(request.tone.title(), TONE_TEMPLATES["Casual"])
        use_emojis = request.include_emojis and config.emoji_friendly
        hashtags = self._build_hashtags(request, config)

        captions = []
        for i in range(request.num_variants):
            emoji, text = templates[i % len(templates)]
            caption = text.format(topic=request.topic)
            if use_emojis and emoji:
                caption = f"{emoji} {caption}"

            if request.description and request.description.strip():
                first_sentence = re.split(r"[.!?]+", request.description.strip())[0].strip()
                if first_sentence:
                    caption += f" {first_sentence}."

            caption = self._fit_length(caption, request.topic, target, offset=i)

            if request.cta and request.cta.strip() and config.cta_friendly:
                caption += f" {request.cta.strip()}"

            caption = self._truncate(caption, config.char_limit)
            captions.append(GeneratedCaption(caption=caption, hashtags=hashtags, char_count=len(caption)))

        return captions

    def _fit_length(self, caption: str, topic: str, target: int, offset: int = 0) -> str:
        if abs(len(caption) - target) < 20:
            return caption
        if len(caption) > target:
            return self._truncate(caption, target)

        index = 0
        while len(caption) < target - 30 and index < len(EXPANSIONS):
            caption += EXPANSIONS[(index + offset) % len(EXPANSIONS)].format(topic=topic)
            index += 1
        return caption

    def _truncate(self, caption: str, limit: int) -> str:
        """Cut at a word boundary, adding an ellipsis."""
        if len(caption) <= limit:
            return caption
        truncated = caption[: limit - 3]
        last_space = truncated.rfind(" ")
        if last_space > limit * 0.7:
            truncated = truncated[:last_space]
        return truncated + "..."

    def _build_hashtags(self, request: CaptionGenerationRequest, config: PlatformConfig) -> list[str]:
        count = (config.hashtag_range[0] + config.hashtag_range[1]) // 2

        candidates = [re.sub(r"[^a-z0-9]", "", request.topic.lower())]
        if request.keywords:
            candidates.extend(
                re.sub(r"[^a-z0-9]", "", keyword.lower()) for keyword in request.keywords.split(",")
            )
        candidates.extend(PLATFORM_HASHTAGS.get(request.platform, ("socialmedia", "content")))
        candidates.extend(GENERIC_HASHTAGS)

        hashtags: list[str] = []
        for tag in candidates:
            if tag and tag not in hashtags:
                hashtags.append(tag)
        return hashtags[:count]
