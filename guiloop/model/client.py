from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from google import genai
from google.genai import types
from openai import AsyncOpenAI

from guiloop.agent.coords import MAX_PIXELS_V1_0
from guiloop.agent.errors import ModelError
from guiloop.agent.history import PromptContext
from guiloop.model.prompts import feedback_text
from guiloop.util.image import downscale, to_data_url
from guiloop.util.log import get_logger

log = get_logger("guiloop.model")

DEFAULT_GEMINI_MODEL = "gemini-3-flash-preview"
DEFAULT_OPENAI_MODEL = "ui-tars-1.5-7b"


@dataclass
class GeminiModel:
    model: str = DEFAULT_GEMINI_MODEL
    thinking_level: Optional[str] = None
    api_key: Optional[str] = None
    max_pixels: int = MAX_PIXELS_V1_0
    temperature: float = 0.0

    def _client(self) -> genai.Client:
        key = self.api_key or os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
        return genai.Client(api_key=key) if key else genai.Client()

    def _image_part(self, image_bytes: bytes) -> types.Part:
        jpeg, w, h = downscale(image_bytes, self.max_pixels)
        log.debug("Sending %dx%d screenshot (%dB)", w, h, len(jpeg))
        return types.Part.from_bytes(data=jpeg, mime_type="image/jpeg")

    def build_contents(self, context: PromptContext) -> List[types.Content]:
        contents: List[types.Content] = []
        for m in context.messages:
            role = "model" if m.role == "assistant" else "user"
            parts: List[types.Part] = []
            if m.image is not None:
                parts.append(self._image_part(m.image))
            if m.text:
                parts.append(types.Part.from_text(text=m.text))
            if not parts:
                continue
            # Gemini wants alternating roles; merge consecutive same-role turns.
            if contents and contents[-1].role == role:
                contents[-1].parts.extend(parts)
            else:
                contents.append(types.Content(role=role, parts=parts))

        if context.feedback:
            fb = types.Part.from_text(text=feedback_text(context.feedback))
            if contents and contents[-1].role == "user":
                contents[-1].parts.append(fb)
            else:
                contents.append(types.Content(role="user", parts=[fb]))
        return contents

    async def invoke(self, context: PromptContext) -> str:
        thinking_cfg = None
        if self.thinking_level:
            thinking_cfg = types.ThinkingConfig(thinking_level=self.thinking_level)

        cfg = types.GenerateContentConfig(
            system_instruction=context.system_prompt,
            thinking_config=thinking_cfg,
            temperature=self.temperature,
        )

        resp = await self._client().aio.models.generate_content(
            model=self.model,
            contents=self.build_contents(context),
            config=cfg,
        )
        txt = (resp.text or "").strip()
        if not txt:
            raise ModelError(f"{self.model} returned no text")
        log.debug("Gemini reply: %r", txt[:500])
        return txt


@dataclass
class OpenAICompatModel:
    """
    Chat-completions client for OpenAI-compatible endpoints, which is how
    UI-TARS checkpoints are usually served (vLLM, TGI, hosted APIs).
    """

    model: str = DEFAULT_OPENAI_MODEL
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    temperature: float = 0.0
    top_p: float = 0.7
    max_tokens: int = 1000

    def _client(self) -> AsyncOpenAI:
        return AsyncOpenAI(
            base_url=self.base_url or os.getenv("GUILOOP_BASE_URL") or None,
            api_key=self.api_key or os.getenv("OPENAI_API_KEY") or "EMPTY",
        )

    def build_messages(self, context: PromptContext) -> List[Dict[str, Any]]:
        # UI-TARS expects the system prompt as the opening user turn.
        messages: List[Dict[str, Any]] = [{"role": "user", "content": context.system_prompt}]
        for m in context.messages:
            if m.image is not None:
                messages.append(
                    {
                        "role": "user",
                        "content": [{"type": "image_url", "image_url": {"url": to_data_url(m.image)}}],
                    }
                )
            if m.text:
                messages.append({"role": m.role, "content": m.text})
        if context.feedback:
            messages.append({"role": "user", "content": feedback_text(context.feedback)})
        return messages

    async def invoke(self, context: PromptContext) -> str:
        resp = await self._client().chat.completions.create(
            model=self.model,
            messages=self.build_messages(context),
            temperature=self.temperature,
            top_p=self.top_p,
            max_tokens=self.max_tokens,
        )
        if not resp.choices:
            raise ModelError(f"{self.model} returned no choices")
        txt = (resp.choices[0].message.content or "").strip()
        if not txt:
            raise ModelError(f"{self.model} returned no text")
        log.debug("Model reply: %r", txt[:500])
        return txt
