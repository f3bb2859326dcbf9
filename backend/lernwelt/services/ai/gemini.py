"""
Gemini Provider

Talks to the Gemini REST API (generateContent) with httpx:
- page analysis with structured JSON output
- text-to-speech returning base64 16-bit PCM at 24 kHz
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Dict, Optional, Type

import httpx

from ...audio.clip import DEFAULT_SAMPLE_RATE, AudioClip
from ...db.schema import TaskContent
from ...errors import AnalysisFailure, LernweltError, RateLimited, SynthesisFailure
from .parser import parse_task_content
from .prompts import ANALYSIS_PROMPT, RESPONSE_SCHEMA, build_speech_prompt

logger = logging.getLogger(__name__)


class GeminiProvider:
    """AnalysisProvider and SpeechProvider over the Gemini REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        analysis_model: str = "gemini-3-flash-preview",
        tts_model: str = "gemini-2.5-flash-preview-tts",
        voice: str = "Kore",
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            api_key: Gemini API key
            base_url: API root, e.g. https://generativelanguage.googleapis.com/v1beta
            analysis_model: Model used for page analysis
            tts_model: Model used for speech synthesis
            voice: Prebuilt voice name
            sample_rate: Sample rate of the PCM the TTS model returns
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.analysis_model = analysis_model
        self.tts_model = tts_model
        self.voice = voice
        self.sample_rate = sample_rate
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(cls, cfg) -> "GeminiProvider":
        return cls(
            api_key=cfg.gemini_api_key,
            base_url=cfg.gemini_base_url,
            analysis_model=cfg.analysis_model,
            tts_model=cfg.tts_model,
            voice=cfg.tts_voice,
            sample_rate=cfg.audio_sample_rate,
            timeout=cfg.ai_timeout,
        )

    async def _generate(
        self,
        model: str,
        payload: Dict[str, Any],
        error_cls: Type[LernweltError],
    ) -> Dict[str, Any]:
        url = f"{self.base_url}/models/{model}:generateContent"
        headers = {
            "x-goog-api-key": self.api_key,
            "Content-Type": "application/json",
        }
        try:
            # Do not inherit system proxy env vars
            async with httpx.AsyncClient(
                timeout=self.timeout, trust_env=False, transport=self._transport
            ) as client:
                response = await client.post(url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            raise error_cls(f"Gemini request to {model} failed: {e}") from e

        if response.status_code != 200:
            preview = response.text[:2048]
            logger.error(f"[Gemini] {model} failed with status {response.status_code}: {preview}")
            msg = f"Gemini request failed with status {response.status_code}: {preview}"
            if response.status_code == 429 and error_cls is AnalysisFailure:
                raise RateLimited(msg)
            if response.status_code in (401, 403):
                raise error_cls(f"Gemini authentication failed: {preview}")
            raise error_cls(msg)

        try:
            return response.json()
        except ValueError as e:
            raise error_cls(f"Gemini returned a non-JSON body: {e}") from e

    @staticmethod
    def _first_parts(data: Dict[str, Any]) -> list:
        candidates = data.get("candidates") or []
        if not candidates:
            return []
        content = candidates[0].get("content") or {}
        return content.get("parts") or []

    async def analyze(
        self,
        image_bytes: bytes,
        page_number: int,
        mime_type: str = "image/jpeg",
    ) -> TaskContent:
        payload = {
            "contents": [
                {
                    "parts": [
                        {
                            "inlineData": {
                                "mimeType": mime_type,
                                "data": base64.b64encode(image_bytes).decode("ascii"),
                            }
                        },
                        {"text": ANALYSIS_PROMPT},
                    ]
                }
            ],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": RESPONSE_SCHEMA,
            },
        }
        data = await self._generate(self.analysis_model, payload, AnalysisFailure)
        text = "".join(p.get("text", "") for p in self._first_parts(data))
        if not text.strip():
            raise AnalysisFailure("Gemini returned no analysis text")
        return parse_task_content(text, page_number=page_number)

    async def synthesize(self, text: str, cache_key: str) -> AudioClip:
        payload = {
            "contents": [{"parts": [{"text": build_speech_prompt(text)}]}],
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": self.voice}}
                },
            },
        }
        data = await self._generate(self.tts_model, payload, SynthesisFailure)
        parts = self._first_parts(data)
        inline = (parts[0].get("inlineData") or {}) if parts else {}
        encoded = inline.get("data")
        if not encoded:
            raise SynthesisFailure(f"Audio generation failed for {cache_key}")
        try:
            pcm = base64.b64decode(encoded)
        except (binascii.Error, ValueError) as e:
            raise SynthesisFailure(f"Invalid audio payload for {cache_key}: {e}") from e

        clip = AudioClip.from_pcm16(pcm, sample_rate=self.sample_rate)
        logger.info("Synthesized %.1fs of audio for %s", clip.duration, cache_key)
        return clip
