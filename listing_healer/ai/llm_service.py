"""LLM service for OpenAI integration."""

import hashlib
import json
import logging
from typing import Any, Dict, Optional

import redis.asyncio as redis
from openai import AsyncOpenAI

from listing_healer.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class LLMService:
    """
    Service for LLM interactions with OpenAI.

    Features:
    - OpenAI API integration with a bounded timeout
    - Structured JSON output
    - Optional Redis response cache
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings
        self._client: Optional[AsyncOpenAI] = None
        self._redis: Optional[redis.Redis] = None
        self._call_count: int = 0

    async def _get_client(self) -> AsyncOpenAI:
        """Get or create OpenAI client."""
        if self._client is None:
            if not self.settings.openai_api_key:
                raise RuntimeError("OpenAI API key not configured")
            self._client = AsyncOpenAI(
                api_key=self.settings.openai_api_key,
                timeout=self.settings.llm_timeout_seconds,
                max_retries=0,  # Retries belong to the task queue
            )
        return self._client

    async def _get_redis(self) -> Optional[redis.Redis]:
        """Get or create Redis connection for caching."""
        if not self.settings.llm_cache_enabled:
            return None

        if self._redis is None:
            try:
                self._redis = redis.from_url(
                    self.settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
            except Exception as e:
                logger.warning(f"Failed to connect to Redis for LLM cache: {e}")
                return None
        return self._redis

    def _get_cache_key(self, prompt: str, system_prompt: str, model: str) -> str:
        """Generate cache key for prompt."""
        combined = f"{system_prompt}:{prompt}:{model}"
        key_hash = hashlib.sha256(combined.encode('utf-8')).hexdigest()
        return f"llm_cache:{key_hash}"

    async def call_llm(
        self,
        prompt: str,
        system_prompt: str = "",
        temperature: Optional[float] = None,
        model: Optional[str] = None,
        use_cache: bool = True,
        json_mode: bool = False,
    ) -> str:
        """
        Call LLM with a prompt and return text response.

        Args:
            prompt: User prompt
            system_prompt: System prompt/instructions
            temperature: Temperature (defaults to settings.llm_temperature)
            model: Model name (defaults to settings.llm_model)
            use_cache: Whether to use cache
            json_mode: Ask the API for a JSON object response

        Returns:
            LLM response text
        """
        model = model or self.settings.llm_model
        temperature = temperature if temperature is not None else self.settings.llm_temperature

        redis_client = await self._get_redis() if use_cache else None
        cache_key = self._get_cache_key(prompt, system_prompt, model)
        if redis_client:
            try:
                cached = await redis_client.get(cache_key)
            except Exception as e:
                logger.debug(f"LLM cache read failed: {e}")
                cached = None
            if cached:
                logger.debug(f"LLM cache hit for prompt: {prompt[:50]}...")
                self._call_count += 1
                return cached

        client = await self._get_client()

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        kwargs: Dict[str, Any] = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=self.settings.llm_max_tokens,
                **kwargs,
            )
        except Exception as e:
            logger.error(f"LLM API call failed: {e}")
            raise

        result = response.choices[0].message.content or ""
        self._call_count += 1

        if redis_client:
            try:
                await redis_client.setex(cache_key, self.settings.llm_cache_ttl_seconds, result)
            except Exception as e:
                logger.debug(f"LLM cache write failed: {e}")

        return result

    async def call_llm_structured(
        self,
        prompt: str,
        response_schema: Dict[str, Any],
        system_prompt: str = "",
        temperature: Optional[float] = None,
        model: Optional[str] = None,
        use_cache: bool = True,
    ) -> Dict[str, Any]:
        """
        Call LLM with structured JSON output.

        Args:
            prompt: User prompt
            response_schema: JSON schema describing expected response structure
            system_prompt: System prompt/instructions
            temperature: Temperature (defaults to settings.llm_temperature)
            model: Model name (defaults to settings.llm_model)
            use_cache: Whether to use cache

        Returns:
            Parsed JSON response as dictionary

        Raises:
            ValueError: If the response is not a JSON object
        """
        enhanced_system = system_prompt
        if enhanced_system:
            enhanced_system += "\n\n"
        enhanced_system += (
            f"Respond with valid JSON matching this schema: {json.dumps(response_schema, indent=2)}\n"
            "Return only the JSON object, no additional text."
        )

        response_text = await self.call_llm(
            prompt=prompt,
            system_prompt=enhanced_system,
            temperature=temperature,
            model=model,
            use_cache=use_cache,
            json_mode=True,
        )

        response_text = response_text.strip()
        if response_text.startswith("```json"):
            response_text = response_text[7:]
        if response_text.startswith("```"):
            response_text = response_text[3:]
        if response_text.endswith("```"):
            response_text = response_text[:-3]
        response_text = response_text.strip()

        try:
            parsed = json.loads(response_text)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse LLM JSON response: {e}\nResponse: {response_text[:200]}")
            raise ValueError(f"Invalid JSON response from LLM: {e}") from e

        if not isinstance(parsed, dict):
            raise ValueError("LLM response is not a JSON object")
        return parsed

    def get_stats(self) -> Dict[str, Any]:
        """Get LLM service statistics."""
        return {
            "call_count": self._call_count,
            "cache_enabled": self.settings.llm_cache_enabled,
            "model": self.settings.llm_model,
        }

    async def close(self):
        """Close connections."""
        if self._redis:
            await self._redis.close()
            self._redis = None
        if self._client:
            await self._client.close()
            self._client = None
