import os
import json
import time
import asyncio
import logging
from typing import Dict, Any, Optional, Type, Union

from dotenv import load_dotenv
from openai import OpenAI
from pydantic import BaseModel, ValidationError

from .errors import LLMError, LLMResponseError

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


# Model configuration profiles
MODEL_CONFIGS = {
    "gpt-4o": {
        "token_param": "max_tokens",
        "supports_temperature": True,
        "supports_json_mode": True,
        "context_window": 128000,
        "description": "Standard GPT-4o model"
    },
    "gpt-4o-mini": {
        "token_param": "max_tokens",
        "supports_temperature": True,
        "supports_json_mode": True,
        "context_window": 128000,
        "description": "Cost-effective GPT-4o variant, used for line ratings"
    },
    "gpt-4.1": {
        "token_param": "max_tokens",
        "supports_temperature": True,
        "supports_json_mode": True,
        "context_window": 1000000,
        "description": "Long-context GPT-4.1"
    },
    "gpt-5": {
        "token_param": "max_completion_tokens",
        "supports_temperature": False,
        "supports_json_mode": True,
        "context_window": 400000,
        "description": "Reasoning model; temperature is fixed"
    },
    "o1": {
        "token_param": "max_completion_tokens",
        "supports_temperature": False,
        "supports_json_mode": False,
        "supports_system_message": False,
        "context_window": 128000,
        "description": "Reasoning model without system messages"
    }
}

DEFAULT_SYSTEM_PROMPT = "You are an expert sales coach. Always respond with valid JSON."


class LLMClient:
    """Thin JSON-contract wrapper over the OpenAI Chat Completions API"""

    def __init__(self, model: str = None, temperature: float = None, max_tokens: int = None,
                 timeout: float = None, client: OpenAI = None):
        if client is None and not os.getenv("OPENAI_API_KEY"):
            raise ValueError("OPENAI_API_KEY environment variable not set")

        timeout = timeout or float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))
        # Retries are handled here so the backoff policy is per stage
        self.client = client or OpenAI(api_key=os.getenv("OPENAI_API_KEY"), timeout=timeout, max_retries=0)
        self.model = model or os.getenv("DEFAULT_LLM_MODEL", "gpt-4o-mini")
        self.temperature = temperature if temperature is not None else float(os.getenv("LLM_TEMPERATURE", "0.1"))
        self.max_tokens = max_tokens or int(os.getenv("LLM_MAX_TOKENS", "500"))

        self.model_config = self._get_model_config()
        self.call_count = 0

    def _get_model_config(self) -> Dict[str, Any]:
        """Get configuration for the current model"""
        if self.model in MODEL_CONFIGS:
            return MODEL_CONFIGS[self.model]

        # Longest prefix wins so gpt-4o-mini-2024 maps to gpt-4o-mini, not gpt-4o
        for config_model in sorted(MODEL_CONFIGS, key=len, reverse=True):
            if self.model.startswith(config_model):
                return MODEL_CONFIGS[config_model]

        return {
            "token_param": "max_tokens",
            "supports_temperature": True,
            "supports_json_mode": True,
            "context_window": 8000,
            "description": f"Unknown model: {self.model}"
        }

    def get_model_info(self) -> Dict[str, Any]:
        """Get information about the current model"""
        return {
            "model": self.model,
            "config": self.model_config.copy(),
            "temperature": self.temperature if self.model_config.get("supports_temperature", True) else 1.0,
            "max_tokens": self.max_tokens
        }

    def _build_request(self, prompt: str, system: str, temperature: Optional[float],
                       max_tokens: Optional[int]) -> Dict[str, Any]:
        if self.model_config.get("supports_system_message", True):
            messages = [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt}
            ]
        else:
            # No system role: fold the instruction into the user turn
            messages = [{"role": "user", "content": f"{system}\n\n{prompt}"}]

        request_params = {"model": self.model, "messages": messages}

        token_param = self.model_config.get("token_param", "max_tokens")
        request_params[token_param] = max_tokens or self.max_tokens

        if self.model_config.get("supports_temperature", True):
            request_params["temperature"] = self.temperature if temperature is None else temperature

        if self.model_config.get("supports_json_mode", True):
            request_params["response_format"] = {"type": "json_object"}

        return request_params

    def _process_response_content(self, content: Optional[str]) -> Dict[str, Any]:
        """Parse model output into a JSON object, stripping markdown fences"""
        if not content or content.strip() == "":
            raise LLMResponseError(f"Empty response from {self.model}", content)

        content = content.strip()
        if content.startswith("```json"):
            content = content[7:-3].strip()
        elif content.startswith("```"):
            content = content[3:-3].strip()

        try:
            result = json.loads(content)
        except json.JSONDecodeError as e:
            raise LLMResponseError(f"Invalid JSON from {self.model}: {e}", content)

        if not isinstance(result, (dict, list)):
            raise LLMResponseError(f"Expected a JSON object from {self.model}", content)
        return result

    def complete_json(self, prompt: str, system: str = DEFAULT_SYSTEM_PROMPT,
                      schema: Optional[Type[BaseModel]] = None, temperature: float = None,
                      max_tokens: int = None, retries: int = 2,
                      backoff: float = 1.0) -> Union[Dict[str, Any], BaseModel]:
        """
        Request a JSON answer, optionally validated against a pydantic contract

        Args:
            prompt: User prompt
            system: System instruction
            schema: Pydantic model the response must validate against
            temperature: Overrides the client temperature
            max_tokens: Overrides the client token budget
            retries: Extra attempts after the first on provider or contract errors
            backoff: Initial delay in seconds, doubled after every failed attempt

        Returns:
            Parsed dict, or a schema instance when schema is given

        Raises:
            LLMResponseError: Response stayed empty, non-JSON or off-contract
            LLMError: Provider call kept failing
        """
        request_params = self._build_request(prompt, system, temperature, max_tokens)
        last_error: Optional[Exception] = None
        delay = backoff

        for attempt in range(retries + 1):
            try:
                self.call_count += 1
                response = self.client.chat.completions.create(**request_params)
                result = self._process_response_content(response.choices[0].message.content)
                if schema is not None:
                    return schema.model_validate(result)
                return result
            except LLMResponseError as e:
                last_error = e
                logger.warning(f"{e} (attempt {attempt + 1}/{retries + 1})")
            except ValidationError as e:
                last_error = LLMResponseError(f"Response from {self.model} does not match {schema.__name__}: {e}")
                logger.warning(f"Schema mismatch from {self.model} (attempt {attempt + 1}/{retries + 1})")
            except Exception as e:
                last_error = LLMError(f"OpenAI API error ({self.model}): {e}")
                logger.warning(f"OpenAI API error from {self.model} (attempt {attempt + 1}/{retries + 1}): {e}")

            if attempt < retries:
                time.sleep(delay)
                delay *= 2

        raise last_error

    async def acomplete_json(self, *args, **kwargs) -> Union[Dict[str, Any], BaseModel]:
        """complete_json on a worker thread so the event loop keeps running"""
        return await asyncio.to_thread(self.complete_json, *args, **kwargs)
