"""
LiteLLM Client for the Compliance Notice Tracking System.
Provides a unified interface to the extraction model through LiteLLM.
"""

import os
import logging
from typing import Any, Dict, Optional

from litellm import completion

from src.utils.config import load_yaml_config

logger = logging.getLogger(__name__)


class LiteLLMClient:
    """LiteLLM client used by the notice extractor."""

    def __init__(self, config_path: str = "config/model_config.yaml"):
        """
        Initialize LiteLLM client with configuration.

        Args:
            config_path: Path to model configuration YAML file
        """
        self.config = load_yaml_config(config_path)

        model_config = self.config.get('models', {}).get('extraction', {})

        self.model_name = os.getenv("LLM_MODEL") or model_config.get('model_name', 'gemini/gemini-1.5-flash')
        self.api_key = os.getenv("LLM_API_KEY")
        self.generation_config = {
            'temperature': model_config.get('temperature', 0.0),
            'max_tokens': model_config.get('max_tokens', 2048),
            'top_p': model_config.get('top_p', 1.0),
        }

        api_settings = self.config.get('api_settings', {})
        self.timeout = api_settings.get('timeout', 30)

        logger.info(f"LiteLLM client initialized with model: {self.model_name}")

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        llm_params: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Generate text based on prompt using LiteLLM.

        Retries are owned by the caller's resilience layer, so LiteLLM's own
        retry is disabled here.

        Args:
            prompt: User prompt for generation
            system_prompt: Optional system prompt for context
            llm_params: Overrides for model, temperature, max_tokens

        Returns:
            Generated text response
        """
        messages = []

        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})

        messages.append({"role": "user", "content": prompt})

        params = {"model": self.model_name, **self.generation_config}
        if self.api_key:
            params["api_key"] = self.api_key
        params.update(llm_params or {})

        try:
            response = completion(
                **params,
                messages=messages,
                timeout=self.timeout,
                num_retries=0,
            )
            return response.choices[0].message.content or ""

        except Exception as e:
            logger.error(f"Error generating response: {e}")
            raise
