"""
Model provider clients.

Each client translates the engine's transcript into one provider's wire
format and classifies the provider's errors as transient or fatal.
"""

from agent_run_engine.adapters.anthropic import AnthropicModelClient
from agent_run_engine.adapters.base import ModelClient, ModelResponse, create_model_client
from agent_run_engine.adapters.openai import OpenAIModelClient

__all__ = [
    "AnthropicModelClient",
    "ModelClient",
    "ModelResponse",
    "OpenAIModelClient",
    "create_model_client",
]
