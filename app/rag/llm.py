"""
Generation Service

Thin wrapper over the OpenAI chat completions API. The pipeline only depends
on `complete(system_prompt, user_payload, tool)`; which model answers is a
configuration detail.

- user_payload is either a string or a list of chat messages (history,
  multimodal content blocks).
- When a tool definition is given, the call forces that tool and the parsed
  arguments are returned in CompletionResult.tool_arguments.

Every call goes through call_with_retry; exhausted retries surface as
ServiceUnavailableError.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from openai import OpenAI

from app.config import CHAT_MODEL, OPENAI_API_KEY, TIMEOUTS
from app.rag.json_utils import parse_model_json
from app.rag.retry import RETRY_CONFIGS, RetryConfig, call_with_retry

logger = logging.getLogger(__name__)

Payload = Union[str, List[Dict[str, Any]]]


@dataclass
class CompletionResult:
    text: str = ""
    tool_arguments: Optional[Dict[str, Any]] = None
    model: str = ""
    usage: Dict[str, int] = field(default_factory=dict)


class GenerationService:
    """
    Args:
        client: OpenAI client (created from OPENAI_API_KEY when omitted)
        model: Chat model name
        service: Retry profile and log label ("chat", "rerank", "vision", "pdf")
    """

    def __init__(self, client: Optional[OpenAI] = None, model: str = CHAT_MODEL, service: str = "chat",
                 retry_config: Optional[RetryConfig] = None):
        self.service = service
        self.retry_config = retry_config or RETRY_CONFIGS[service]
        self.client = client or OpenAI(api_key=OPENAI_API_KEY, timeout=TIMEOUTS.get(service, 60))
        self.model = model

    @staticmethod
    def build_messages(system_prompt: str, user_payload: Payload) -> List[Dict[str, Any]]:
        messages = [{"role": "system", "content": system_prompt}]
        if isinstance(user_payload, str):
            messages.append({"role": "user", "content": user_payload})
        else:
            messages.extend(user_payload)
        return messages

    def complete(self, system_prompt: str, user_payload: Payload, tool: Optional[Dict[str, Any]] = None,
                 max_tokens: int = 4000, temperature: float = 0.2) -> CompletionResult:
        """
        Run one completion.

        Args:
            system_prompt: System message
            user_payload: User text or message list
            tool: Function-tool definition to force (see output_schemas.tool_definition)

        Returns:
            CompletionResult; tool_arguments is {} when the tool call was malformed
        """
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": self.build_messages(system_prompt, user_payload),
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if tool:
            kwargs["tools"] = [tool]
            kwargs["tool_choice"] = {"type": "function", "function": {"name": tool["function"]["name"]}}

        response = call_with_retry(
            lambda: self.client.chat.completions.create(**kwargs),
            self.retry_config,
            service=self.service,
        )

        message = response.choices[0].message
        result = CompletionResult(text=message.content or "", model=getattr(response, "model", self.model))
        usage = getattr(response, "usage", None)
        if usage is not None:
            result.usage = {
                "prompt_tokens": getattr(usage, "prompt_tokens", 0),
                "completion_tokens": getattr(usage, "completion_tokens", 0),
            }

        if tool:
            result.tool_arguments = self._tool_arguments(message)
        return result

    @staticmethod
    def _tool_arguments(message) -> Dict[str, Any]:
        tool_calls = getattr(message, "tool_calls", None) or []
        if not tool_calls:
            logger.warning("No tool call in response")
            return {}

        raw = tool_calls[0].function.arguments or ""
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            parsed = parse_model_json(raw)
            if parsed.success and isinstance(parsed.data, dict):
                return parsed.data
            logger.warning(f"Malformed tool arguments: {parsed.error}")
            return {}
