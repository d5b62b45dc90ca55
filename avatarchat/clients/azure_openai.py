"""Chat completion collaborator backed by an Azure OpenAI deployment."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, List, Optional

from openai import AsyncAzureOpenAI

from ..core.config import AzureOpenAIConfig, ConversationConfig, azure_openai_cfg, conversation_cfg
from ..core.errors import CollaboratorError
from ..core.models import ChatTurn

logger = logging.getLogger("avatarchat.llm")

SERVICE = "azure-openai"


class AzureChatClient:
    """Turn role-tagged turns into completion text."""

    def __init__(
        self,
        cfg: AzureOpenAIConfig = azure_openai_cfg,
        conversation: ConversationConfig = conversation_cfg,
        client: Optional[Any] = None,
    ) -> None:
        """Build the client; raises ConfigurationError when keys are missing."""
        self.cfg = cfg.require() if client is None else cfg
        self.conversation = conversation
        self.client = client or AsyncAzureOpenAI(
            azure_endpoint=cfg.endpoint,
            api_key=cfg.api_key,
            api_version=cfg.api_version,
        )

    def _request(self, turns: List[ChatTurn], **extra: Any) -> dict:
        return dict(
            model=self.cfg.deployment,
            messages=[turn.to_dict() for turn in turns],
            max_tokens=self.conversation.max_tokens,
            temperature=self.conversation.temperature,
            top_p=self.conversation.top_p,
            frequency_penalty=0,
            presence_penalty=0,
            **extra,
        )

    async def complete(self, turns: List[ChatTurn]) -> str:
        """Return the completion text for `turns`."""
        logger.info(f"Sending {len(turns)} turns to Azure OpenAI deployment {self.cfg.deployment}")
        try:
            response = await self.client.chat.completions.create(**self._request(turns))
        except Exception as exc:
            logger.error("Azure OpenAI request failed: %s", exc)
            raise CollaboratorError(SERVICE, str(exc)) from exc

        choices = getattr(response, "choices", None) or []
        content = choices[0].message.content if choices else None
        if not content:
            raise CollaboratorError(SERVICE, "Completion response did not include text.")
        return content

    async def stream(self, turns: List[ChatTurn]) -> AsyncIterator[str]:
        """Yield completion text as the deployment produces it."""
        try:
            stream = await self.client.chat.completions.create(**self._request(turns, stream=True))
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        except Exception as exc:
            logger.error("Azure OpenAI stream failed: %s", exc)
            raise CollaboratorError(SERVICE, str(exc)) from exc
