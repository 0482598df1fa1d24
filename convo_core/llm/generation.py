"""Plain text generation on top of the completion transport."""

import inspect
from typing import Any, Callable, Dict, Optional, Union

import structlog

from convo_core.errors import ConvoError
from convo_core.gateway.retry import RetryExecutor, RetryPolicy
from convo_core.llm.base import EffortLevel, GenerationResult, Turn
from convo_core.llm.client import CompletionClient


logger = structlog.get_logger(__name__)

ChunkCallback = Callable[[str, Dict[str, Any]], Any]


async def _call(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    outcome = callback(*args)
    if inspect.isawaitable(outcome):
        await outcome


class TextGenerator:
    """
    Single-prompt generation without tools.

    Usage:
        generator = TextGenerator(client, retry_executor)
        result = await generator.generate("Summarize ...", effort_hint="low")
        print(result.text)
    """

    def __init__(
        self,
        client: CompletionClient,
        retry_executor: RetryExecutor,
        system_prompt: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.client = client
        self.retry_executor = retry_executor
        self.system_prompt = system_prompt
        self.retry_policy = retry_policy
        self.logger = logger.bind(component="text_generator")

    def _turns(self, prompt: str):
        turns = []
        if self.system_prompt:
            turns.append(Turn.system(self.system_prompt))
        turns.append(Turn.user(prompt))
        return turns

    async def generate(
        self,
        prompt: str,
        model_hint: Optional[str] = None,
        effort_hint: Union[EffortLevel, str] = EffortLevel.MEDIUM,
    ) -> GenerationResult:
        """Generate a complete answer for ``prompt``."""
        turns = self._turns(prompt)
        result = await self.retry_executor.execute_with_retry(
            lambda: self.client.complete(
                turns, model_hint=model_hint, effort_hint=effort_hint
            ),
            policy=self.retry_policy,
        )
        return GenerationResult(text=result.content, usage=result.usage)

    async def stream(
        self,
        prompt: str,
        on_chunk: ChunkCallback,
        on_complete: Optional[Callable[[GenerationResult], Any]] = None,
        on_error: Optional[Callable[[ConvoError], Any]] = None,
        model_hint: Optional[str] = None,
        effort_hint: Union[EffortLevel, str] = EffortLevel.MEDIUM,
    ) -> Optional[GenerationResult]:
        """
        Stream an answer for ``prompt``.

        ``on_chunk(text, metadata)`` receives each fragment in arrival order.
        Errors go to ``on_error`` when given, otherwise they are raised.
        """
        turns = self._turns(prompt)
        position = {"index": 0}

        async def forward(text: str) -> None:
            metadata = {"index": position["index"], "type": "content"}
            position["index"] += 1
            await _call(on_chunk, text, metadata)

        try:
            result = await self.retry_executor.execute_with_retry(
                lambda: self.client.stream(
                    turns,
                    on_content=forward,
                    model_hint=model_hint,
                    effort_hint=effort_hint,
                ),
                policy=self.retry_policy,
            )
        except ConvoError as e:
            self.logger.error("text_stream_failed", error=str(e), code=e.code.value)
            if on_error is None:
                raise
            await _call(on_error, e)
            return None

        generated = GenerationResult(text=result.content, usage=result.usage)
        await _call(on_complete, generated)
        return generated


__all__ = ["TextGenerator", "ChunkCallback"]
