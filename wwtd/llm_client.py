# wwtd/llm_client.py

import asyncio
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from openai import OpenAI

from wwtd.errors import CoreError, UpstreamFailure, ValidationFailure
from wwtd.model_props import is_openai_model

logger = logging.getLogger("wwtd_core")

T = TypeVar("T")


class MaxRetryErrorsException(Exception):
    pass


@dataclass(frozen=True)
class Completion:
    text: str
    total_tokens: Optional[int] = None
    model: Optional[str] = None


class CompletionCapability(Protocol):
    async def complete(self, turns: List[BaseMessage], model: str) -> Completion: ...


class BackoffState:
    """
    429/timeout backoff shared by every call that goes through the same
    instance (one per AppContext).
    """

    def __init__(self, base_seconds: float = 30.0, max_seconds: float = 600.0):
        self._lock = threading.Lock()
        self.wait_until = 0.0
        self.backoff_seconds = base_seconds
        self.max_seconds = max_seconds

    def respect(self) -> None:
        while True:
            with self._lock:
                wait = self.wait_until - time.monotonic()
            if wait <= 0:
                return
            time.sleep(min(wait, 1.0))

    def register_429(self) -> float:
        with self._lock:
            now = time.monotonic()
            base = self.backoff_seconds
            delay = random.uniform(base * 0.95, base * 1.35)
            self.backoff_seconds = min(self.backoff_seconds * 2, self.max_seconds)
            self.wait_until = max(self.wait_until, now + delay)
            return delay

    def reset_on_success(self) -> None:
        with self._lock:
            self.backoff_seconds = max(1.0, self.backoff_seconds * 0.5)


def _is_timeout_error(e: Exception) -> bool:
    if isinstance(e, (asyncio.TimeoutError, TimeoutError)):
        return True
    msg = repr(e)
    return "TimeoutError" in msg or "timed out" in msg.lower()


def _is_resource_exhausted_error(e: Exception) -> bool:
    msg = str(e)
    return (
        "429" in msg
        and (
            "RESOURCE_EXHAUSTED" in msg
            or "Resource has been exhausted" in msg
            or "Too Many Requests" in msg
            or "rate limit" in msg.lower()
        )
    )


def call_with_retries_sync(
    fn: Callable[[], T],
    *,
    backoff: BackoffState,
    retries: int = 3,
    log: Callable[[str], None] | None = None,
) -> T:
    """
    Run a sync LLM call with shared 429/timeout backoff + retries.
    CoreError subclasses (malformed responses) are not retried.
    """
    last_exception: Exception | None = None

    for attempt in range(retries):
        backoff.respect()
        start_time = time.time()
        try:
            result = fn()
            backoff.reset_on_success()
            return result
        except CoreError:
            raise
        except Exception as e:
            elapsed = time.time() - start_time
            last_exception = e

            if _is_resource_exhausted_error(e) or _is_timeout_error(e):
                delay = backoff.register_429()
                msg = f"Attempt {attempt+1} got 429/timeout, backing off ~{delay:.1f}s."
            else:
                msg = f"Attempt {attempt+1} failed."

            if log:
                log(f"{msg} (elapsed={elapsed:.2f}s): {e}")

    raise MaxRetryErrorsException(f"All {retries} retry attempts failed.") from last_exception


class ChatLlmClient:
    """
    Chat-style completion capability:

        completion = await chat_llm.complete([SystemMessage(...), HumanMessage(...)], "gpt-4o")

    Under the hood:
    - OpenAI models: Chat Completions API, first choice's message content
    - anything else: LangChain ChatVertexAI.invoke(messages)
    """

    def __init__(
        self,
        *,
        vertex_project: str = "",
        vertex_region: str = "us-central1",
        timeout: float | None = None,
        retries: int = 3,
        backoff: Optional[BackoffState] = None,
        openai_client: Any = None,
        vertex_factory: Optional[Callable[[str], Any]] = None,
    ):
        self.vertex_project = vertex_project
        self.vertex_region = vertex_region
        self._timeout = timeout
        self.retries = retries
        self.backoff = backoff or BackoffState()
        self._client = openai_client
        self._vertex_factory = vertex_factory
        self._vertex_models: Dict[str, Any] = {}
        self._lock = threading.Lock()

    # -------- provider clients --------
    def _openai(self):
        with self._lock:
            if self._client is None:
                client_kwargs: Dict[str, Any] = {"max_retries": 0}
                if self._timeout is not None:
                    client_kwargs["timeout"] = self._timeout
                self._client = OpenAI(**client_kwargs)
            return self._client

    def _vertex(self, model_name: str):
        with self._lock:
            chat = self._vertex_models.get(model_name)
            if chat is None:
                if self._vertex_factory is not None:
                    chat = self._vertex_factory(model_name)
                else:
                    from langchain_google_vertexai import ChatVertexAI

                    chat = ChatVertexAI(
                        project=self.vertex_project,
                        location=self.vertex_region,
                        model_name=model_name,
                        timeout=self._timeout,
                    )
                self._vertex_models[model_name] = chat
            return chat

    # -------- message conversion --------
    def _to_openai_messages(self, messages: List[BaseMessage]) -> List[Dict[str, str]]:
        out: List[Dict[str, str]] = []
        for m in messages:
            if isinstance(m, SystemMessage):
                role = "system"
            elif isinstance(m, HumanMessage):
                role = "user"
            elif isinstance(m, AIMessage):
                role = "assistant"
            else:
                role = "user"
            out.append({"role": role, "content": str(m.content)})
        return out

    # -------- calls --------
    def _invoke_once(self, messages: List[BaseMessage], model: str) -> Completion:
        """
        Single HTTP call without retries/backoff.
        """
        if is_openai_model(model):
            resp = self._openai().chat.completions.create(
                model=model,
                messages=self._to_openai_messages(messages),
            )
            choices = getattr(resp, "choices", None) or []
            if not choices:
                raise ValidationFailure("Completion response has no choices")
            content = getattr(choices[0].message, "content", None)
            if not isinstance(content, str) or not content:
                raise ValidationFailure("Received content is not a string or is empty")

            usage = getattr(resp, "usage", None)
            total = getattr(usage, "total_tokens", None) if usage is not None else None
            return Completion(
                text=content,
                total_tokens=int(total) if total is not None else None,
                model=getattr(resp, "model", model),
            )

        resp = self._vertex(model).invoke(messages)
        content = resp if isinstance(resp, str) else getattr(resp, "content", None)
        if not isinstance(content, str) or not content:
            raise ValidationFailure("Received content is not a string or is empty")

        usage_md = getattr(resp, "usage_metadata", None)
        total = None
        if isinstance(usage_md, dict):
            total = usage_md.get("total_tokens", usage_md.get("total_token_count"))
        elif usage_md is not None:
            total = getattr(usage_md, "total_token_count", None)
        return Completion(text=content, total_tokens=int(total) if total is not None else None, model=model)

    def invoke(self, messages: List[BaseMessage], model: str) -> Completion:
        """
        Synchronous chat call with 429/timeout backoff + retries.
        """
        return call_with_retries_sync(
            lambda: self._invoke_once(messages, model),
            backoff=self.backoff,
            retries=self.retries,
            log=lambda msg: logger.warning("[CHAT-LLM-RETRY] %s", msg),
        )

    async def complete(self, turns: List[BaseMessage], model: str) -> Completion:
        try:
            return await asyncio.to_thread(self.invoke, list(turns), model)
        except CoreError:
            raise
        except MaxRetryErrorsException as e:
            raise UpstreamFailure.wrap("completion", e.__cause__ or e)
