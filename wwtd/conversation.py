# wwtd/conversation.py

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, timedelta, timezone, tzinfo
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from wwtd.entities import ROLE_ASSISTANT, ROLE_USER, ConversationThread, Message
from wwtd.errors import Busy, CoreError, QuotaExceeded, Unauthenticated, UpstreamFailure, ValidationFailure
from wwtd.llm_client import Completion, CompletionCapability
from wwtd.quota_ledger import QuotaLedger
from wwtd.settings import DEFAULT_SYSTEM_PROMPT
from wwtd.thread_store import ThreadStore

logger = logging.getLogger("wwtd_core")

ELLIPSIS = "..."


class QueryState(str, Enum):
    IDLE = "idle"
    ADMISSION_CHECK = "admission-check"
    PERSISTING_USER_MSG = "persisting-user-msg"
    AWAITING_COMPLETION = "awaiting-completion"
    PERSISTING_ASSISTANT_MSG = "persisting-assistant-msg"
    DEBITING = "debiting"


@dataclass(frozen=True)
class QueryOutcome:
    status: str                       # "ok" | "quota_exceeded" | "busy" | "error" | "cancelled"
    reply: Optional[str] = None
    thread_id: Optional[str] = None
    tokens_used: Optional[int] = None
    balance: Optional[int] = None
    error_code: Optional[str] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @classmethod
    def from_error(cls, err: CoreError, *, thread_id: Optional[str] = None) -> "QueryOutcome":
        status = "quota_exceeded" if isinstance(err, QuotaExceeded) else "error"
        if isinstance(err, Busy):
            status = "busy"
        return cls(status=status, thread_id=thread_id, error_code=err.code, message=err.message)


def make_preview(query: str, length: int = 100) -> str:
    if len(query) <= length:
        return query
    return query[:length] + ELLIPSIS


def _day_label(day: date, today: date) -> str:
    if day == today:
        return "Today"
    if day == today - timedelta(days=1):
        return "Yesterday"
    return f"{day:%b} {day.day}, {day.year}"


def group_threads_by_day(
    threads: Sequence[ConversationThread],
    today: date,
    *,
    tz: tzinfo = timezone.utc,
) -> List[Tuple[str, List[ConversationThread]]]:
    """
    History sections, newest day first:
        [("Today", [...]), ("Yesterday", [...]), ("Jun 27, 2024", [...])]
    """
    buckets: Dict[date, List[ConversationThread]] = {}
    for t in threads:
        buckets.setdefault(t.date_created.astimezone(tz).date(), []).append(t)

    sections: List[Tuple[str, List[ConversationThread]]] = []
    for day in sorted(buckets, reverse=True):
        items = sorted(buckets[day], key=lambda t: t.date_created, reverse=True)
        sections.append((_day_label(day, today), items))
    return sections


class ConversationController:
    """
    One query cycle at a time:

        idle -> admission-check -> persisting-user-msg -> awaiting-completion
             -> persisting-assistant-msg -> debiting -> idle

    submit() never raises for expected failures; it returns a QueryOutcome.
    `messages` is the local window for the current thread. Appends to it
    happen before the store confirms and are never rolled back.
    """

    def __init__(
        self,
        ledger: QuotaLedger,
        threads: ThreadStore,
        completion: CompletionCapability,
        *,
        user_id_provider: Callable[[], str],
        model: str = "gpt-4o-2024-05-13",
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        preview_length: int = 100,
        include_history: bool = False,
        completion_timeout: Optional[float] = 60.0,
    ):
        self.ledger = ledger
        self.threads = threads
        self.completion = completion
        self.user_id_provider = user_id_provider
        self.model = model
        self.system_prompt = system_prompt
        self.preview_length = preview_length
        self.include_history = include_history
        self.completion_timeout = completion_timeout

        self.query = ""
        self.messages: List[Message] = []
        self.current_thread_id: Optional[str] = None
        self.state = QueryState.IDLE
        self.response_pending = False

        self._cancel_requested = False
        self._completion_task: Optional[asyncio.Future] = None

    # -----------------------
    # helpers
    # -----------------------

    def _set_state(self, state: QueryState) -> None:
        if state != self.state:
            logger.debug("Query state %s -> %s", self.state.value, state.value)
        self.state = state

    def _cancelled(self, thread_id: Optional[str]) -> QueryOutcome:
        logger.info("Query cancelled (thread=%s)", thread_id)
        return QueryOutcome(status="cancelled", thread_id=thread_id, message="Query cancelled.")

    def _build_turns(self, query: str) -> List[BaseMessage]:
        turns: List[BaseMessage] = [SystemMessage(content=self.system_prompt)]
        if self.include_history:
            # window already holds the optimistic user message as its last item
            for m in self.messages[:-1]:
                if m.role == ROLE_USER:
                    turns.append(HumanMessage(content=m.content))
                elif m.role == ROLE_ASSISTANT:
                    turns.append(AIMessage(content=m.content))
        turns.append(HumanMessage(content=query))
        return turns

    async def _append_best_effort(self, thread_id: str, message: Message) -> None:
        try:
            await self.threads.append_message(thread_id, message)
        except Exception:
            logger.exception("Error saving %s message to thread %s, keeping it locally", message.role, thread_id)

    async def _complete(self, turns: List[BaseMessage]) -> Completion:
        self._completion_task = asyncio.ensure_future(self.completion.complete(turns, self.model))
        try:
            return await asyncio.wait_for(self._completion_task, timeout=self.completion_timeout)
        except asyncio.TimeoutError:
            raise UpstreamFailure(f"completion: no response within {self.completion_timeout}s")
        finally:
            self._completion_task = None

    # -----------------------
    # query cycle
    # -----------------------

    async def submit(self, text: Optional[str] = None) -> QueryOutcome:
        if self.state != QueryState.IDLE:
            return QueryOutcome.from_error(Busy("A query is already in flight."), thread_id=self.current_thread_id)

        query = self.query if text is None else text
        if not query or not query.strip():
            return QueryOutcome.from_error(ValidationFailure("Query is empty."))

        self._cancel_requested = False
        self.response_pending = True
        try:
            return await self._run(query)
        finally:
            self.response_pending = False
            self._set_state(QueryState.IDLE)

    async def _run(self, query: str) -> QueryOutcome:
        user_id = self.user_id_provider()
        if not user_id:
            return QueryOutcome.from_error(Unauthenticated("User ID is empty."))

        # 1) admission
        self._set_state(QueryState.ADMISSION_CHECK)
        try:
            await self.ledger.admit(user_id)
        except CoreError as e:
            logger.info("Query not admitted for user %s: %s", user_id, e.message)
            return QueryOutcome.from_error(e, thread_id=self.current_thread_id)
        except Exception as e:
            logger.exception("Admission check failed for user %s", user_id)
            return QueryOutcome.from_error(UpstreamFailure.wrap("ledger", e), thread_id=self.current_thread_id)
        if self._cancel_requested:
            return self._cancelled(self.current_thread_id)

        # 2) ensure thread + 3) optimistic user message
        self._set_state(QueryState.PERSISTING_USER_MSG)
        if self.current_thread_id is None:
            try:
                thread_id = await self.threads.create_thread(
                    user_id, make_preview(query, self.preview_length), self.model
                )
            except CoreError as e:
                logger.warning("Error creating message thread for user %s: %s", user_id, e.message)
                return QueryOutcome.from_error(e)
            except Exception as e:
                logger.exception("Error creating message thread for user %s", user_id)
                return QueryOutcome.from_error(UpstreamFailure.wrap("thread store", e))
            if self._cancel_requested:
                return self._cancelled(thread_id)
            self.current_thread_id = thread_id
        thread_id = self.current_thread_id

        user_msg = Message.create(ROLE_USER, query)
        self.messages.append(user_msg)
        await self._append_best_effort(thread_id, user_msg)
        if self._cancel_requested:
            return self._cancelled(thread_id)

        # 4) completion; the input is cleared once the request is dispatched
        self._set_state(QueryState.AWAITING_COMPLETION)
        turns = self._build_turns(query)
        self.query = ""
        try:
            completion = await self._complete(turns)
        except asyncio.CancelledError:
            if self._cancel_requested:
                return self._cancelled(thread_id)
            raise
        except CoreError as e:
            logger.error("Completion failed for thread %s: %s", thread_id, e.message)
            return QueryOutcome.from_error(e, thread_id=thread_id)
        except Exception as e:
            logger.exception("Completion failed for thread %s", thread_id)
            return QueryOutcome.from_error(UpstreamFailure.wrap("completion", e), thread_id=thread_id)
        if self._cancel_requested:
            return self._cancelled(thread_id)

        # 5) assistant message
        self._set_state(QueryState.PERSISTING_ASSISTANT_MSG)
        assistant_msg = Message.create(ROLE_ASSISTANT, completion.text)
        self.messages.append(assistant_msg)
        await self._append_best_effort(thread_id, assistant_msg)

        # 6) debit only what the capability reported
        balance: Optional[int] = None
        error_code: Optional[str] = None
        note = ""
        if completion.total_tokens is None:
            logger.info("No usage reported for thread %s, not debiting", thread_id)
        else:
            self._set_state(QueryState.DEBITING)
            try:
                balance = await self.ledger.debit(user_id, completion.total_tokens)
            except CoreError as e:
                logger.warning("Error updating tokens for user %s: %s", user_id, e.message)
                error_code, note = e.code, e.message
            except Exception as e:
                logger.exception("Error updating tokens for user %s", user_id)
                error_code, note = "debit_failed", str(e)

        return QueryOutcome(
            status="ok",
            reply=completion.text,
            thread_id=thread_id,
            tokens_used=completion.total_tokens,
            balance=balance,
            error_code=error_code,
            message=note,
        )

    def cancel(self) -> None:
        """Abandon the in-flight query; nothing after the current step is persisted or debited."""
        if self.state == QueryState.IDLE:
            return
        self._cancel_requested = True
        if self._completion_task is not None and not self._completion_task.done():
            self._completion_task.cancel()

    # -----------------------
    # thread navigation
    # -----------------------

    async def select_thread(self, thread_id: str) -> List[Message]:
        if self.state != QueryState.IDLE:
            raise Busy("Cannot switch threads while a query is in flight.")
        messages = await self.threads.fetch_messages(thread_id)
        self.current_thread_id = thread_id
        self.messages = list(messages)
        logger.debug("Switched to thread %s (%d messages)", thread_id, len(messages))
        return self.messages

    def new_conversation(self) -> None:
        if self.state != QueryState.IDLE:
            raise Busy("Cannot start a new conversation while a query is in flight.")
        self.current_thread_id = None
        self.messages = []

    async def delete_thread(self, thread_id: str) -> None:
        is_current = thread_id == self.current_thread_id
        if is_current and self.state != QueryState.IDLE:
            raise Busy("Cannot delete the thread of the in-flight query.")
        await self.threads.soft_delete(thread_id)
        if is_current:
            self.current_thread_id = None
            self.messages = []

    def reset(self) -> None:
        """Sign-out teardown."""
        self.cancel()
        self.current_thread_id = None
        self.messages = []
        self.query = ""
