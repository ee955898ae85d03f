"""Agent loop: the core processing engine.

Phase Separation:
- Phase A: Input handling (commands, error-loop guard, history from the cache)
- Phase B: Intent classification and routing plan, computed once and jointly
- Phase C: Orchestrated response (strategy ladder under a turn timeout)
- Phase D: Bookkeeping (guard reset, cache update, reply cleanup)

Core Principles:
- One task per inbound turn; the bus consumer never dies on a failed turn
- Classification and routing are advisory and never fatal
- Only ladder exhaustion reaches the user, as a friendly message
"""

from __future__ import annotations

import asyncio
import re
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable

from loguru import logger

from sportello.agent.context import ContextBuilder
from sportello.agent.intent import Classification, IntentClassifier, IntentType
from sportello.agent.loop_guard import ErrorLoopGuard
from sportello.agent.orchestrator import OrchestrationError, Orchestrator, TurnContext
from sportello.agent.routing import RoutingContext, RoutingPlan, RoutingPlanner
from sportello.agent.runner import AgentRunner, RunResult
from sportello.agent.tools import ToolRegistry, build_registry
from sportello.bus.events import InboundMessage, OutboundMessage
from sportello.bus.queue import MessageBus
from sportello.cache.actions import ActionCache
from sportello.cache.conversation import ConversationCache, HistoryFetcher, Turn
from sportello.config.schema import Config
from sportello.providers.base import LLMProvider
from sportello.providers.errors import ErrorKind
from sportello.utils.helpers import get_repo_path, strip_think, truncate

LOOP_REFUSAL = (
    "This one keeps failing, so I'm going to stop retrying it for a few minutes. "
    "Try a different approach or give it a bit."
)
HELP_TEXT = (
    "sportello commands:\n"
    "/new - Start a new conversation (forgets recent context)\n"
    "/help - Show available commands"
)


async def _no_history(conversation_id: str, limit: int) -> list[Turn]:
    return []


def failure_message(error: OrchestrationError) -> str:
    """User-facing text for a turn whose ladder was exhausted."""
    if error.kind is ErrorKind.TIMEOUT:
        return "That took too long and I gave up. Try again, maybe with a smaller request."
    if error.kind is ErrorKind.RATE_LIMIT:
        return "The model service is rate limiting me right now. Give it a minute and try again."
    if error.kind is ErrorKind.AUTH:
        return "I can't reach the model service right now. Someone needs to check the API credentials."
    return f"I couldn't come up with a good answer after {error.attempts} tries. Could you rephrase that?"


class AgentLoop:
    """
    The agent loop is the core processing engine.

    It:
    1. Receives messages from the bus, one task per turn
    2. Refuses commands stuck in an error loop
    3. Loads conversation history through the conversation cache
    4. Classifies intent and plans routing concurrently
    5. Runs the strategy ladder
    6. Records the turn and sends the cleaned reply back
    """

    def __init__(
        self,
        bus: MessageBus,
        provider: LLMProvider,
        config: Config | None = None,
        history_fetcher: HistoryFetcher | None = None,
        tools: ToolRegistry | None = None,
        conversations: ConversationCache | None = None,
        actions: ActionCache | None = None,
        guard: ErrorLoopGuard | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        self.bus = bus
        self.provider = provider
        self.config = config or Config()
        defaults = self.config.agents.defaults
        models = self.config.models

        self.repo = get_repo_path(defaults.repo)
        self.tools = tools or build_registry(self.repo, self.config.tools, models)
        self.context = ContextBuilder(self.repo)
        self.conversations = conversations or ConversationCache(
            history_fetcher or _no_history,
            max_conversations=self.config.cache.max_conversations,
            max_turns=self.config.cache.max_turns,
            ttl_s=self.config.cache.conversation_ttl_s,
            fetch_timeout_s=self.config.cache.fetch_timeout_s,
        )
        self.actions = actions or ActionCache(
            max_actions=self.config.cache.max_actions,
            ttl_s=self.config.cache.action_ttl_s,
        )
        self.guard = guard or ErrorLoopGuard(
            threshold=self.config.guard.threshold,
            reset_window_s=self.config.guard.reset_window_s,
        )
        self.classifier = IntentClassifier(
            provider, models.resolve(models.classifier), timeout_s=defaults.classifier_timeout_s
        )
        self.planner = RoutingPlanner(provider, models.resolve(models.router), timeout_s=defaults.router_timeout_s)
        self.runner = AgentRunner(
            provider,
            self.tools,
            self.context,
            self.actions,
            max_iterations=defaults.max_tool_iterations,
            max_read_only_iterations=defaults.max_read_only_iterations,
            read_only_cap_always=defaults.read_only_cap_always,
            max_parallel_tools=defaults.max_parallel_tools,
            max_tokens=defaults.max_tokens,
            temperature=defaults.temperature,
            request_timeout_s=defaults.request_timeout_s,
            retries=defaults.request_retries,
            reliable_model=models.resolve(models.reliable),
            sleep=sleep,
        )
        self.orchestrator = Orchestrator(
            self.runner,
            self.context,
            self.tools,
            models,
            history_window=defaults.history_window,
            reduced_history_window=defaults.reduced_history_window,
            min_response_chars=defaults.min_response_chars,
            turn_timeout_s=defaults.turn_timeout_s,
        )

        self._running = False
        self._turn_tasks: set[asyncio.Task] = set()
        self._maintenance_task: asyncio.Task | None = None

    async def run(self) -> None:
        """Run the agent loop, processing messages from the bus."""
        self._running = True
        self._maintenance_task = asyncio.create_task(self._maintenance(), name="maintenance")
        logger.info("Agent loop started")

        while self._running:
            try:
                msg = await asyncio.wait_for(
                    self.bus.consume_inbound(),
                    timeout=1.0
                )
            except asyncio.TimeoutError:
                continue
            self._schedule_turn(msg)

    def stop(self) -> None:
        """Stop the agent loop and cancel in-flight turns."""
        self._running = False
        for task in list(self._turn_tasks):
            task.cancel()
        if self._maintenance_task:
            self._maintenance_task.cancel()
        logger.info("Agent loop stopping")

    def _schedule_turn(self, msg: InboundMessage) -> asyncio.Task:
        """Process one turn as its own task; failures are logged and answered, never fatal."""
        async def _wrapped():
            try:
                response = await self._process_message(msg)
                if response is not None:
                    await self.bus.publish_outbound(response)
            except asyncio.CancelledError:
                logger.debug("Turn cancelled: {}", msg.session_key)
            except Exception as e:
                logger.exception("Error processing message from {}: {}", msg.session_key, e)
                await self.bus.publish_outbound(OutboundMessage(
                    channel=msg.channel,
                    chat_id=msg.chat_id,
                    content="Sorry, something went wrong on my end. Try again in a moment.",
                    reply_to=msg.message_id or None,
                ))
            finally:
                self._turn_tasks.discard(asyncio.current_task())

        task = asyncio.create_task(_wrapped(), name=f"turn:{msg.session_key}")
        self._turn_tasks.add(task)
        return task

    async def _maintenance(self) -> None:
        """Periodically sweep the error-loop guard and the action cache."""
        interval = self.config.guard.sweep_interval_s
        while True:
            await asyncio.sleep(interval)
            guard_removed = self.guard.sweep()
            actions_removed = self.actions.sweep()
            if guard_removed or actions_removed:
                logger.debug("Maintenance swept {} guard counter(s), {} action list(s)", guard_removed, actions_removed)

    async def _process_message(
        self,
        msg: InboundMessage,
        on_progress: Callable[..., Awaitable[None]] | None = None,
    ) -> OutboundMessage | None:
        """
        Process a single inbound message with explicit phase separation.

        Args:
            msg: Inbound message to process.
            on_progress: Optional progress callback; defaults to publishing on the bus.

        Returns:
            OutboundMessage or None.
        """
        # ====================================================================
        # Phase A: Input handling
        # ====================================================================

        preview = msg.content[:80] + "..." if len(msg.content) > 80 else msg.content
        logger.info("Processing message from {}:{}: {}", msg.channel, msg.sender_id, preview)
        started = time.monotonic()
        key = msg.session_key

        cmd = msg.content.strip().lower()
        if cmd == "/new":
            self.conversations.invalidate(key)
            self.actions.clear(key)
            return self._reply(msg, "New conversation started.")
        if cmd == "/help":
            return self._reply(msg, HELP_TEXT)

        if self.guard.check_and_record(msg.sender_id, msg.command):
            logger.warning("Refusing {} from {}: error loop", msg.command, msg.sender_id)
            return self._reply(msg, LOOP_REFUSAL)

        defaults = self.config.agents.defaults
        history = await self.conversations.get(key, defaults.history_window)
        if msg.message_id:
            history = [t for t in history if t.message_id != msg.message_id]

        # ====================================================================
        # Phase B: Classification + routing (jointly, once per message)
        # ====================================================================

        action_summary = self.actions.summarize(key)
        routing_context = RoutingContext(
            recent_files=self.actions.recent_paths(key),
            conversation_length=len(history),
            action_summary=action_summary,
            conversation_summary=self._summarize_history(history),
        )
        classification, plan = await asyncio.gather(
            self.classifier.classify(msg.content),
            self.planner.plan(msg.content, routing_context),
            return_exceptions=True,
        )
        if not isinstance(classification, Classification):
            logger.warning("Classification failed: {}", classification)
            classification = Classification(IntentType.CONVERSATION, method="fallback", confidence=0.0)
        if not isinstance(plan, RoutingPlan):
            logger.warning("Routing plan failed, continuing without one: {}", plan)
            plan = None

        # ====================================================================
        # Phase C: Orchestrated response
        # ====================================================================

        turn = TurnContext(
            conversation_id=key,
            text=msg.content,
            history=history,
            classification=classification,
            plan=plan,
            action_summary=action_summary,
        )
        timeout, window_bound = self._turn_deadline(msg)

        async def _bus_progress(content: str, *, tool_hint: bool = False) -> None:
            meta = dict(msg.metadata or {})
            meta["_progress"] = True
            meta["_tool_hint"] = tool_hint
            await self.bus.publish_outbound(OutboundMessage(
                channel=msg.channel, chat_id=msg.chat_id, content=content, metadata=meta,
            ))

        try:
            result = await self.orchestrator.run(turn, on_progress=on_progress or _bus_progress, timeout_s=timeout)
        except OrchestrationError as e:
            logger.error("Turn failed for {} after {} attempt(s): {}", key, e.attempts, e.last_reason)
            reply = self._reply(msg, failure_message(e))
            if window_bound and e.kind is ErrorKind.TIMEOUT:
                reply.metadata["out_of_band"] = True
                reply.reply_to = None
            return reply

        # ====================================================================
        # Phase D: Bookkeeping
        # ====================================================================

        self.guard.clear(msg.sender_id, msg.command)
        content = self._clean_reply(result.content)
        self._record_turn(msg, result, content)

        logger.info(
            "Response to {}:{} in {:.1f}s ({}): {}",
            msg.channel, msg.sender_id, time.monotonic() - started,
            result.stop_reason.value, content[:120],
        )
        return self._reply(msg, content)

    def _turn_deadline(self, msg: InboundMessage) -> tuple[float, bool]:
        """Turn timeout, and whether the platform reply window is what bounds it."""
        defaults = self.config.agents.defaults
        if defaults.reply_window_s is None:
            return defaults.turn_timeout_s, False
        age = (datetime.now(timezone.utc) - msg.timestamp).total_seconds()
        remaining = max(1.0, defaults.reply_window_s - age)
        if remaining < defaults.turn_timeout_s:
            return remaining, True
        return defaults.turn_timeout_s, False

    def _record_turn(self, msg: InboundMessage, result: RunResult, content: str) -> None:
        """Keep the conversation cache in step with what just happened."""
        key = msg.session_key
        if result.primary_actions:
            # The repository changed; the next turn should see fresh history
            self.conversations.invalidate(key)
            return
        now = datetime.now(timezone.utc)
        self.conversations.upsert(key, Turn(
            message_id=msg.message_id or f"user-{msg.timestamp.timestamp()}",
            role="user",
            text=msg.content,
            timestamp=msg.timestamp,
            author=msg.sender_id,
        ))
        self.conversations.upsert(key, Turn(
            message_id=f"reply-{msg.message_id or now.timestamp()}",
            role="assistant",
            text=content,
            timestamp=now,
        ))

    def _clean_reply(self, text: str | None) -> str:
        """Strip reasoning blocks, collapse whitespace and fit the platform limit."""
        text = strip_think(text) or ""
        text = re.sub(r"[ \t]+\n", "\n", text)
        text = re.sub(r"\n{3,}", "\n\n", text).strip()
        limit = self.config.channels.max_message_chars
        return truncate(text, max(0, limit - 3), suffix="...")

    @staticmethod
    def _summarize_history(history: list[Turn], turns: int = 3) -> str | None:
        if not history:
            return None
        return " | ".join(f"{t.role}: {t.text[:100]}" for t in history[-turns:])

    @staticmethod
    def _reply(msg: InboundMessage, content: str) -> OutboundMessage:
        return OutboundMessage(
            channel=msg.channel,
            chat_id=msg.chat_id,
            content=content,
            reply_to=msg.message_id or None,
            metadata=dict(msg.metadata or {}),
        )

    async def process_direct(
        self,
        content: str,
        session_key: str = "cli:direct",
        channel: str = "cli",
        chat_id: str = "direct",
        on_progress: Callable[..., Awaitable[None]] | None = None,
    ) -> str:
        """Process a message directly (for CLI or scripted usage)."""
        msg = InboundMessage(
            channel=channel, sender_id="user", chat_id=chat_id, content=content,
            session_key_override=session_key,
        )
        response = await self._process_message(msg, on_progress=on_progress)
        return response.content if response else ""
