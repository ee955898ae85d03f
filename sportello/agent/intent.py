"""Intent classification: keyword heuristics with an LLM fallback."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from enum import Enum

from loguru import logger

from sportello.providers.base import LLMProvider


class IntentType(str, Enum):
    CONVERSATION = "CONVERSATION"
    READ_ONLY = "READ_ONLY"
    CREATE_NEW = "CREATE_NEW"
    SIMPLE_EDIT = "SIMPLE_EDIT"
    FUNCTIONALITY_FIX = "FUNCTIONALITY_FIX"
    COMMIT = "COMMIT"


@dataclass(frozen=True)
class Classification:
    """Coarse intent of one incoming message."""

    type: IntentType
    method: str  # "heuristic" | "llm" | "fallback"
    confidence: float = 1.0

    @property
    def is_conversation(self) -> bool:
        return self.type is IntentType.CONVERSATION

    @property
    def is_read_only(self) -> bool:
        return self.type is IntentType.READ_ONLY

    @property
    def is_create(self) -> bool:
        return self.type is IntentType.CREATE_NEW

    @property
    def is_edit(self) -> bool:
        return self.type is IntentType.SIMPLE_EDIT

    @property
    def is_functionality_fix(self) -> bool:
        return self.type is IntentType.FUNCTIONALITY_FIX

    @property
    def is_commit(self) -> bool:
        return self.type is IntentType.COMMIT

    @property
    def is_write(self) -> bool:
        return self.type in (
            IntentType.CREATE_NEW,
            IntentType.SIMPLE_EDIT,
            IntentType.FUNCTIONALITY_FIX,
            IntentType.COMMIT,
        )


_GREETING = re.compile(
    r"^\s*(hi|hey|hello|yo|sup|thanks|thank you|thx|good (morning|afternoon|evening)|gm|gn)\b[\s!.,?]*\w{0,12}[\s!.?]*$",
    re.IGNORECASE,
)
_QUESTION_START = re.compile(r"^\s*(what|which|where|when|who|how many|show|list|find|search|read|does|is there|are there|can you show)\b", re.IGNORECASE)
_REPO_NOUNS = re.compile(r"\b(files?|folders?|director(y|ies)|src|pages?|repo(sitory)?|commits?|history|log|status|contents?|code)\b|\.\w{2,4}\b", re.IGNORECASE)
_MUTATING_VERBS = re.compile(r"\b(change|replace|update|edit|fix|modify|rename|delete|remove|add|create|make|build|write|commit|push|deploy)\b", re.IGNORECASE)
_COMMIT = re.compile(r"\b(commit|push|deploy|ship it)\b", re.IGNORECASE)
_CREATE = re.compile(r"\b(create|build|generate|produce|make (a|an|me)|new (page|game|file|feature))\b", re.IGNORECASE)
_FIX = re.compile(
    r"\b(fix|broken|bug|not working|isn'?t working|doesn'?t work|crash(es|ing)?|css|javascript|js|styling|responsive|mobile|layout)\b",
    re.IGNORECASE,
)
_EDIT = re.compile(r"\b(change|replace|update|edit|modify|rename|reword|set the)\b", re.IGNORECASE)

_CLASSIFIER_PROMPT = """Classify the following user request into ONE category:

SIMPLE_EDIT - small text or content change ("change the title to X")
FUNCTIONALITY_FIX - fixing bugs, CSS/JS problems, styling, responsiveness
CREATE_NEW - creating something new (page, game, feature, content)
COMMIT - committing, pushing or deploying changes
READ_ONLY - wants information, to see, list or find something, no changes
CONVERSATION - greeting, chat or discussion without file operations

Requests mentioning "fix", CSS, JS, styling, responsive or mobile are FUNCTIONALITY_FIX.

User request: "{text}"

Respond with ONLY one of: SIMPLE_EDIT, FUNCTIONALITY_FIX, CREATE_NEW, COMMIT, READ_ONLY, CONVERSATION"""


def classify_heuristic(text: str) -> IntentType | None:
    """
    Keyword fast path. Returns None when no rule matches.

    Precedence is fixed: greeting, read-only question, commit, create,
    functionality fix, simple edit. Commit and create come before edit so a
    deploy or new-content request is never taken for a small text tweak.
    """
    if _GREETING.match(text):
        return IntentType.CONVERSATION
    if _QUESTION_START.match(text) and _REPO_NOUNS.search(text) and not _MUTATING_VERBS.search(text):
        return IntentType.READ_ONLY
    if _COMMIT.search(text):
        return IntentType.COMMIT
    if _CREATE.search(text):
        return IntentType.CREATE_NEW
    if _FIX.search(text):
        return IntentType.FUNCTIONALITY_FIX
    if _EDIT.search(text):
        return IntentType.SIMPLE_EDIT
    return None


class IntentClassifier:
    """Maps raw user text to an IntentType."""

    def __init__(self, provider: LLMProvider, model: str, timeout_s: float = 5.0):
        self.provider = provider
        self.model = model
        self.timeout_s = timeout_s

    async def classify(self, text: str) -> Classification:
        intent = classify_heuristic(text)
        if intent is not None:
            logger.debug("Classified '{}' as {} (heuristic)", text[:50], intent.value)
            return Classification(intent, method="heuristic", confidence=0.8)
        return await self._classify_llm(text)

    async def _classify_llm(self, text: str) -> Classification:
        messages = [
            {"role": "system", "content": "You are a request classifier. Respond with only the category."},
            {"role": "user", "content": _CLASSIFIER_PROMPT.format(text=text)},
        ]
        try:
            response = await asyncio.wait_for(
                self.provider.chat(
                    messages, model=self.model, max_tokens=50, temperature=0.1, timeout=self.timeout_s
                ),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning("Intent classification timed out after {}s", self.timeout_s)
            return Classification(IntentType.CONVERSATION, method="fallback", confidence=0.0)

        answer = (response.content or "").strip().strip(".*`'\"").upper()
        if response.is_error or answer not in IntentType.__members__:
            logger.warning("Invalid classification received: {}", answer[:40] or response.finish_reason)
            return Classification(IntentType.CONVERSATION, method="fallback", confidence=0.0)

        logger.info("Classified '{}' as {} (llm)", text[:50], answer)
        return Classification(IntentType[answer], method="llm", confidence=0.7)
