"""Token-budgeted context assembly.

Packs three tiers into one prompt block, in priority order:

- User Profile: stable facts about the user (smallest allotment)
- Relevant Background: memories ranked against the current query
- Recent Conversation: the latest session turns (whatever budget remains)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Any, Iterable

from engram.config import ContextConfig
from engram.memory.models import MemoryRecord
from engram.memory.retrieval import RetrievalEngine
from engram.memory.session import Message, coerce_history
from engram.memory.store import MemoryStore

logger = logging.getLogger(__name__)

PROFILE_HEADER = "User Profile:"
MEMORY_HEADER = "Relevant Background:"
CONVERSATION_HEADER = "Recent Conversation:"


def estimate_tokens(text: str, chars_per_token: int = 4) -> int:
    """Length-proxied token count: one token per chars_per_token characters."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


def text_similarity(a: str, b: str) -> float:
    """Case-insensitive difflib ratio in [0, 1]."""
    return SequenceMatcher(None, a.lower(), b.lower()).ratio()


@dataclass
class _Tier:
    header: str
    lines: list[str]
    tokens: int = 0


class ContextAssembler:
    """Builds the memory context block handed to a language model.

    Example:
        >>> assembler = ContextAssembler(retrieval, store, ContextConfig())
        >>> print(await assembler.build_context("u1", "what theme do I like"))
        User Profile:
        - I prefer dark mode
    """

    def __init__(
        self,
        retrieval: RetrievalEngine,
        store: MemoryStore,
        config: ContextConfig | None = None,
    ) -> None:
        """Initialize the assembler.

        Args:
            retrieval: Engine ranking memories against the query.
            store: Store used to read profile facts.
            config: Budgets and packing rules. If None, uses defaults.
        """
        self._retrieval = retrieval
        self._store = store
        self._config = config or ContextConfig()

    @property
    def config(self) -> ContextConfig:
        """Active budgets and packing rules."""
        return self._config

    def estimate_tokens(self, text: str) -> int:
        """Token cost of text under the configured chars-per-token proxy."""
        return estimate_tokens(text, self._config.chars_per_token)

    async def build_context(
        self,
        user_id: str,
        query_text: str,
        session_history: Iterable[Message | dict[str, Any]] | None = None,
    ) -> str:
        """Assemble the context block for user_id.

        Within each tier items are added in priority order until the next one
        would exceed the tier budget; that item and everything after it is
        dropped. Items nearly identical to one already included are skipped.
        Empty tiers are omitted.

        Args:
            user_id: Owner whose memories are used.
            query_text: Current query used to rank background memories.
            session_history: Recent turns (Message objects or role/content dicts).

        Returns:
            The formatted context, or an empty string if every tier is empty.

        Raises:
            StoreUnavailable: If the store cannot be read.
        """
        included: list[str] = []
        included_ids: set[str] = set()

        profile = _Tier(PROFILE_HEADER, [])
        for record in await self._profile_facts(user_id):
            if not self._admit_memory(record, included):
                continue
            if not self._pack(profile, f"- {record.summary or record.content}", self._config.profile_tokens):
                break
            included.append(record.content)
            included_ids.add(record.id)

        background = _Tier(MEMORY_HEADER, [])
        if query_text and query_text.strip():
            for result in await self._retrieval.search(user_id, query_text):
                record = result.record
                if record.id in included_ids or not self._admit_memory(record, included):
                    continue
                if not self._pack(background, f"- {record.summary or record.content}", self._config.memory_tokens):
                    break
                included.append(record.content)
                included_ids.add(record.id)

        conversation = self._conversation_tier(coerce_history(session_history))

        sections = [
            "\n".join([tier.header, *tier.lines])
            for tier in (profile, background, conversation)
            if tier.lines
        ]
        logger.debug(
            f"Built context for {user_id}: profile={profile.tokens} "
            f"background={background.tokens} conversation={conversation.tokens} tokens"
        )
        return "\n\n".join(sections)

    async def _profile_facts(self, user_id: str) -> list[MemoryRecord]:
        profile_types = set(self._config.profile_types)
        records = [
            r for r in await self._store.get_active_by_user(user_id)
            if r.type.value in profile_types and r.user_id == user_id
        ]
        records.sort(key=lambda r: (-r.effective_importance, r.created_at or 0.0, r.id))
        return records[: self._config.max_profile_items]

    def _admit_memory(self, record: MemoryRecord, included: list[str]) -> bool:
        threshold = self._config.dedup_threshold
        for existing in included:
            if text_similarity(record.content, existing) >= threshold:
                logger.debug(f"Skipping near-duplicate memory {record.id}")
                return False
        return True

    def _pack(self, tier: _Tier, line: str, budget: int) -> bool:
        cost = self.estimate_tokens(line)
        if tier.tokens + cost > budget:
            return False
        tier.lines.append(line)
        tier.tokens += cost
        return True

    def _conversation_tier(self, history: list[Message]) -> _Tier:
        tier = _Tier(CONVERSATION_HEADER, [])
        budget = self._config.conversation_tokens
        recent = history[-self._config.max_conversation_turns:]

        # Newest turns have priority; output stays chronological
        kept: list[str] = []
        for message in reversed(recent):
            line = f"{message.role}: {message.content}"
            cost = self.estimate_tokens(line)
            if tier.tokens + cost > budget:
                break
            kept.append(line)
            tier.tokens += cost

        tier.lines = list(reversed(kept))
        return tier
