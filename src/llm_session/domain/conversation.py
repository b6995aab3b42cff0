# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Yakov Shkolnikov and contributors
"""Conversation history and its two templating policies.

plain:
    Turns are handed to the engine verbatim as role/content pairs; the
    engine applies its own chat template.

reasoning:
    The engine runs without a chat template, so turns carry explicit
    markers. A user turn being generated ends with THINK_START to open the
    reasoning trace; the stored copy does not, so replaying history never
    re-opens it. Stored assistant turns keep only the final answer and are
    closed with SENTENCE_END.
"""

from collections.abc import Iterable, Iterator, Sequence

from llm_session.domain.errors import HistoryOrderError
from llm_session.domain.value_objects import ConversationTurn, Role, TemplatingMode

USER_START = "<|User|>"
ASSISTANT_START = "<|Assistant|>"
THINK_START = "<think>\n"
THINK_END = "</think>"
SENTENCE_START = "<|begin_of_sentence|>"
SENTENCE_END = "<|end_of_sentence|>"

END_OF_TURN = "<eop>"


def strip_think_span(text: str) -> str:
    """Remove the first complete THINK_START..THINK_END span, if any."""
    start = text.find(THINK_START)
    if start == -1:
        return text
    end = text.find(THINK_END, start)
    if end == -1:
        return text
    return text[:start] + text[end + len(THINK_END) :]


def visible_response(text: str, mode: TemplatingMode) -> str:
    """The answer a user should see: reasoning trace removed, leading whitespace trimmed.

    In reasoning mode THINK_START belongs to the prompt, so the generated
    text only carries the closing marker and everything up to it is trace.
    """
    if mode is TemplatingMode.REASONING:
        marker = text.find(THINK_END)
        if marker != -1:
            text = text[marker + len(THINK_END) :]
    return strip_think_span(text).lstrip()


def finalize_response(text: str, mode: TemplatingMode) -> str:
    """Turn a raw generated response into the form stored in history.

    >>> finalize_response("<think>\\nabc</think>  final answer", TemplatingMode.REASONING)
    'final answer<|end_of_sentence|>'
    """
    answer = visible_response(text, mode)
    if mode is TemplatingMode.REASONING:
        return answer + SENTENCE_END
    return answer


def alternating_turns(texts: Iterable[str]) -> list[ConversationTurn]:
    """Pair a flat text list into turns: even indexes user, odd indexes assistant."""
    return [
        ConversationTurn(Role.USER if i % 2 == 0 else Role.ASSISTANT, text)
        for i, text in enumerate(texts)
    ]


def format_user(text: str, mode: TemplatingMode, for_history: bool) -> str:
    if mode is TemplatingMode.REASONING:
        return USER_START + text + ASSISTANT_START + ("" if for_history else THINK_START)
    return text


def format_system(text: str, mode: TemplatingMode) -> str:
    if mode is TemplatingMode.REASONING:
        return SENTENCE_START + text
    return text


class ConversationHistory:
    """Ordered, role-alternating log of conversation turns.

    At most one system turn exists and it always sits at index 0; it is
    replaced in place rather than appended. Apart from it, consecutive
    turns never share a role.

    The templating mode is fixed at construction.
    """

    def __init__(
        self,
        mode: TemplatingMode = TemplatingMode.PLAIN,
        system_prompt: str | None = None,
        seed: Iterable[ConversationTurn] = (),
    ) -> None:
        self._mode = mode
        self._system_prompt = system_prompt
        self._turns: list[ConversationTurn] = []
        if system_prompt is not None:
            self._turns.append(ConversationTurn(Role.SYSTEM, format_system(system_prompt, mode)))
        for turn in seed:
            if turn.role is Role.SYSTEM:
                self.replace_system_prompt(turn.content)
            else:
                self.commit(turn.role, turn.content)

    @classmethod
    def from_alternating(
        cls,
        texts: Sequence[str],
        mode: TemplatingMode = TemplatingMode.PLAIN,
        system_prompt: str | None = None,
    ) -> "ConversationHistory":
        """Seed from a flat list where even indexes are user turns and odd ones assistant."""
        return cls(mode=mode, system_prompt=system_prompt, seed=alternating_turns(texts))

    @property
    def mode(self) -> TemplatingMode:
        return self._mode

    @property
    def system_prompt(self) -> str | None:
        """System prompt as given, without template markers."""
        return self._system_prompt

    @property
    def turns(self) -> tuple[ConversationTurn, ...]:
        return tuple(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(tuple(self._turns))

    def has_system_turn(self) -> bool:
        return bool(self._turns) and self._turns[0].role is Role.SYSTEM

    def render(self, pending_user_text: str) -> list[ConversationTurn]:
        """Stored turns plus the user turn about to be generated for.

        History is not modified; the pending turn is stored by ``commit``
        once its response completes.
        """
        if self._turns and self._turns[-1].role is Role.USER:
            raise HistoryOrderError("Cannot render a user turn after another user turn")
        pending = ConversationTurn(Role.USER, format_user(pending_user_text, self._mode, for_history=False))
        return [*self._turns, pending]

    def commit(self, role: Role, content: str) -> ConversationTurn:
        """Append a finalized turn.

        User content is stored in history form; assistant content is
        finalized (reasoning trace removed, leading whitespace trimmed).

        Raises:
            HistoryOrderError: For system turns, or when the previous turn
                has the same role.
        """
        role = Role(role)
        if role is Role.SYSTEM:
            raise HistoryOrderError("System turns are set with replace_system_prompt")
        if self._turns and self._turns[-1].role is role:
            raise HistoryOrderError(f"Two consecutive {role.value} turns are not allowed")

        if role is Role.USER:
            stored = format_user(content, self._mode, for_history=True)
        else:
            stored = finalize_response(content, self._mode)
        turn = ConversationTurn(role, stored)
        self._turns.append(turn)
        return turn

    def replace_system_prompt(self, text: str) -> None:
        self._system_prompt = text
        turn = ConversationTurn(Role.SYSTEM, format_system(text, self._mode))
        if self.has_system_turn():
            self._turns[0] = turn
        else:
            self._turns.insert(0, turn)

    def drop_system_prompt(self) -> None:
        """Remove the system turn, keeping the rest of the conversation."""
        if self.has_system_turn():
            del self._turns[0]
        self._system_prompt = None

    def reset_to_system_only(self) -> None:
        self.truncate(1 if self.has_system_turn() else 0)

    def truncate(self, keep: int) -> None:
        """Drop every turn after the first ``keep`` (negative counts as 0)."""
        del self._turns[max(keep, 0) :]
        if not self.has_system_turn():
            self._system_prompt = None

    def render_text(self) -> str:
        return render_text(self._turns)


def render_text(turns: Iterable[ConversationTurn]) -> str:
    """Human-readable dump of turns, one ``[role]: content`` line each."""
    return "".join(f"[{turn.role.value}]: {turn.content}\n" for turn in turns)
