"""Operator decision providers.

The interactive console provider blocks on standard input for every user with
differences. The scripted provider returns predetermined answers and is what
tests and automated callers use.
"""
from __future__ import annotations

from collections import deque
from typing import (
    Callable,
    Deque,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Union,
)

from .models import Decision, Difference, MatchedPair

ACTION_ALIASES: Dict[str, Decision] = {
    "d": Decision.MERGE_TO_DESTINATION,
    "dest": Decision.MERGE_TO_DESTINATION,
    "destination": Decision.MERGE_TO_DESTINATION,
    "s": Decision.MERGE_TO_SOURCE,
    "source": Decision.MERGE_TO_SOURCE,
    "k": Decision.SKIP,
    "skip": Decision.SKIP,
    "f": Decision.FLAG,
    "flag": Decision.FLAG,
}

PROMPT = "[D] merge to destination  [S] merge to source  [K] skip  [F] flag > "


def parse_decision(text: Optional[str]) -> Optional[Decision]:
    if text is None:
        return None
    return ACTION_ALIASES.get(text.strip().lower())


class DecisionProvider(Protocol):
    def choose(self, pair: MatchedPair, differences: Sequence[Difference]) -> Decision: ...

    def flag_note(self, pair: MatchedPair) -> Optional[str]: ...

    def export_path(self) -> Optional[str]: ...


class ConsoleDecisionProvider:
    def __init__(
        self,
        input_fn: Callable[[str], str] = input,
        output_fn: Callable[[str], None] = print,
    ):
        self.input_fn = input_fn
        self.output_fn = output_fn

    def render(self, pair: MatchedPair, differences: Sequence[Difference]) -> str:
        width = max([len("Attribute")] + [len(d.attribute) for d in differences])
        lines = [
            "",
            f"Source:      {pair.source.user_principal_name}",
            f"Destination: {pair.destination.user_principal_name}",
            f"  {'Attribute':<{width}}  Source -> Destination",
        ]
        for difference in differences:
            lines.append(
                f"  {difference.attribute:<{width}}  "
                f"'{difference.source_value}' -> '{difference.destination_value}'"
            )
        return "\n".join(lines)

    def choose(self, pair: MatchedPair, differences: Sequence[Difference]) -> Decision:
        self.output_fn(self.render(pair, differences))
        while True:
            decision = parse_decision(self.input_fn(PROMPT))
            if decision is not None:
                return decision
            self.output_fn("Unrecognised action, enter D, S, K or F.")

    def flag_note(self, pair: MatchedPair) -> Optional[str]:
        note = self.input_fn("Note for flagged user (optional): ").strip()
        return note or None

    def export_path(self) -> Optional[str]:
        path = self.input_fn("Export flagged users to CSV path (blank to skip): ").strip()
        return path or None


class ScriptedDecisionProvider:
    """Returns predetermined decisions.

    ``decisions`` is either a mapping from source principal name to decision
    or a sequence consumed in order. Strings are parsed like operator input.
    """

    def __init__(
        self,
        decisions: Union[Mapping[str, Union[Decision, str]], Iterable[Union[Decision, str]]] = (),
        notes: Optional[Mapping[str, str]] = None,
        export_path: Optional[str] = None,
        default: Optional[Decision] = None,
    ):
        self._by_user: Dict[str, Decision] = {}
        self._queue: Deque[Decision] = deque()
        if isinstance(decisions, Mapping):
            self._by_user = {upn: self._coerce(value) for upn, value in decisions.items()}
        else:
            self._queue.extend(self._coerce(value) for value in decisions)
        self.notes = dict(notes or {})
        self._export_path = export_path
        self.default = default
        self.prompts: List[Tuple[str, List[str]]] = []

    @staticmethod
    def _coerce(value: Union[Decision, str]) -> Decision:
        if isinstance(value, Decision):
            return value
        decision = parse_decision(value)
        if decision is None:
            raise ValueError(f"Unrecognised scripted decision {value!r}")
        return decision

    def choose(self, pair: MatchedPair, differences: Sequence[Difference]) -> Decision:
        upn = pair.source.user_principal_name
        self.prompts.append((upn, [d.attribute for d in differences]))
        if upn in self._by_user:
            return self._by_user[upn]
        if self._queue:
            return self._queue.popleft()
        if self.default is not None:
            return self.default
        raise LookupError(f"No scripted decision for {upn}")

    def flag_note(self, pair: MatchedPair) -> Optional[str]:
        return self.notes.get(pair.source.user_principal_name)

    def export_path(self) -> Optional[str]:
        return self._export_path
