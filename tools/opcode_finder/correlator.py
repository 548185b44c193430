"""
Opcode correlation.

Matches configured signatures against reconstructed jump table entries
to assign a name to each case value. A child signature may hit the
table directly (its match lies just past a handler start), through the
callers of the function it sits in, or through a fixed number of call
levels.
"""

from typing import Iterable, List, Sequence

from . import config
from .jumptable import ConfigurationError, JumpTable, TableEntry
from .loader import BinaryImage, ImageReadError
from .output import ResultEntry
from .signatures import ActionType, ReadType, SignatureInfo
from .xrefs import XRefIndex, function_start_before


class Correlator:
    """
    Resolves signatures to values.

    ``window``, ``deltas`` and ``function_window`` default to the layout of the
    supported toolchain and can be overridden for another binary.
    """

    def __init__(self, image: BinaryImage, xrefs: XRefIndex,
                 window: int = config.TABLE_SEARCH_WINDOW,
                 deltas: Sequence[int] = config.LAYOUT_DELTAS,
                 function_window: int = config.FUNCTION_START_WINDOW):
        self.image = image
        self.xrefs = xrefs
        self.window = window
        self.deltas = tuple(deltas)
        self.function_window = function_window

        self._handlers = {
            ActionType.NONE: self._match_direct,
            ActionType.READ_THEN_CROSS_REFERENCE: self._match_read_then_follow,
            ActionType.CROSS_REFERENCE: self._match_cross_reference,
        }

    # ------------------------------------------------------------------
    # Plain signatures
    # ------------------------------------------------------------------

    def resolve_plain(self, signature: SignatureInfo) -> List[ResultEntry]:
        """Read a value at every match of a signature without a table."""
        matches = self.image.find(signature.signature)
        if not matches:
            return [ResultEntry.not_found(
                signature.name,
                f"Failed to find signature for {signature.name}")]

        if signature.read_type is ReadType.NONE:
            return [ResultEntry.not_found(
                signature.name,
                f"{signature.name} has no ReadType; nothing to report")]

        # Unreadable matches are reported after the resolved ones
        results, failures = [], []
        for match in matches:
            try:
                value = self.image.read_value(match + signature.offset,
                                              signature.read_type)
            except ImageReadError as e:
                failures.append(ResultEntry.not_found(
                    signature.name, f"{signature.name}: {e}"))
                continue
            name = signature.name + signature.desired_values.get(value, "")
            results.append(ResultEntry(name=name, values=[value]))
        return results + failures

    # ------------------------------------------------------------------
    # Table children
    # ------------------------------------------------------------------

    def resolve_child(self, child: SignatureInfo,
                      table: JumpTable) -> List[ResultEntry]:
        """Resolve one child signature against a reconstructed table."""
        handler = self._handlers.get(child.action_type)
        if handler is None:
            raise ConfigurationError(
                f"No handling for action {child.action_type} on {child.name}")
        return handler(child, table, self.image.find(child.signature))

    def resolve_children(self, signature: SignatureInfo,
                         table: JumpTable) -> List[ResultEntry]:
        results = []
        for child in signature.sub_info or ():
            results.extend(self.resolve_child(child, table))
        return results

    def _match_direct(self, child: SignatureInfo, table: JumpTable,
                      matches: List[int]) -> List[ResultEntry]:
        # The nearest distance with any hit wins, across all matches
        for offset in range(self.window + 1):
            hits = [entry for match in matches
                    for entry in table.at_location(match - offset)]
            if hits:
                return [ResultEntry.from_values(
                    child.name, (e.case_value for e in hits))]
        return [ResultEntry.not_found(child.name)]

    def _match_read_then_follow(self, child: SignatureInfo, table: JumpTable,
                                matches: List[int]) -> List[ResultEntry]:
        if not matches:
            return [ResultEntry.not_found(
                child.name, f"Signature for {child.name} has no result.")]

        results, failures = [], []
        for match in matches:
            try:
                value = self.image.read_value(match + child.offset,
                                              child.read_type)
            except ImageReadError as e:
                failures.append(ResultEntry.not_found(
                    child.name, f"{child.name}: {e}"))
                continue
            suffix = child.desired_values.get(value, "") if value is not None else ""
            name = child.name + suffix

            start = function_start_before(self.image, match, self.function_window)
            callers = self.xrefs.refs_to(start)
            found = self._search_callers(callers, table, child.has_multiple_result)

            entry = ResultEntry.from_values(name, (e.case_value for e in found))
            if not entry.found:
                entry.message = (f"Cannot find opcode for {name}. "
                                 f"Function start: 0x{start:X}, "
                                 f"callers: {len(callers)}")
            results.append(entry)
        return results + failures

    def _match_cross_reference(self, child: SignatureInfo, table: JumpTable,
                               matches: List[int]) -> List[ResultEntry]:
        if not matches:
            return [ResultEntry.not_found(
                child.name, f"Signature for {child.name} has no result.")]

        if child.reference_count is not None:
            if len(matches) > 1:
                return [ResultEntry.not_found(
                    child.name,
                    f"The signature for {child.name} has multiple results "
                    f"while ReferenceCount is not empty")]

            target = self.xrefs.walk_up_callers(matches[0], child.reference_count)
            if target is None:
                return [ResultEntry.not_found(
                    child.name, f"No references was found for {child.name}")]
            found = self._search_callers([target], table, child.has_multiple_result)
        else:
            callers = [caller for match in matches
                       for caller in self.xrefs.refs_to(match)]
            found = self._search_callers(callers, table, child.has_multiple_result,
                                         first_only=True)

        entry = ResultEntry.from_values(child.name, (e.case_value for e in found))
        if not entry.found:
            entry.message = (f"Cannot find opcode for {child.name}. "
                             f"Signature result count: {len(matches)} / "
                             f"0x{matches[0]:X}")
        return [entry]

    def _search_callers(self, callers: Iterable[int], table: JumpTable,
                        multiple: bool, first_only: bool = False) -> List[TableEntry]:
        """
        Look below each caller, shifted by each layout delta, for a table
        entry.

        Without ``multiple`` the first delta producing any hit ends the
        search and each caller contributes its nearest entry; with
        ``first_only`` the very first hit ends it. With ``multiple``,
        every delta is tried and every entry in each window is kept.
        """
        callers = list(callers)
        found: List[TableEntry] = []
        for delta in self.deltas:
            for caller in callers:
                address = caller + delta
                if multiple:
                    found.extend(table.all_below(address, self.window))
                    continue
                entry = table.nearest_below(address, self.window)
                if entry is not None:
                    found.append(entry)
                    if first_only:
                        return found
            if found and not multiple:
                break
        return found

