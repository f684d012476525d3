"""Section extraction for Interactive Brokers HTML activity statements.

The statement is loosely structured HTML. Rather than scraping it with
scattered presence checks, :class:`SectionScanner` hands out named
:class:`Section` handles for the regions the parser cares about. Each
handle is bounded, can be narrowed to an asset-class block, and yields
its table rows as lists of cleaned cell text. A missing region is
reported as ``None`` so the caller decides whether that is fatal.
"""

import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from integrations.parsing_utils import clean_cell

_TITLE_RE = re.compile(r"<title>(.*?)</title>", re.IGNORECASE | re.DOTALL)
_ROW_SPLIT_RE = re.compile(r"</tr>", re.IGNORECASE)
_CELL_RE = re.compile(r"<td[^>]*>(.*?)</td>", re.IGNORECASE | re.DOTALL)


@dataclass(frozen=True)
class SectionSpec:
    """Where a statement section starts and what ends it."""

    name: str
    table_prefix: str
    terminators: tuple[str, ...]


NAV = SectionSpec(
    "nav",
    "tblNAV_",
    ('<div class="sectionHeading', '<div class="pa-promo'),
)
OPEN_POSITIONS = SectionSpec("open_positions", "tblOpenPositions_", ("</div>",))
TRANSACTIONS = SectionSpec("transactions", "tblTransactions_", ("</div>",))


@dataclass(frozen=True)
class Section:
    """A bounded region of the statement."""

    name: str
    html: str

    def rows(self, min_cells: int = 1) -> Iterator[list[str]]:
        """Yield the cleaned cells of every table row with at least ``min_cells`` cells."""
        for chunk in _ROW_SPLIT_RE.split(self.html):
            cells = [clean_cell(c) for c in _CELL_RE.findall(chunk)]
            if len(cells) >= min_cells:
                yield cells

    def asset_block(self, labels: Iterable[str], stop_at_table_end: bool = True) -> "Section | None":
        """Narrow to the rows listed under an asset-class header (e.g. "Stocks").

        The block starts after the header row's ``</tbody>`` and runs to the
        next ``<thead>`` (the next asset class), or the end of the table when
        ``stop_at_table_end`` is set.
        """
        alternatives = "|".join(re.escape(label) for label in labels)
        header = re.compile(
            rf"header-asset[^>]*>\s*(?P<label>{alternatives})\s*</td>", re.IGNORECASE
        )
        match = header.search(self.html)
        if not match:
            return None
        body_start = self.html.find("</tbody>", match.end())
        if body_start < 0:
            return None
        body_start += len("</tbody>")

        ends = ["<thead>"]
        if stop_at_table_end:
            ends.append("</table>")
        body_end = _first_index(self.html, ends, body_start)
        return Section(f"{self.name}:{match.group('label')}", self.html[body_start:body_end])


def _first_index(text: str, needles: Iterable[str], start: int) -> int:
    """Position of the earliest needle after ``start``, or the end of ``text``."""
    positions = [p for p in (text.find(n, start) for n in needles) if p >= 0]
    return min(positions) if positions else len(text)


class SectionScanner:
    """Locates the named regions of one statement document."""

    def __init__(self, document: str):
        self._html = document

    def title(self) -> str | None:
        match = _TITLE_RE.search(self._html)
        return clean_cell(match.group(1)) if match else None

    def labeled_value(self, labels: Iterable[str]) -> str | None:
        """Return the cell immediately following a label cell, anywhere in the document."""
        alternatives = "|".join(re.escape(label) for label in labels)
        pattern = re.compile(
            rf"(?:{alternatives})\s*</td>\s*<td[^>]*>(.*?)</td>", re.DOTALL
        )
        match = pattern.search(self._html)
        return clean_cell(match.group(1)) if match else None

    def section(self, spec: SectionSpec) -> Section | None:
        """Return the body of the section whose table id starts with ``spec.table_prefix``."""
        opener = re.compile(rf'id="{re.escape(spec.table_prefix)}[^"]*Body"[^>]*>')
        match = opener.search(self._html)
        if not match:
            return None
        end = _first_index(self._html, spec.terminators, match.end())
        return Section(spec.name, self._html[match.end():end])
