"""
Rendered document surface used by the reader view.

The host renderer is modelled as a paginated, monospace grid laid out over a
BeautifulSoup tree: every character of a rendered text node occupies one cell,
block elements start on a new line and lines hard-wrap at the page width.
This is all the selection engine needs (hit testing, rectangles, substrings),
without pretending to be a layout engine.

Node references handed out by a document are only meaningful for the render
generation they were obtained in. Every re-render (page turn, style change,
text-tree mutation) takes a new generation number.
"""

import itertools
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from bs4 import BeautifulSoup, NavigableString, Tag

logger = logging.getLogger(__name__)

BLOCK_TAGS = {
    'address', 'article', 'aside', 'blockquote', 'body', 'dd', 'div', 'dl', 'dt',
    'figcaption', 'figure', 'footer', 'h1', 'h2', 'h3', 'h4', 'h5', 'h6',
    'header', 'html', 'li', 'ol', 'p', 'pre', 'section', 'table', 'td', 'th',
    'tr', 'ul',
}
SKIP_TAGS = {'head', 'script', 'style', 'title'}
HIGHLIGHT_CLASS = "selection-highlight"

DEFAULT_PAGE_WIDTH = 600.0
DEFAULT_PAGE_HEIGHT = 800.0
DEFAULT_CHAR_WIDTH = 8.0
DEFAULT_LINE_HEIGHT = 20.0

# Shared by every document so generations never repeat across chapters.
_render_generations = itertools.count(1)

# epubcfi(/6/4!/4/1:0) -> spine step 4 -> spine index 1
_CFI_SPINE_STEP = re.compile(r'^epubcfi\(/6/(\d+)')


@dataclass(frozen=True)
class Rect:
    """Client-space rectangle of the displayed page."""
    left: float
    top: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.left + self.width

    @property
    def bottom(self) -> float:
        return self.top + self.height


@dataclass
class Overlay:
    """An absolutely positioned, non-interactive box drawn above the text."""
    id: int
    rects: List[Rect]
    color: str = "yellow"
    opacity: float = 0.4


@dataclass
class Highlight:
    """Inline containers wrapping a highlighted range, one per text node."""
    spans: List[Tag] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(span.get_text() for span in self.spans)


class DocumentAdapter(ABC):
    """What the selection engine needs from the host rendering surface."""

    @property
    @abstractmethod
    def generation(self) -> int:
        """Render generation of what is currently displayed."""

    @abstractmethod
    def caret_at(self, x: float, y: float) -> Optional[Tuple[NavigableString, int]]:
        """Text node and character offset under a client point, if any."""

    @abstractmethod
    def node_text(self, node: NavigableString) -> str:
        ...

    @abstractmethod
    def compare(self, node_a, offset_a: int, node_b, offset_b: int) -> int:
        """Negative, zero or positive as (node_a, offset_a) is before, at or after (node_b, offset_b)."""

    @abstractmethod
    def range_rects(self, start_node, start_offset: int, end_node, end_offset: int) -> List[Rect]:
        ...

    @abstractmethod
    def range_text(self, start_node, start_offset: int, end_node, end_offset: int) -> str:
        ...

    @abstractmethod
    def common_ancestor_text(self, start_node, end_node) -> str:
        ...

    @abstractmethod
    def add_overlay(self, rects: List[Rect]) -> Overlay:
        ...

    @abstractmethod
    def remove_overlay(self, overlay: Overlay) -> None:
        ...

    @abstractmethod
    def highlight_range(self, start_node, start_offset: int, end_node, end_offset: int) -> Highlight:
        ...

    @abstractmethod
    def clear_highlight(self, highlight: Highlight) -> None:
        ...


class HtmlDocument(DocumentAdapter):
    """One chapter of HTML laid out into fixed-size pages."""

    def __init__(self, html: str,
                 page_width: float = DEFAULT_PAGE_WIDTH,
                 page_height: float = DEFAULT_PAGE_HEIGHT,
                 char_width: float = DEFAULT_CHAR_WIDTH,
                 line_height: float = DEFAULT_LINE_HEIGHT,
                 font_size: int = 100,
                 theme: str = "light"):
        self.soup = BeautifulSoup(html, 'html.parser')
        self.page_width = page_width
        self.page_height = page_height
        self.base_char_width = char_width
        self.base_line_height = line_height
        self.font_size = font_size
        self.theme = theme
        self.page = 1
        self.page_count = 1
        self.overlays: Dict[int, Overlay] = {}
        self._overlay_ids = itertools.count(1)
        self._generation = 0
        self._relayout()

    # --- Layout ---

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def cell_width(self) -> float:
        return self.base_char_width * self.font_size / 100.0

    @property
    def cell_height(self) -> float:
        return self.base_line_height * self.font_size / 100.0

    @property
    def columns(self) -> int:
        return max(1, int(self.page_width // self.cell_width))

    @property
    def rows(self) -> int:
        return max(1, int(self.page_height // self.cell_height))

    def _text_nodes(self) -> Iterator[NavigableString]:
        for node in self.soup.find_all(string=True):
            # Comments, doctypes and CDATA are NavigableString subclasses
            if type(node) is not NavigableString:
                continue
            if any(parent.name in SKIP_TAGS for parent in node.parents):
                continue
            yield node

    @staticmethod
    def _block_of(node: NavigableString):
        for parent in node.parents:
            if parent.name in BLOCK_TAGS:
                return parent
        return None

    def _relayout(self):
        self._nodes: List[NavigableString] = []
        self._order: Dict[int, int] = {}
        self._grid: Dict[Tuple[int, int, int], Tuple[NavigableString, int]] = {}
        self._cells: Dict[int, List[Tuple[int, int, int]]] = {}

        columns, rows = self.columns, self.rows
        line, col = 0, 0
        last_line = 0
        block = None

        for node in self._text_nodes():
            self._order[id(node)] = len(self._nodes)
            self._nodes.append(node)
            text = str(node)

            # Source formatting between block elements is not rendered
            if not text.strip() and '\n' in text:
                self._cells[id(node)] = []
                continue

            node_block = self._block_of(node)
            if node_block is not block:
                if col > 0:
                    line += 1
                    col = 0
                block = node_block

            cells = []
            for offset in range(len(text)):
                if col >= columns:
                    line += 1
                    col = 0
                cell = (line // rows + 1, line % rows, col)
                self._grid[cell] = (node, offset)
                cells.append(cell)
                last_line = line
                col += 1
            self._cells[id(node)] = cells

        self.page_count = last_line // rows + 1
        self.page = min(max(self.page, 1), self.page_count)
        self._generation = next(_render_generations)

    def display(self, page: int) -> int:
        """Show a page (1-based, clamped). Returns the page actually shown."""
        page = min(max(page, 1), self.page_count)
        if page != self.page:
            self.page = page
            self._generation = next(_render_generations)
        return self.page

    def set_style(self, font_size: int, theme: str):
        self.font_size = font_size
        self.theme = theme
        self._relayout()

    def visible_text(self) -> str:
        """The characters of the displayed page, one line per row."""
        lines = []
        for row in range(self.rows):
            chars = []
            for col in range(self.columns):
                hit = self._grid.get((self.page, row, col))
                if hit is None:
                    break
                node, offset = hit
                char = str(node)[offset]
                chars.append(' ' if char == '\n' else char)
            lines.append("".join(chars))
        return "\n".join(lines).rstrip("\n")

    # --- DocumentAdapter ---

    def _index(self, node) -> int:
        try:
            return self._order[id(node)]
        except KeyError:
            raise ValueError("Text node is not part of this rendering") from None

    def _segments(self, start_node, start_offset: int,
                  end_node, end_offset: int) -> Iterator[Tuple[NavigableString, int, int]]:
        first, last = self._index(start_node), self._index(end_node)
        for idx in range(first, last + 1):
            node = self._nodes[idx]
            lo = start_offset if idx == first else 0
            hi = end_offset if idx == last else len(node)
            if lo < hi:
                yield node, lo, hi

    def caret_at(self, x: float, y: float) -> Optional[Tuple[NavigableString, int]]:
        if x < 0 or y < 0:
            return None
        row = int(y // self.cell_height)
        col = int(x // self.cell_width)
        return self._grid.get((self.page, row, col))

    def node_text(self, node: NavigableString) -> str:
        return str(node)

    def compare(self, node_a, offset_a: int, node_b, offset_b: int) -> int:
        a, b = self._index(node_a), self._index(node_b)
        if a != b:
            return -1 if a < b else 1
        return (offset_a > offset_b) - (offset_a < offset_b)

    def range_rects(self, start_node, start_offset: int, end_node, end_offset: int) -> List[Rect]:
        rects = []
        run = None  # (row, first_col, last_col)
        for node, lo, hi in self._segments(start_node, start_offset, end_node, end_offset):
            for page, row, col in self._cells[id(node)][lo:hi]:
                if page != self.page:
                    continue
                if run and run[0] == row and run[2] == col - 1:
                    run = (row, run[1], col)
                    continue
                if run:
                    rects.append(self._rect(*run))
                run = (row, col, col)
        if run:
            rects.append(self._rect(*run))
        return rects

    def _rect(self, row: int, first_col: int, last_col: int) -> Rect:
        return Rect(
            left=first_col * self.cell_width,
            top=row * self.cell_height,
            width=(last_col - first_col + 1) * self.cell_width,
            height=self.cell_height,
        )

    def range_text(self, start_node, start_offset: int, end_node, end_offset: int) -> str:
        return "".join(
            str(node)[lo:hi]
            for node, lo, hi in self._segments(start_node, start_offset, end_node, end_offset)
        )

    def common_ancestor_text(self, start_node, end_node) -> str:
        if start_node is end_node:
            return str(start_node)
        ancestors = {id(parent) for parent in start_node.parents}
        for parent in end_node.parents:
            if id(parent) in ancestors:
                return parent.get_text()
        return self.soup.get_text()

    def add_overlay(self, rects: List[Rect]) -> Overlay:
        overlay = Overlay(id=next(self._overlay_ids), rects=list(rects))
        self.overlays[overlay.id] = overlay
        return overlay

    def remove_overlay(self, overlay: Overlay) -> None:
        self.overlays.pop(overlay.id, None)

    def highlight_range(self, start_node, start_offset: int, end_node, end_offset: int) -> Highlight:
        segments = list(self._segments(start_node, start_offset, end_node, end_offset))
        highlight = Highlight()
        for node, lo, hi in segments:
            if not self._cells[id(node)]:
                continue
            text = str(node)
            span = self.soup.new_tag('span', **{'class': HIGHLIGHT_CLASS})
            span.string = text[lo:hi]
            node.replace_with(span)
            if lo > 0:
                span.insert_before(NavigableString(text[:lo]))
            if hi < len(text):
                span.insert_after(NavigableString(text[hi:]))
            highlight.spans.append(span)
        self._relayout()
        return highlight

    def clear_highlight(self, highlight: Highlight) -> None:
        for span in highlight.spans:
            parent = span.parent
            if parent is None:
                continue
            span.unwrap()
            # Merge the pieces back into a single text node
            parent.smooth()
        highlight.spans = []
        self._relayout()


# --- Renderer ---

@dataclass(frozen=True)
class RenderedLocation:
    """Where the renderer is after a navigation."""
    spine_index: int
    page: int
    total_pages: int
    chapter_label: str
    progress_percent: int


class PaginatedBook:
    """
    Renders a book's spine one chapter at a time.

    Relocation listeners are told about every navigation (not about style
    changes, which only reflow the current chapter).
    """

    def __init__(self, chapters, page_width: float = DEFAULT_PAGE_WIDTH,
                 page_height: float = DEFAULT_PAGE_HEIGHT,
                 char_width: float = DEFAULT_CHAR_WIDTH,
                 line_height: float = DEFAULT_LINE_HEIGHT):
        if not chapters:
            raise ValueError("A book needs at least one chapter")
        self.chapters = list(chapters)
        self.page_width = page_width
        self.page_height = page_height
        self.char_width = char_width
        self.line_height = line_height
        self.font_size = 100
        self.theme = "light"
        self.spine_index = 0
        self.document: Optional[HtmlDocument] = None
        self._listeners: List[Callable[[RenderedLocation], None]] = []

    def on_relocated(self, callback: Callable[[RenderedLocation], None]):
        self._listeners.append(callback)

    def _render(self, spine_index: int) -> HtmlDocument:
        if spine_index < 0 or spine_index >= len(self.chapters):
            raise IndexError(f"Spine index {spine_index} out of range")
        self.spine_index = spine_index
        self.document = HtmlDocument(
            self.chapters[spine_index].html,
            page_width=self.page_width,
            page_height=self.page_height,
            char_width=self.char_width,
            line_height=self.line_height,
            font_size=self.font_size,
            theme=self.theme,
        )
        return self.document

    def _emit(self):
        location = self.location
        for callback in self._listeners:
            callback(location)

    def apply_style(self, settings):
        """Apply font size and theme; reflows the current chapter in place."""
        self.font_size = settings.font_size
        self.theme = settings.theme
        if self.document is not None:
            self.document.set_style(self.font_size, self.theme)

    def layout(self) -> int:
        """Run a layout pass of the current chapter with the current style."""
        if self.document is None:
            self._render(self.spine_index)
        else:
            self.document.set_style(self.font_size, self.theme)
        return self.document.page_count

    def display(self, spine_index: int = 0, page: int = 1) -> RenderedLocation:
        if self.document is None or spine_index != self.spine_index:
            self._render(spine_index)
        self.document.display(page)
        self._emit()
        return self.location

    def display_location(self, token: str) -> RenderedLocation:
        """Resolve an opaque standards-based location (EPUB CFI spine step)."""
        match = _CFI_SPINE_STEP.match(token)
        if not match:
            raise ValueError(f"Cannot resolve location {token!r}")
        step = int(match.group(1))
        try:
            return self.display(max(step // 2 - 1, 0), 1)
        except IndexError as e:
            raise ValueError(f"Location {token!r} points past the spine") from e

    def next_page(self) -> bool:
        doc = self.document or self._render(self.spine_index)
        if doc.page < doc.page_count:
            doc.display(doc.page + 1)
        elif self.spine_index < len(self.chapters) - 1:
            self._render(self.spine_index + 1)
        else:
            return False
        self._emit()
        return True

    def prev_page(self) -> bool:
        doc = self.document or self._render(self.spine_index)
        if doc.page > 1:
            doc.display(doc.page - 1)
        elif self.spine_index > 0:
            doc = self._render(self.spine_index - 1)
            doc.display(doc.page_count)
        else:
            return False
        self._emit()
        return True

    @property
    def location(self) -> RenderedLocation:
        doc = self.document or self._render(self.spine_index)
        fraction = (self.spine_index + (doc.page - 1) / doc.page_count) / len(self.chapters)
        return RenderedLocation(
            spine_index=self.spine_index,
            page=doc.page,
            total_pages=doc.page_count,
            chapter_label=self.chapters[self.spine_index].label,
            progress_percent=round(fraction * 100),
        )
